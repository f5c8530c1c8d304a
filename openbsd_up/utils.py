"""Utility functions for openbsd-up."""

from __future__ import annotations

import os
import random
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from openbsd_up.constants import _LOG_VERBOSE, DISK_SIZE_RE, TRUTHY
from openbsd_up.exceptions import CommandError, ManagerError

_ADJECTIVES = (
    "amber", "ancient", "autumn", "billowing", "bitter", "bold", "brave", "calm",
    "crimson", "dawn", "delicate", "divine", "dry", "eager", "falling", "fancy",
    "frosty", "gentle", "hidden", "icy", "jolly", "lingering", "little", "lively",
    "misty", "morning", "nameless", "noisy", "patient", "polished", "proud",
    "purple", "quiet", "rapid", "restless", "rough", "shy", "silent", "snowy",
    "solitary", "sparkling", "still", "summer", "sweet", "twilight", "wandering",
    "weathered", "wild", "winter", "young",
)
_NOUNS = (
    "bird", "breeze", "brook", "bush", "butterfly", "cloud", "dawn", "dew",
    "dream", "dust", "feather", "field", "fire", "firefly", "flower", "fog",
    "forest", "frog", "glade", "grass", "haze", "hill", "lake", "leaf", "meadow",
    "moon", "morning", "mountain", "night", "paper", "pine", "pond", "puffer",
    "rain", "resonance", "river", "sea", "shadow", "shape", "silence", "sky",
    "smoke", "snow", "sound", "star", "sun", "surf", "thunder", "water", "wave",
)


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def validate_disk_size(raw: str, label: str = "size") -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid {label} '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')"
        )
    return raw


def parse_positive_int(raw, label: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ManagerError(f"{label} must be an integer (got '{raw}')")
    if value < 1:
        raise ManagerError(f"{label} must be >= 1 (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def random_mac() -> str:
    """Generate a locally-administered MAC address with the QEMU prefix."""
    octets = [0x52, 0x54, 0x00]
    octets += [random.randint(0x00, 0x7F) for _ in range(3)]
    return ":".join(f"{octet:02x}" for octet in octets)


def generate_name() -> str:
    """Return a random adjective-noun pair such as ``quiet-river``."""
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def humanize_delta(moment: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Render the distance between ``moment`` (naive UTC) and now, e.g. ``5 minutes``."""
    if moment is None:
        return "-"
    now = now or utcnow()
    seconds = max(int((now - moment).total_seconds()), 0)
    if seconds < 45:
        return "a few seconds"
    if seconds < 90:
        return "a minute"
    minutes = round(seconds / 60)
    if minutes < 45:
        return f"{minutes} minutes"
    if minutes < 90:
        return "an hour"
    hours = round(minutes / 60)
    if hours < 22:
        return f"{hours} hours"
    if hours < 36:
        return "a day"
    days = round(hours / 24)
    if days < 26:
        return f"{days} days"
    if days < 46:
        return "a month"
    if days < 320:
        return f"{round(days / 30)} months"
    if days < 548:
        return "a year"
    return f"{round(days / 365)} years"


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging.

    A missing executable or a non-zero exit status (when ``check`` is set) is
    reported as :class:`CommandError` carrying the command's exit code.
    """
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, check=False, text=True, **kwargs)
    except FileNotFoundError as exc:
        raise CommandError(f"Command not found: {cmd[0]}", exit_code=127) from exc
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip() if isinstance(result.stderr, str) else ""
        detail = f": {stderr}" if stderr else ""
        raise CommandError(
            f"Command '{' '.join(cmd)}' failed with exit code {result.returncode}{detail}",
            exit_code=result.returncode,
        )
    return result
