"""Configuration file loading and option merging for openbsd-up."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from openbsd_up.constants import (
    CONFIG_FILENAME,
    DEFAULT_CPU,
    DEFAULT_CPUS,
    DEFAULT_DISK_FORMAT,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY,
    DEFAULT_VERSION,
    DISK_FORMATS,
    TRUTHY,
)
from openbsd_up.exceptions import ManagerError
from openbsd_up.models import RunOptions
from openbsd_up.utils import log, parse_positive_int, validate_disk_size

CONFIG_KEYS = {
    "cpu",
    "cpus",
    "memory",
    "image",
    "disk_format",
    "size",
    "bridge",
    "port_forward",
    "detach",
    "output",
    "version",
}

DEFAULT_CONFIG_TEMPLATE = textwrap.dedent(
    f"""\
    # openbsd-up defaults. Command-line flags take precedence over these values.
    version: "{DEFAULT_VERSION}"
    cpu: {DEFAULT_CPU}
    cpus: {DEFAULT_CPUS}
    memory: {DEFAULT_MEMORY}
    # Backing drive, created with qemu-img if it does not exist.
    # image: openbsd.img
    disk_format: {DEFAULT_DISK_FORMAT}
    size: {DEFAULT_DISK_SIZE}
    # Attach to a host bridge instead of user-mode NAT (requires sudo).
    # bridge: br0
    # host:guest pairs, only used without a bridge.
    port_forward: "2222:22"
    detach: false
    """
)


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the YAML defaults file; a missing file yields an empty mapping."""
    if path is None:
        path = Path.cwd() / CONFIG_FILENAME
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"{path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - CONFIG_KEYS)
    if unknown:
        log("WARN", f"Ignoring unknown keys in {path}: {', '.join(unknown)}")
    log("DEBUG", f"Loaded defaults from {path}")
    return {key: value for key, value in data.items() if key in CONFIG_KEYS}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in TRUTHY


def build_run_options(cli_values: Dict[str, Any], file_values: Optional[Dict[str, Any]] = None) -> RunOptions:
    """Merge built-in defaults < config file < command-line flags and validate the result."""
    merged: Dict[str, Any] = {}
    merged.update(file_values or {})
    merged.update({key: value for key, value in cli_values.items() if value is not None})

    options = RunOptions()
    if "cpu" in merged:
        options.cpu = str(merged["cpu"])
    if "cpus" in merged:
        options.cpus = parse_positive_int(merged["cpus"], "cpus")
    if "memory" in merged:
        options.memory = validate_disk_size(str(merged["memory"]), "memory")
    if merged.get("image"):
        options.image = str(merged["image"])
    if "disk_format" in merged:
        disk_format = str(merged["disk_format"]).lower()
        if disk_format not in DISK_FORMATS:
            supported = ", ".join(sorted(DISK_FORMATS))
            raise ManagerError(f"Unsupported disk format '{disk_format}'. Supported: {supported}")
        options.disk_format = disk_format
    if "size" in merged:
        options.size = validate_disk_size(str(merged["size"]))
    if merged.get("bridge"):
        options.bridge = str(merged["bridge"])
    if merged.get("port_forward"):
        options.port_forward = str(merged["port_forward"])
    if "detach" in merged:
        options.detach = _as_bool(merged["detach"])
    if merged.get("output"):
        options.output = str(merged["output"])
    if merged.get("name"):
        options.name = str(merged["name"])
    if "version" in merged:
        options.version = str(merged["version"])
    return options


def write_default_config(directory: Optional[Path] = None) -> Path:
    """Write the template defaults file; an existing file is never overwritten."""
    directory = directory or Path.cwd()
    path = directory / CONFIG_FILENAME
    if path.exists():
        raise ManagerError(f"{path} already exists; remove it first to regenerate")
    path.write_text(DEFAULT_CONFIG_TEMPLATE)
    return path

