"""Boot media and drive image handling for openbsd-up."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from openbsd_up.constants import (
    ARCH_PROFILES,
    CDN_BASE_URL,
    DEFAULT_VERSION,
    EMPTY_DISK_THRESHOLD_KB,
    VERSION_RE,
)
from openbsd_up.exceptions import ManagerError
from openbsd_up.host import HostInfo
from openbsd_up.models import RunOptions
from openbsd_up.utils import log, run


def construct_download_url(version: str, host: HostInfo) -> str:
    arch = ARCH_PROFILES[host.arch]["cdn_arch"]
    return f"{CDN_BASE_URL}/{version}/{arch}/install{version.replace('.', '')}.iso"


def is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def handle_input(value: Optional[str], host: HostInfo, default_version: str = DEFAULT_VERSION) -> str:
    """Turn the positional argument into an ISO path or download URL."""
    if not value:
        log("INFO", f"No ISO path provided, defaulting to OpenBSD {default_version}...")
        return construct_download_url(default_version, host)
    if VERSION_RE.match(value):
        log("INFO", f"Detected version {value}, constructing download URL...")
        return construct_download_url(value, host)
    return value


def allocated_kb(path: Path) -> int:
    """Disk usage of ``path`` in KiB, as ``du`` reports it (allocated blocks, not apparent size)."""
    return (path.stat().st_blocks * 512) // 1024


def empty_disk_image(path: Optional[Path]) -> bool:
    """True for a missing drive or one with less than the threshold allocated."""
    if path is None or not Path(path).exists():
        return True
    return allocated_kb(Path(path)) < EMPTY_DISK_THRESHOLD_KB


def download_iso(url: str, output: Optional[str] = None, drive: Optional[str] = None) -> Optional[str]:
    """Download ``url`` with curl unless the file is already present.

    Returns None when ``drive`` already holds data: booting the installer
    again could overwrite an installed system.
    """
    filename = Path(urlparse(url).path).name or "install.iso"
    output_path = Path(output) if output else Path(filename)

    if drive and not empty_disk_image(Path(drive)):
        log(
            "WARN",
            f"Drive image {drive} is not empty (size: {allocated_kb(Path(drive))} KB), "
            "skipping ISO download to avoid overwriting existing data.",
        )
        return None

    if output_path.exists():
        log("WARN", f"File {output_path} already exists, skipping download.")
        return str(output_path)

    log("INFO", f"Downloading: {url}")
    run(["curl", "-L", "-o", str(output_path), url])
    log("SUCCESS", f"Downloaded ISO to {output_path}")
    return str(output_path)


def create_drive_image_if_needed(path: str, disk_format: str, size: str) -> bool:
    """Create the drive with qemu-img; returns False (and does nothing) if it exists."""
    if Path(path).exists():
        log("WARN", f"Drive image {path} already exists, skipping creation.")
        return False
    run(["qemu-img", "create", "-f", disk_format, path, size])
    log("SUCCESS", f"Created drive image at {path}")
    return True


def resolve_boot_source(value: Optional[str], options: RunOptions, host: HostInfo) -> Optional[str]:
    """Resolve the boot ISO for a create+launch and realise the backing drive.

    Returns a local ISO path, or None when the guest should boot from its
    drive only.
    """
    iso_path: Optional[str] = None
    # A drive given without a boot source boots from the drive alone.
    if value or not options.image:
        iso_path = handle_input(value, host, options.version)
        if is_url(iso_path):
            iso_path = download_iso(iso_path, options.output, options.image)

    if options.image:
        create_drive_image_if_needed(options.image, options.disk_format, options.size)

    if iso_path and not Path(iso_path).exists():
        raise ManagerError(f"ISO file not found: {iso_path}")
    return iso_path
