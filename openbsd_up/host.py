"""Host platform detection for openbsd-up."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass
from pathlib import Path

from openbsd_up.constants import ARCH_ALIASES, ARCH_PROFILES
from openbsd_up.exceptions import ManagerError
from openbsd_up.utils import log


@dataclass(frozen=True)
class HostInfo:
    os: str  # "linux", "darwin", "openbsd", ...
    arch: str  # key into ARCH_PROFILES
    kvm: bool = False


def normalize_arch(raw: str) -> str:
    arch = ARCH_ALIASES.get(raw.lower(), raw.lower())
    if arch not in ARCH_PROFILES:
        supported = ", ".join(sorted(ARCH_PROFILES))
        raise ManagerError(f"Unsupported host architecture '{raw}'. Supported: {supported}")
    return arch


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def detect_host() -> HostInfo:
    """Detect host OS family, CPU architecture and KVM availability."""
    os_name = platform.system().lower()
    arch = normalize_arch(platform.machine())
    kvm = kvm_available() if os_name == "linux" else False
    if os_name == "linux" and not kvm:
        log("WARN", "/dev/kvm is not accessible; QEMU will fail to enable KVM acceleration")
    return HostInfo(os=os_name, arch=arch, kvm=kvm)
