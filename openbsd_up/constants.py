"""Global constants and path defaults for openbsd-up."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_HOME_DIR = Path.home() / ".openbsd-up"
HOME_DIR_ENV = "OPENBSD_UP_HOME"
DB_FILENAME = "state.sqlite"
LOGS_DIRNAME = "logs"
IMAGES_DIRNAME = "images"
FIRMWARE_DIRNAME = "firmware"
CONFIG_FILENAME = "openbsd-up.yaml"

DEFAULT_VERSION = "7.8"
DEFAULT_CPU = "host"
DEFAULT_CPUS = 2
DEFAULT_MEMORY = "2G"
DEFAULT_DISK_FORMAT = "raw"
DEFAULT_DISK_SIZE = "20G"

CDN_BASE_URL = "https://cdn.openbsd.org/pub/OpenBSD"

# Drive images smaller than this (allocated KiB) are treated as blank.
EMPTY_DISK_THRESHOLD_KB = 10

TERMINATE_GRACE_SECONDS = 3.0
KILL_SETTLE_SECONDS = 2.0
RESTART_COOLDOWN_SECONDS = 2.0
SPAWN_SETTLE_SECONDS = 0.5
LIVENESS_POLL_INTERVAL = 0.1
SQLITE_BUSY_TIMEOUT = 30

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

VERSION_RE = re.compile(r"^\d{1,2}\.\d{1,2}$")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")

DISK_FORMATS = {"raw", "qcow2", "vmdk", "vdi", "vhdx"}

# Host OS family -> acceleration flags. Anything not listed uses "default".
ACCELERATORS = {
    "darwin": ("-accel", "hvf"),
    "default": ("-enable-kvm",),
}

ARCH_PROFILES = {
    "x86_64": {
        "emulator": "qemu-system-x86_64",
        "cdn_arch": "amd64",
        "machine": (),
        "firmware": None,
    },
    "aarch64": {
        "emulator": "qemu-system-aarch64",
        "cdn_arch": "arm64",
        "machine": ("-machine", "virt,highmem=on"),
        "firmware": {
            "code": "edk2-aarch64-code.fd",
            "vars_template": "edk2-arm-vars.fd",
            "linux_code": Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
            "linux_vars_template": Path("/usr/share/AAVMF/AAVMF_VARS.fd"),
        },
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}

ORAS_ARTIFACT_TYPE = "application/vnd.openbsd-up.disk.v1"
ORAS_DEFAULT_VERSION = "1.3.0"
