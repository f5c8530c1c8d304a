"""QEMU command-line composition for openbsd-up."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import List, Sequence

from openbsd_up.constants import ACCELERATORS, ARCH_PROFILES
from openbsd_up.exceptions import CommandError
from openbsd_up.host import HostInfo
from openbsd_up.models import LaunchConfig
from openbsd_up.network import bridge_netdev, nat_netdev
from openbsd_up.utils import ensure_directory, log


def qemu_binary(host: HostInfo) -> str:
    return ARCH_PROFILES[host.arch]["emulator"]


def accelerator_args(host: HostInfo) -> List[str]:
    return list(ACCELERATORS.get(host.os, ACCELERATORS["default"]))


def compose_launch_args(
    config: LaunchConfig,
    host: HostInfo,
    firmware_args: Sequence[str] = (),
) -> List[str]:
    """Build the QEMU argument vector (without the binary) for ``config``.

    Pure: the MAC address and firmware arguments are inputs, so equal inputs
    always give equal output.
    """
    profile = ARCH_PROFILES[host.arch]
    args: List[str] = []
    args += accelerator_args(host)
    args += list(profile["machine"])
    args += ["-cpu", config.cpu, "-m", config.memory, "-smp", str(config.cpus)]
    if config.iso_path:
        args += ["-cdrom", config.iso_path]
    if config.bridge:
        netdev = bridge_netdev(config.bridge)
    else:
        netdev = nat_netdev(config.port_forward)
    args += ["-netdev", netdev, "-device", f"e1000,netdev=net0,mac={config.mac_address}"]
    args += [
        "-nographic",
        "-monitor",
        "none",
        "-chardev",
        "stdio,id=con0,signal=off",
        "-serial",
        "chardev:con0",
    ]
    args += list(firmware_args)
    if config.drive_path:
        args += ["-drive", f"file={config.drive_path},format={config.disk_format},if=virtio"]
    return args


def build_command(
    config: LaunchConfig,
    host: HostInfo,
    firmware_args: Sequence[str] = (),
) -> List[str]:
    """Full argv including the emulator, prefixed with ``sudo`` for bridged networking."""
    cmd = [qemu_binary(host)] + compose_launch_args(config, host, firmware_args)
    if config.bridge:
        return ["sudo"] + cmd
    return cmd


def _firmware_source_dir(host: HostInfo) -> Path:
    if host.os == "darwin":
        try:
            result = subprocess.run(
                ["brew", "--prefix", "qemu"],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError("Homebrew is required to locate QEMU firmware files") from exc
        if result.returncode != 0:
            raise CommandError(
                "Failed to get QEMU prefix from Homebrew. Ensure QEMU is installed via Homebrew.",
                exit_code=result.returncode,
            )
        return Path(result.stdout.strip()) / "share" / "qemu"
    return Path("/usr/share/qemu")


def locate_firmware(host: HostInfo, firmware_dir: Path, vm_name: str) -> List[str]:
    """Return pflash arguments for architectures that boot through UEFI firmware.

    The writable vars file is copied once per VM into ``firmware_dir`` so
    each guest keeps its own NVRAM.
    """
    firmware = ARCH_PROFILES[host.arch]["firmware"]
    if not firmware:
        return []

    source_dir = _firmware_source_dir(host)
    code = source_dir / firmware["code"]
    vars_template = source_dir / firmware["vars_template"]
    if host.os != "darwin" and not code.exists():
        code = firmware["linux_code"]
        vars_template = firmware["linux_vars_template"]
    if not code.exists():
        raise CommandError(f"UEFI firmware not found at {code}")
    if not vars_template.exists():
        raise CommandError(f"UEFI variable template not found at {vars_template}")

    ensure_directory(firmware_dir)
    vars_destination = firmware_dir / f"{vm_name}-vars.fd"
    if not vars_destination.exists():
        log("DEBUG", f"Copying firmware variables to {vars_destination}")
        shutil.copy2(vars_template, vars_destination)

    return [
        "-drive",
        f"if=pflash,format=raw,file={code},readonly=on",
        "-drive",
        f"if=pflash,format=raw,file={vars_destination}",
    ]
