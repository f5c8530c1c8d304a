"""Data models for openbsd-up."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import NamedTuple, Optional

from openbsd_up.constants import (
    DEFAULT_CPU,
    DEFAULT_CPUS,
    DEFAULT_DISK_FORMAT,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY,
    DEFAULT_VERSION,
)


class VMStatus(str, Enum):
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


class PortForward(NamedTuple):
    host_port: str
    guest_port: str


@dataclass
class RunOptions:
    """Options for a create+launch invocation, after config-file and CLI merging."""

    cpu: str = DEFAULT_CPU
    cpus: int = DEFAULT_CPUS
    memory: str = DEFAULT_MEMORY
    image: Optional[str] = None
    disk_format: str = DEFAULT_DISK_FORMAT
    size: str = DEFAULT_DISK_SIZE
    bridge: Optional[str] = None
    port_forward: Optional[str] = None
    detach: bool = False
    output: Optional[str] = None
    name: Optional[str] = None
    version: str = DEFAULT_VERSION


@dataclass
class Overrides:
    """Per-invocation resource tuning applied by ``start`` without touching the record."""

    cpu: Optional[str] = None
    cpus: Optional[int] = None
    memory: Optional[str] = None
    port_forward: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(value is not None for value in (self.cpu, self.cpus, self.memory, self.port_forward))


@dataclass(frozen=True)
class LaunchConfig:
    """Everything the launch composer needs; identical inputs give identical argv."""

    cpu: str
    cpus: int
    memory: str
    mac_address: str
    iso_path: Optional[str] = None
    drive_path: Optional[str] = None
    disk_format: str = DEFAULT_DISK_FORMAT
    bridge: Optional[str] = None
    port_forward: Optional[str] = None

    @classmethod
    def from_record(cls, vm) -> "LaunchConfig":
        return cls(
            cpu=vm.cpu,
            cpus=vm.cpus,
            memory=vm.memory,
            mac_address=vm.mac_address,
            iso_path=vm.iso_path,
            drive_path=vm.drive_path,
            disk_format=vm.disk_format,
            bridge=vm.bridge,
            port_forward=vm.port_forward,
        )

    def with_overrides(self, overrides: Optional[Overrides]) -> "LaunchConfig":
        if overrides is None or overrides.is_empty():
            return self
        changes = {
            key: value
            for key, value in (
                ("cpu", overrides.cpu),
                ("cpus", overrides.cpus),
                ("memory", overrides.memory),
                ("port_forward", overrides.port_forward),
            )
            if value is not None
        }
        return replace(self, **changes)


@dataclass
class LaunchResult:
    name: str
    pid: int
    log_path: Optional[str] = None
    exit_code: Optional[int] = None
