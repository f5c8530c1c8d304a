"""Shared test fixtures: a throwaway state directory, record store and fake host."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import pytest

from openbsd_up.context import Context, create_context
from openbsd_up.host import HostInfo
from openbsd_up.models import VMStatus
from openbsd_up.store import RecordStore, VirtualMachine, new_id


@pytest.fixture
def linux_host() -> HostInfo:
    return HostInfo(os="linux", arch="x86_64", kvm=True)


@pytest.fixture
def ctx(tmp_path, linux_host) -> Context:
    context = create_context(home_dir=tmp_path / "home", host=linux_host)
    yield context
    context.close()


@pytest.fixture
def store(ctx) -> RecordStore:
    return ctx.store


@pytest.fixture
def make_vm(store):
    """Insert a VM record with sensible defaults and return it."""

    def _make(
        name: str = "test-vm",
        status: VMStatus = VMStatus.STOPPED,
        pid: Optional[int] = None,
        bridge: Optional[str] = None,
        port_forward: Optional[str] = None,
        drive_path: Optional[str] = None,
        created_at: Optional[datetime] = None,
        **overrides,
    ) -> VirtualMachine:
        values = dict(
            id=new_id(),
            name=name,
            bridge=bridge,
            mac_address="52:54:00:12:34:56",
            memory="2G",
            cpus=2,
            cpu="host",
            disk_size="20G",
            disk_format="raw",
            port_forward=port_forward,
            iso_path=None,
            drive_path=drive_path,
            version="7.8",
            status=VMStatus(status).value,
            pid=pid,
            created_at=created_at,
        )
        values.update(overrides)
        return store.insert(VirtualMachine(**values))

    return _make
