"""Terminate-and-verify control for hypervisor processes."""

from __future__ import annotations

import subprocess
import time
from typing import Callable, List

import psutil

from openbsd_up.constants import (
    KILL_SETTLE_SECONDS,
    LIVENESS_POLL_INTERVAL,
    TERMINATE_GRACE_SECONDS,
)
from openbsd_up.utils import log


def is_alive(pid: int) -> bool:
    """Signal-0 style liveness check. Zombies count as gone; processes we may not inspect count as alive."""
    if pid is None or pid <= 0:
        return False
    try:
        process = psutil.Process(pid)
        return process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def resolve_hypervisor_pid(pid: int, prefix: str = "qemu-system") -> int:
    """PID of the emulator under a ``sudo`` wrapper, or ``pid`` itself when there is none.

    SIGKILL sent to sudo is not relayed to its child, so the emulator's own
    PID is the one worth recording.
    """
    try:
        children = psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return pid
    for child in children:
        try:
            if child.name().startswith(prefix):
                return child.pid
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return pid


def kill_command(pid: int, signal_name: str, elevated: bool) -> List[str]:
    cmd = ["kill", f"-{signal_name}", str(pid)]
    if elevated:
        return ["sudo"] + cmd
    return cmd


def send_signal(pid: int, signal_name: str, elevated: bool) -> bool:
    """Deliver a signal through ``kill`` (or ``sudo kill``); True when delivery succeeded."""
    cmd = kill_command(pid, signal_name, elevated)
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False)
    except FileNotFoundError:
        log("WARN", f"Command not found: {cmd[0]}")
        return False
    return result.returncode == 0


def wait_for_exit(
    pid: int,
    timeout: float,
    interval: float = LIVENESS_POLL_INTERVAL,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until the process is gone; True if it exited within ``timeout``."""
    waited = 0.0
    while True:
        if not is_alive(pid):
            return True
        if waited >= timeout:
            return False
        sleep(interval)
        waited += interval


def terminate(
    pid: int,
    elevated: bool = False,
    grace: float = TERMINATE_GRACE_SECONDS,
    settle: float = KILL_SETTLE_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Stop ``pid`` with SIGTERM, escalating to SIGKILL after the grace window.

    Returns True only once the process is confirmed gone. When SIGTERM cannot
    be delivered (for example the process already exited) liveness is checked
    right away instead of waiting out the grace window.
    """
    if send_signal(pid, "TERM", elevated):
        if wait_for_exit(pid, grace, sleep=sleep):
            return True
        log("WARN", f"Process {pid} still alive after {grace:g}s, sending SIGKILL")
    elif not is_alive(pid):
        log("DEBUG", f"Process {pid} is already gone")
        return True

    if not send_signal(pid, "KILL", elevated):
        return not is_alive(pid)
    return wait_for_exit(pid, settle, sleep=sleep)
