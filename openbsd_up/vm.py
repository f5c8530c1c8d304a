"""VM lifecycle management for openbsd-up."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from openbsd_up.constants import RESTART_COOLDOWN_SECONDS, SPAWN_SETTLE_SECONDS, VERSION_RE
from openbsd_up.context import Context
from openbsd_up.exceptions import CommandError, LaunchError, NotFoundError, StopCommandError, StoreError
from openbsd_up.images import resolve_boot_source
from openbsd_up.launch import build_command, locate_firmware
from openbsd_up.models import LaunchConfig, LaunchResult, Overrides, RunOptions, VMStatus
from openbsd_up.network import ensure_bridge
from openbsd_up.process import is_alive, resolve_hypervisor_pid, terminate
from openbsd_up.store import VirtualMachine, new_id
from openbsd_up.utils import ensure_directory, generate_name, log, random_mac, run


def canonical_path(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    return os.path.realpath(path)


def exit_status(code: int) -> int:
    """Shell-style status: a child killed by signal N reports 128 + N."""
    if code < 0:
        return 128 - code
    return code


class VMManager:
    """Drives VM records through RUNNING/STOPPED, writing state only after confirmed events."""

    def __init__(
        self,
        ctx: Context,
        sleep: Callable[[float], None] = time.sleep,
        firmware_locator: Callable = locate_firmware,
    ) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self._sleep = sleep
        self._firmware_locator = firmware_locator

    # -- lookups ----------------------------------------------------------

    def get(self, name: str) -> VirtualMachine:
        vm = self.store.find_by_name_or_id(name)
        if vm is None:
            raise NotFoundError(f"Virtual machine with name or ID {name} not found.")
        return vm

    def reconcile(self, vm: VirtualMachine) -> VirtualMachine:
        """Mark a RUNNING record STOPPED when its process is confirmed gone."""
        if vm.status == VMStatus.RUNNING.value and not is_alive(vm.pid):
            log("DEBUG", f"Process {vm.pid} for {vm.name} is gone; marking STOPPED")
            return self.store.update_status(vm.id, VMStatus.STOPPED)
        return vm

    def inspect(self, name: str) -> VirtualMachine:
        return self.reconcile(self.get(name))

    def list(self, all: bool = False) -> List[VirtualMachine]:
        vms = [self.reconcile(vm) for vm in self.store.list(all=True)]
        if all:
            return vms
        return [vm for vm in vms if vm.status == VMStatus.RUNNING.value]

    def log_path(self, name: str) -> Path:
        return self.ctx.log_path(self.get(name).name)

    # -- spawning ---------------------------------------------------------

    def _command(self, config: LaunchConfig, vm_name: str) -> List[str]:
        firmware_args = self._firmware_locator(self.ctx.host, self.ctx.firmware_dir, vm_name)
        return build_command(config, self.ctx.host, firmware_args)

    def _spawn_attached(self, cmd: Sequence[str]) -> Tuple[subprocess.Popen, int]:
        """Launch in the foreground; returns the process handle and the emulator PID."""
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(list(cmd))
        except OSError as exc:
            raise LaunchError(f"Failed to start {cmd[0]}: {exc}", exit_code=127) from exc
        if cmd[0] != "sudo":
            return proc, proc.pid
        # The emulator is a child of sudo; give it a moment to appear.
        self._sleep(SPAWN_SETTLE_SECONDS)
        return proc, resolve_hypervisor_pid(proc.pid)

    def _spawn_detached(self, cmd: Sequence[str], log_path: Path) -> int:
        """Launch in the background with output appended to ``log_path``; returns the PID."""
        if cmd[0] == "sudo":
            # Detached children have no terminal to prompt on; cache credentials first.
            try:
                run(["sudo", "-v"])
            except CommandError as exc:
                raise LaunchError(f"Unable to obtain sudo credentials: {exc}", exit_code=exc.exit_code) from exc
        ensure_directory(log_path.parent)
        log("DEBUG", f"Running: {' '.join(cmd)} >> {log_path}")
        with open(log_path, "ab") as log_file:
            try:
                proc = subprocess.Popen(
                    list(cmd),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                raise LaunchError(f"Failed to start {cmd[0]}: {exc}", exit_code=127) from exc
        self._sleep(SPAWN_SETTLE_SECONDS)
        code = proc.poll()
        if code is not None:
            raise LaunchError(
                f"{cmd[0]} exited immediately with code {code}; see {log_path}",
                exit_code=exit_status(code),
            )
        if cmd[0] == "sudo":
            return resolve_hypervisor_pid(proc.pid)
        return proc.pid

    def _wait(self, proc: subprocess.Popen) -> int:
        def _terminate_child(signum, frame):
            proc.terminate()

        prev_sigterm = signal.signal(signal.SIGTERM, _terminate_child)
        try:
            return exit_status(proc.wait())
        except KeyboardInterrupt:
            proc.send_signal(signal.SIGINT)
            return exit_status(proc.wait())
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)

    def _record(self, vm: VirtualMachine, proc: Optional[subprocess.Popen] = None) -> None:
        """Insert the record for a freshly spawned VM, stopping the process if that fails."""
        try:
            self.store.insert(vm)
        except StoreError:
            log("ERROR", f"Could not record {vm.name}; stopping its hypervisor process (PID: {vm.pid})")
            if proc is not None:
                proc.terminate()
                proc.wait()
            else:
                terminate(vm.pid, elevated=bool(vm.bridge), sleep=self._sleep)
            raise

    # -- transitions ------------------------------------------------------

    def create(self, source: Optional[str], options: RunOptions) -> LaunchResult:
        """Create a new record and launch it (absent -> RUNNING)."""
        name = options.name or generate_name()
        iso_path = resolve_boot_source(source, options, self.ctx.host)
        if options.bridge:
            ensure_bridge(options.bridge)

        config = LaunchConfig(
            cpu=options.cpu,
            cpus=options.cpus,
            memory=options.memory,
            mac_address=random_mac(),
            iso_path=canonical_path(iso_path),
            drive_path=canonical_path(options.image),
            disk_format=options.disk_format,
            bridge=options.bridge,
            port_forward=options.port_forward,
        )
        cmd = self._command(config, name)

        vm = VirtualMachine(
            id=new_id(),
            name=name,
            bridge=config.bridge,
            mac_address=config.mac_address,
            memory=config.memory,
            cpus=config.cpus,
            cpu=config.cpu,
            disk_size=options.size,
            disk_format=config.disk_format,
            port_forward=config.port_forward,
            iso_path=config.iso_path,
            drive_path=config.drive_path,
            version=source if source and VERSION_RE.match(source) else options.version,
            status=VMStatus.RUNNING.value,
        )

        if options.detach:
            log_path = self.ctx.log_path(name)
            vm.pid = self._spawn_detached(cmd, log_path)
            self._record(vm)
            log("SUCCESS", f"Virtual machine {name} started in background (PID: {vm.pid})")
            log("INFO", f"Logs will be written to: {log_path}")
            return LaunchResult(name=name, pid=vm.pid, log_path=str(log_path))

        proc, vm.pid = self._spawn_attached(cmd)
        self._record(vm, proc)
        code = self._wait(proc)
        self.store.update_status(vm.id, VMStatus.STOPPED)
        return LaunchResult(name=name, pid=vm.pid, exit_code=code)

    def start(self, name: str, detach: bool = False, overrides: Optional[Overrides] = None) -> LaunchResult:
        """Relaunch an existing record (STOPPED -> RUNNING); overrides apply to this run only."""
        vm = self.reconcile(self.get(name))
        if vm.status == VMStatus.RUNNING.value:
            raise LaunchError(f"Virtual machine {vm.name} is already running (PID: {vm.pid})")

        log("INFO", f"Starting virtual machine {vm.name} (ID: {vm.id})...")
        config = LaunchConfig.from_record(vm).with_overrides(overrides)
        cmd = self._command(config, vm.name)

        if detach:
            log_path = self.ctx.log_path(vm.name)
            pid = self._spawn_detached(cmd, log_path)
            self.store.update_status(vm.id, VMStatus.RUNNING, pid)
            log("SUCCESS", f"Virtual machine {vm.name} started in background (PID: {pid})")
            log("INFO", f"Logs will be written to: {log_path}")
            return LaunchResult(name=vm.name, pid=pid, log_path=str(log_path))

        proc, pid = self._spawn_attached(cmd)
        self.store.update_status(vm.id, VMStatus.RUNNING, pid)
        code = self._wait(proc)
        self.store.update_status(vm.id, VMStatus.STOPPED, pid)
        return LaunchResult(name=vm.name, pid=pid, exit_code=code)

    def _terminate(self, vm: VirtualMachine) -> VirtualMachine:
        if vm.pid is not None and not terminate(vm.pid, elevated=bool(vm.bridge), sleep=self._sleep):
            raise StopCommandError(f"Failed to stop virtual machine {vm.name}.")
        return self.store.update_status(vm.id, VMStatus.STOPPED)

    def stop(self, name: str) -> VirtualMachine:
        """Terminate the process and record STOPPED (RUNNING -> STOPPED)."""
        vm = self.get(name)
        if vm.status == VMStatus.STOPPED.value:
            log("INFO", f"Virtual machine {vm.name} is already stopped.")
            return vm
        log("INFO", f"Stopping virtual machine {vm.name} (ID: {vm.id})...")
        vm = self._terminate(vm)
        log("SUCCESS", f"Virtual machine {vm.name} stopped.")
        return vm

    def restart(self, name: str) -> LaunchResult:
        """Stop, cool down, then relaunch detached from the stored configuration."""
        vm = self.get(name)
        if vm.status == VMStatus.RUNNING.value:
            log("INFO", f"Stopping virtual machine {vm.name} (ID: {vm.id})...")
            vm = self._terminate(vm)
        self._sleep(RESTART_COOLDOWN_SECONDS)

        config = LaunchConfig.from_record(vm)
        cmd = self._command(config, vm.name)
        log_path = self.ctx.log_path(vm.name)
        pid = self._spawn_detached(cmd, log_path)
        self.store.update_status(vm.id, VMStatus.RUNNING, pid)
        log("SUCCESS", f"{vm.name} restarted with PID {pid}.")
        log("INFO", f"Logs are being written to {log_path}")
        return LaunchResult(name=vm.name, pid=pid, log_path=str(log_path))

    def remove(self, name: str) -> VirtualMachine:
        """Delete the record only; the process and drive image are left alone."""
        vm = self.store.delete(name)
        if vm.status == VMStatus.RUNNING.value and is_alive(vm.pid):
            log("WARN", f"Removed {vm.name} while its process (PID: {vm.pid}) is still running")
        log("SUCCESS", f"Virtual machine {vm.name} removed.")
        return vm

    def run_image(self, drive_path: str, disk_format: str, options: RunOptions) -> LaunchResult:
        """Create and launch a VM booting a registry image as its drive."""
        options.image = drive_path
        options.disk_format = disk_format
        options.output = None
        return self.create(None, options)

