"""Lifecycle tests for openbsd_up.vm."""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest

from openbsd_up.constants import RESTART_COOLDOWN_SECONDS, SPAWN_SETTLE_SECONDS
from openbsd_up.exceptions import LaunchError, NotFoundError, StopCommandError, StoreError
from openbsd_up.models import Overrides, RunOptions, VMStatus
from openbsd_up.vm import VMManager


def _make_mgr(ctx, sleeps=None):
    if sleeps is None:
        sleeps = []
    return VMManager(ctx, sleep=sleeps.append, firmware_locator=lambda host, firmware_dir, name: [])


def _proc(pid=4242, exit_code=None, wait_code=0):
    proc = MagicMock(pid=pid)
    proc.poll.return_value = exit_code
    proc.wait.return_value = wait_code
    return proc


def _spawned_cmd(mock_popen):
    return mock_popen.call_args[0][0]


class TestCreate:
    def test_detached_launch_records_running(self, ctx, store):
        mgr = _make_mgr(ctx)
        options = RunOptions(detach=True, name="fresh", port_forward="2222:22")
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc()
        ) as mock_popen:
            result = mgr.create(None, options)

        assert result.pid == 4242
        assert result.log_path == str(ctx.log_path("fresh"))
        vm = store.find_by_name_or_id("fresh")
        assert vm.status == "RUNNING"
        assert vm.pid == 4242
        assert vm.mac_address.startswith("52:54:00:")
        assert vm.port_forward == "2222:22"
        kwargs = mock_popen.call_args[1]
        assert kwargs["start_new_session"] is True
        assert ctx.log_path("fresh").exists()

    def test_headless_launch_without_iso_or_drive(self, ctx):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc()
        ) as mock_popen:
            mgr.create(None, RunOptions(detach=True))
        cmd = _spawned_cmd(mock_popen)
        assert "-cdrom" not in cmd
        assert "-drive" not in cmd

    def test_paths_are_canonicalized(self, ctx, store, tmp_path):
        iso = tmp_path / "install.iso"
        iso.write_bytes(b"iso")
        link = tmp_path / "link.iso"
        link.symlink_to(iso)
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=str(link)), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc()
        ):
            mgr.create(str(link), RunOptions(detach=True, name="canon"))
        assert store.find_by_name_or_id("canon").iso_path == os.path.realpath(iso)

    def test_immediate_exit_writes_nothing(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(exit_code=1)
        ):
            with pytest.raises(LaunchError, match="exited immediately"):
                mgr.create(None, RunOptions(detach=True))
        assert store.list(all=True) == []

    def test_missing_emulator_writes_nothing(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", side_effect=FileNotFoundError("qemu-system-x86_64")
        ):
            with pytest.raises(LaunchError) as excinfo:
                mgr.create(None, RunOptions())
        assert excinfo.value.exit_code == 127
        assert store.list(all=True) == []

    def test_attached_launch_mirrors_exit_code(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(wait_code=3)
        ):
            result = mgr.create(None, RunOptions(name="fg"))
        assert result.exit_code == 3
        vm = store.find_by_name_or_id("fg")
        assert vm.status == "STOPPED"
        assert vm.pid == 4242

    def test_signal_exit_reports_shell_status(self, ctx):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(wait_code=-15)
        ):
            result = mgr.create(None, RunOptions(name="killed"))
        assert result.exit_code == 143

    def test_version_argument_is_recorded(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc()
        ):
            mgr.create("7.6", RunOptions(detach=True, name="older", version="7.8"))
            mgr.create(None, RunOptions(detach=True, name="default", version="7.8"))
        assert store.find_by_name_or_id("older").version == "7.6"
        assert store.find_by_name_or_id("default").version == "7.8"

    def test_record_failure_stops_detached_process(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc()
        ), patch.object(store, "insert", side_effect=StoreError("disk full")), patch(
            "openbsd_up.vm.terminate", return_value=True
        ) as mock_term:
            with pytest.raises(StoreError, match="disk full"):
                mgr.create(None, RunOptions(detach=True, name="orphan"))
        assert mock_term.call_args[0][0] == 4242
        assert mock_term.call_args[1]["elevated"] is False

    def test_record_failure_stops_attached_process(self, ctx, store):
        proc = _proc()
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=proc
        ), patch.object(store, "insert", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                mgr.create(None, RunOptions(name="orphan"))
        proc.terminate.assert_called_once()
        proc.wait.assert_called_once()

    def test_bridge_is_provisioned(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.ensure_bridge"
        ) as mock_bridge, patch("openbsd_up.vm.run"), patch(
            "openbsd_up.vm.resolve_hypervisor_pid", return_value=5555
        ), patch("openbsd_up.vm.subprocess.Popen", return_value=_proc()):
            result = mgr.create(None, RunOptions(detach=True, bridge="br0", name="bridged"))
        mock_bridge.assert_called_once_with("br0")
        assert result.pid == 5555
        assert store.find_by_name_or_id("bridged").pid == 5555

    def test_run_image_boots_drive_without_iso(self, ctx, store, tmp_path):
        drive = tmp_path / "pulled.qcow2"
        drive.write_bytes(b"disk")
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.subprocess.Popen", return_value=_proc()) as mock_popen, patch(
            "openbsd_up.images.download_iso"
        ) as mock_dl:
            mgr.run_image(str(drive), "qcow2", RunOptions(detach=True, name="from-image"))
        mock_dl.assert_not_called()
        cmd = _spawned_cmd(mock_popen)
        assert "-cdrom" not in cmd
        assert f"file={os.path.realpath(drive)},format=qcow2,if=virtio" in cmd
        assert store.find_by_name_or_id("from-image").disk_format == "qcow2"


class TestStart:
    def test_bridged_record_uses_elevated_bridge_launch(self, ctx, store, make_vm):
        make_vm(name="my-vm", bridge="br0", port_forward="2222:22")
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.run") as mock_run, patch(
            "openbsd_up.vm.resolve_hypervisor_pid", return_value=5555
        ), patch("openbsd_up.vm.subprocess.Popen", return_value=_proc()) as mock_popen:
            result = mgr.start("my-vm", detach=True)

        cmd = _spawned_cmd(mock_popen)
        assert cmd[0] == "sudo"
        assert "bridge,id=net0,br=br0" in cmd
        assert not any(arg.startswith("user,") for arg in cmd)
        mock_run.assert_called_once_with(["sudo", "-v"])
        assert result.pid == 5555
        vm = store.find_by_name_or_id("my-vm")
        assert vm.status == "RUNNING"
        assert vm.pid == 5555

    def test_attached_bridged_start_records_emulator_pid(self, ctx, store, make_vm):
        make_vm(name="my-vm", bridge="br0")
        sleeps = []
        mgr = _make_mgr(ctx, sleeps)
        seen = {}
        proc = _proc(pid=100)

        def _wait():
            vm = store.find_by_name_or_id("my-vm")
            seen["running"] = (vm.status, vm.pid)
            return 0

        proc.wait.side_effect = _wait
        with patch("openbsd_up.vm.resolve_hypervisor_pid", return_value=555) as mock_resolve, patch(
            "openbsd_up.vm.subprocess.Popen", return_value=proc
        ) as mock_popen:
            result = mgr.start("my-vm")

        assert _spawned_cmd(mock_popen)[0] == "sudo"
        mock_resolve.assert_called_once_with(100)
        assert sleeps == [SPAWN_SETTLE_SECONDS]
        assert seen["running"] == ("RUNNING", 555)
        assert result.pid == 555
        vm = store.find_by_name_or_id("my-vm")
        assert (vm.status, vm.pid) == ("STOPPED", 555)

    def test_attached_bridged_create_records_emulator_pid(self, ctx, store):
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.resolve_boot_source", return_value=None), patch(
            "openbsd_up.vm.ensure_bridge"
        ), patch("openbsd_up.vm.resolve_hypervisor_pid", return_value=555), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(pid=100)
        ):
            result = mgr.create(None, RunOptions(bridge="br0", name="fg-bridged"))
        assert result.pid == 555
        assert store.find_by_name_or_id("fg-bridged").pid == 555

    def test_overrides_do_not_touch_stored_record(self, ctx, store, make_vm):
        make_vm(name="tuned")
        mgr = _make_mgr(ctx)
        overrides = Overrides(cpus=4, memory="4G", port_forward="8080:80")
        with patch("openbsd_up.vm.subprocess.Popen", return_value=_proc()) as mock_popen:
            mgr.start("tuned", detach=True, overrides=overrides)
        cmd = _spawned_cmd(mock_popen)
        assert cmd[cmd.index("-smp") + 1] == "4"
        assert cmd[cmd.index("-m") + 1] == "4G"
        assert "user,id=net0,hostfwd=tcp::8080-:80" in cmd
        vm = store.find_by_name_or_id("tuned")
        assert (vm.cpus, vm.memory, vm.port_forward) == (2, "2G", None)

    def test_reuses_stored_mac(self, ctx, make_vm):
        make_vm(name="stable")
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.subprocess.Popen", return_value=_proc()) as mock_popen:
            mgr.start("stable", detach=True)
        assert "e1000,netdev=net0,mac=52:54:00:12:34:56" in _spawned_cmd(mock_popen)

    def test_live_record_is_rejected(self, ctx, make_vm):
        make_vm(name="busy", status=VMStatus.RUNNING, pid=77)
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.is_alive", return_value=True), patch(
            "openbsd_up.vm.subprocess.Popen"
        ) as mock_popen:
            with pytest.raises(LaunchError, match="already running"):
                mgr.start("busy")
        mock_popen.assert_not_called()

    def test_stale_running_record_is_reconciled_then_started(self, ctx, store, make_vm):
        make_vm(name="stale", status=VMStatus.RUNNING, pid=77)
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.is_alive", return_value=False), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(pid=88)
        ):
            mgr.start("stale", detach=True)
        assert store.find_by_name_or_id("stale").pid == 88

    def test_failed_spawn_keeps_status(self, ctx, store, make_vm):
        make_vm(name="broken")
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.subprocess.Popen", return_value=_proc(exit_code=1)):
            with pytest.raises(LaunchError):
                mgr.start("broken", detach=True)
        vm = store.find_by_name_or_id("broken")
        assert vm.status == "STOPPED"
        assert vm.pid is None

    def test_attached_start_ends_stopped(self, ctx, store, make_vm):
        make_vm(name="fg")
        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.subprocess.Popen", return_value=_proc(pid=99, wait_code=0)):
            result = mgr.start("fg")
        assert result.exit_code == 0
        vm = store.find_by_name_or_id("fg")
        assert vm.status == "STOPPED"
        assert vm.pid == 99

    def test_unknown_vm(self, ctx):
        with pytest.raises(NotFoundError):
            _make_mgr(ctx).start("ghost")


class TestStop:
    def test_stop_marks_stopped(self, ctx, store, make_vm):
        make_vm(name="up", status=VMStatus.RUNNING, pid=1234)
        with patch("openbsd_up.vm.terminate", return_value=True) as mock_term:
            _make_mgr(ctx).stop("up")
        assert mock_term.call_args[0][0] == 1234
        assert mock_term.call_args[1]["elevated"] is False
        assert store.find_by_name_or_id("up").status == "STOPPED"

    def test_bridged_stop_is_elevated(self, ctx, make_vm):
        make_vm(name="br", status=VMStatus.RUNNING, pid=1234, bridge="br0")
        with patch("openbsd_up.vm.terminate", return_value=True) as mock_term:
            _make_mgr(ctx).stop("br")
        assert mock_term.call_args[1]["elevated"] is True

    def test_failed_terminate_keeps_running(self, ctx, store, make_vm):
        make_vm(name="stuck", status=VMStatus.RUNNING, pid=1234)
        with patch("openbsd_up.vm.terminate", return_value=False):
            with pytest.raises(StopCommandError, match="Failed to stop virtual machine stuck"):
                _make_mgr(ctx).stop("stuck")
        assert store.find_by_name_or_id("stuck").status == "RUNNING"

    def test_unknown_vm_leaves_store_unchanged(self, ctx, store, make_vm):
        make_vm(name="other", status=VMStatus.RUNNING, pid=1)
        before = [vm.to_dict() for vm in store.list(all=True)]
        with patch("openbsd_up.vm.terminate") as mock_term:
            with pytest.raises(NotFoundError):
                _make_mgr(ctx).stop("unknown-vm")
        mock_term.assert_not_called()
        assert [vm.to_dict() for vm in store.list(all=True)] == before

    def test_already_stopped_is_noop(self, ctx, make_vm):
        make_vm(name="idle", pid=1234)
        with patch("openbsd_up.vm.terminate") as mock_term:
            vm = _make_mgr(ctx).stop("idle")
        mock_term.assert_not_called()
        assert vm.status == "STOPPED"


class TestRestart:
    def test_stop_cooldown_relaunch(self, ctx, store, make_vm):
        make_vm(name="cycle", status=VMStatus.RUNNING, pid=100, port_forward="2222:22")
        sleeps = []
        mgr = _make_mgr(ctx, sleeps)
        with patch("openbsd_up.vm.terminate", return_value=True) as mock_term, patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(pid=200)
        ) as mock_popen:
            result = mgr.restart("cycle")

        mock_term.assert_called_once()
        assert sleeps == [RESTART_COOLDOWN_SECONDS, SPAWN_SETTLE_SECONDS]
        assert mock_popen.call_args[1]["start_new_session"] is True
        assert result.pid == 200
        vm = store.find_by_name_or_id("cycle")
        assert (vm.status, vm.pid) == ("RUNNING", 200)

    def test_failed_relaunch_leaves_stopped(self, ctx, store, make_vm):
        make_vm(name="flaky", status=VMStatus.RUNNING, pid=100)
        with patch("openbsd_up.vm.terminate", return_value=True), patch(
            "openbsd_up.vm.subprocess.Popen", return_value=_proc(exit_code=1)
        ):
            with pytest.raises(LaunchError):
                _make_mgr(ctx).restart("flaky")
        assert store.find_by_name_or_id("flaky").status == "STOPPED"

    def test_failed_stop_aborts_restart(self, ctx, store, make_vm):
        make_vm(name="stuck", status=VMStatus.RUNNING, pid=100)
        with patch("openbsd_up.vm.terminate", return_value=False), patch(
            "openbsd_up.vm.subprocess.Popen"
        ) as mock_popen:
            with pytest.raises(StopCommandError):
                _make_mgr(ctx).restart("stuck")
        mock_popen.assert_not_called()
        assert store.find_by_name_or_id("stuck").status == "RUNNING"


class TestRemoveAndList:
    def test_remove_deletes_record(self, ctx, store, make_vm):
        make_vm(name="old")
        _make_mgr(ctx).remove("old")
        assert store.find_by_name_or_id("old") is None

    def test_remove_running_warns(self, ctx, make_vm):
        make_vm(name="live", status=VMStatus.RUNNING, pid=55)
        with patch("openbsd_up.vm.is_alive", return_value=True), patch("openbsd_up.vm.log") as mock_log:
            _make_mgr(ctx).remove("live")
        levels = [call.args[0] for call in mock_log.call_args_list]
        assert "WARN" in levels

    def test_list_reconciles_dead_processes(self, ctx, store, make_vm):
        make_vm(name="alive", status=VMStatus.RUNNING, pid=1)
        make_vm(name="dead", status=VMStatus.RUNNING, pid=2)
        with patch("openbsd_up.vm.is_alive", side_effect=lambda pid: pid == 1):
            running = _make_mgr(ctx).list()
        assert [vm.name for vm in running] == ["alive"]
        assert store.find_by_name_or_id("dead").status == "STOPPED"


class TestStatusTruth:
    def test_status_tracks_liveness_across_transitions(self, ctx, store, make_vm):
        make_vm(name="truth")
        live = set()

        def _spawn(*args, **kwargs):
            proc = _proc(pid=300 + len(live))
            live.add(proc.pid)
            return proc

        def _terminate(pid, **kwargs):
            live.discard(pid)
            return True

        def _check():
            vm = store.find_by_name_or_id("truth")
            assert (vm.status == "RUNNING") == (vm.pid in live)

        mgr = _make_mgr(ctx)
        with patch("openbsd_up.vm.subprocess.Popen", side_effect=_spawn) as mock_popen, patch(
            "openbsd_up.vm.terminate", side_effect=_terminate
        ), patch("openbsd_up.vm.is_alive", side_effect=lambda pid: pid in live):
            mgr.start("truth", detach=True)
            _check()
            mgr.restart("truth")
            _check()
            mgr.stop("truth")
            _check()
            mgr.start("truth", detach=True)
            _check()
            mgr.stop("truth")
            _check()
            mgr.start("truth", detach=True)
            _check()

        devices = {
            call.args[0][call.args[0].index("-device") + 1] for call in mock_popen.call_args_list
        }
        assert mock_popen.call_count == 4
        assert devices == {"e1000,netdev=net0,mac=52:54:00:12:34:56"}
