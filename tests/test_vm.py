"""Tests for vmctl.vm module."""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from vmctl.config import build_network_config, build_vm_config
from vmctl.exceptions import (
    AlreadyExists,
    CanceledByCaller,
    DiskOperationFailed,
    HypervisorLaunchFailed,
    ImageNotFound,
    InvalidState,
    ManagerError,
    ReadinessTimeout,
    TemplateNotFound,
    VMNotFound,
)
from vmctl.models import Template, TemplateStatus, VMStatus
from vmctl.qemu import QemuSupervisor, pid_alive
from vmctl.retry import CancelToken

GONE_PID = 999999


def _config(name):
    return build_vm_config(name, "ubuntu-22.04", network=build_network_config(name))


class TestCreateVM:
    def test_create_records_state(self, manager, vm_config):
        vm = manager.create_vm(vm_config)
        vm_dir = manager.vm_dir("t1")
        assert vm.status == VMStatus.CREATED
        assert (vm_dir / "disk.qcow2").exists()
        assert (vm_dir / "cidata.iso").exists()
        assert "ssh_authorized_keys" in (vm_dir / "user-data").read_text()
        assert (vm_dir / "status.txt").read_text().startswith("VM")
        assert vm.metadata["arch"] == "x86_64"
        assert vm.ssh_info.password is None
        assert manager.state.load("t1") == vm

    def test_mac_generated_when_missing(self, manager):
        vm = manager.create_vm(_config("t2"))
        assert vm.config.network.mac_address.startswith("52:54:00:")

    def test_password_mode(self, manager):
        config = build_vm_config("t3", "ubuntu-22.04", auth_mode="password")
        vm = manager.create_vm(config)
        assert vm.ssh_info.password
        user_data = (manager.vm_dir("t3") / "user-data").read_text()
        assert "passwd:" in user_data
        assert vm.ssh_info.password not in user_data

    def test_missing_image(self, manager):
        config = build_vm_config("t1", "ubuntu-24.04")
        with pytest.raises(ImageNotFound):
            manager.create_vm(config)
        assert not manager.vm_dir("t1").exists()

    def test_duplicate_name(self, manager, vm_config):
        manager.create_vm(vm_config)
        with pytest.raises(AlreadyExists):
            manager.create_vm(_config("t1"))
        assert manager.state.load("t1").config.network.mac_address == "52:54:00:12:34:56"

    def test_partial_create_cleaned_up(self, manager, vm_config):
        with patch.object(manager.builder, "package_iso", side_effect=DiskOperationFailed("no ISO tool")):
            with pytest.raises(DiskOperationFailed):
                manager.create_vm(vm_config)
        assert not manager.vm_dir("t1").exists()
        with pytest.raises(VMNotFound):
            manager.get_vm("t1")


class TestLifecycle:
    def test_create_initialize_restart_stop_delete(self, manager, vm_config, connector):
        manager.create_vm(vm_config)
        vm_dir = manager.vm_dir("t1")

        vm = manager.start_vm("t1")
        assert vm.status == VMStatus.INITIALIZING
        assert vm.ssh_info.port > 0
        assert vm.console_port and vm.console_port != vm.ssh_info.port
        first_pid = vm.pid
        assert pid_alive(first_pid, vm_dir)

        vm = manager.wait_for_initialization("t1")
        assert vm.status == VMStatus.READY
        assert vm.metadata["initialized"] is True
        assert vm.metadata["ready_signal"] == "ssh"
        assert vm.metadata["cloud_init_status"] == "status: done"
        connector.request_shutdown.assert_called_once()
        assert not pid_alive(first_pid, vm_dir)
        assert manager.registry.ports_for("t1") == []
        assert manager.get_vm("t1").status == VMStatus.READY

        vm = manager.start_vm("t1")
        assert vm.status == VMStatus.STARTED
        assert pid_alive(vm.pid, vm_dir)
        second_pid = vm.pid

        vm = manager.stop_vm("t1")
        assert vm.status == VMStatus.STOPPED
        assert not pid_alive(second_pid, vm_dir)
        assert manager.state.load("t1").status == VMStatus.STOPPED

        manager.delete_vm("t1")
        assert not vm_dir.exists()
        with pytest.raises(VMNotFound):
            manager.get_vm("t1")

    def test_restart_waits_for_readiness(self, manager, vm_config, connector):
        manager.create_vm(vm_config)
        manager.start_vm("t1")
        manager.wait_for_initialization("t1")
        connector.check_login.reset_mock()
        vm = manager.start_vm("t1", wait_ready=True)
        assert vm.status == VMStatus.STARTED
        connector.check_login.assert_called()
        manager.stop_vm("t1")

    def test_console_prompt_completes_initialization(self, manager, vm_config, connector):
        connector.check_login.side_effect = OSError("connection refused")
        manager.create_vm(vm_config)
        manager.start_vm("t1")
        with open(manager.vm_dir("t1") / "qemu.log", "a") as handle:
            handle.write("\nUbuntu 22.04.4 LTS t1 ttyS0\n\nt1 login: ")
        vm = manager.wait_for_initialization("t1")
        assert vm.status == VMStatus.READY
        assert vm.metadata["ready_signal"] == "console"
        connector.request_shutdown.assert_not_called()

    def test_launch_failure_before_spawn_reverts_status(self, manager, vm_config):
        manager.create_vm(vm_config)
        with patch.object(manager.supervisor, "launch", side_effect=HypervisorLaunchFailed("qemu missing")):
            with pytest.raises(HypervisorLaunchFailed):
                manager.start_vm("t1")
        vm = manager.state.load("t1")
        assert vm.status == VMStatus.CREATED
        assert vm.last_error == "qemu missing"
        assert vm.ssh_info.port == 0
        assert manager.registry.ports_for("t1") == []

    def test_immediate_exit_after_spawn_marks_failed(self, manager, vm_config):
        manager.create_vm(vm_config)
        manager.supervisor.settle_seconds = 1.0

        def crashing(vm, vm_dir, arch, attach_seed):
            return [sys.executable, "-c", "print('qemu: boom')", str(vm_dir)]

        with patch.object(QemuSupervisor, "build_command", side_effect=crashing):
            with pytest.raises(HypervisorLaunchFailed) as exc:
                manager.start_vm("t1")

        vm = manager.state.load("t1")
        assert vm.status == VMStatus.FAILED
        assert "exited immediately" in vm.last_error
        assert "qemu: boom" in exc.value.details
        assert manager.registry.ports_for("t1") == []
        with pytest.raises(InvalidState):
            manager.start_vm("t1")
        assert "qemu: boom" in (manager.vm_dir("t1") / "qemu.log").read_text()

    def test_concurrent_starts_get_distinct_ports(self, manager):
        names = ["a1", "a2", "a3"]
        for name in names:
            manager.create_vm(_config(name))
        results = {}

        def _start(name):
            results[name] = manager.start_vm(name)

        threads = [threading.Thread(target=_start, args=(name,)) for name in names]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        ports = [port for vm in results.values() for port in (vm.ssh_info.port, vm.console_port)]
        assert len(ports) == 6
        assert len(set(ports)) == 6
        for name in names:
            manager.stop_vm(name)


class TestFailures:
    def test_cancel_kills_and_marks_failed(self, manager, vm_config, connector):
        connector.check_login.side_effect = OSError("connection refused")
        manager.create_vm(vm_config)
        pid = manager.start_vm("t1").pid
        token = CancelToken()
        threading.Timer(0.3, token.cancel).start()

        with pytest.raises(CanceledByCaller) as exc:
            manager.wait_for_initialization("t1", cancel=token)

        vm = manager.state.load("t1")
        assert vm.status == VMStatus.FAILED
        assert vm.last_error == "canceled by caller"
        assert not pid_alive(pid, manager.vm_dir("t1"))
        assert manager.registry.ports_for("t1") == []
        assert "VM:       t1" in exc.value.details

    def test_cancel_during_guest_shutdown_marks_failed(self, manager, vm_config, connector):
        token = CancelToken()

        def _shutdown(ssh_info, vm_dir):
            token.cancel()
            return True

        connector.request_shutdown.side_effect = _shutdown
        manager.create_vm(vm_config)
        pid = manager.start_vm("t1").pid

        with pytest.raises(CanceledByCaller):
            manager.wait_for_initialization("t1", cancel=token)

        vm = manager.state.load("t1")
        assert vm.status == VMStatus.FAILED
        assert vm.last_error == "canceled by caller"
        assert not pid_alive(pid, manager.vm_dir("t1"))
        assert manager.registry.ports_for("t1") == []

    def test_cancel_interrupts_wait_for_guest_exit(self, manager, vm_config, connector):
        manager.settings.stop_timeout = 30
        token = CancelToken()
        connector.request_shutdown.side_effect = lambda ssh_info, vm_dir: threading.Timer(0.2, token.cancel).start()
        manager.create_vm(vm_config)
        manager.start_vm("t1")

        start = time.monotonic()
        with pytest.raises(CanceledByCaller):
            manager.wait_for_initialization("t1", cancel=token)
        assert time.monotonic() - start < 10
        assert manager.state.load("t1").status == VMStatus.FAILED

    def test_timeout_marks_failed(self, manager, vm_config, connector):
        connector.check_login.side_effect = OSError("connection refused")
        manager.create_vm(vm_config)
        pid = manager.start_vm("t1").pid
        with pytest.raises(ReadinessTimeout) as exc:
            manager.wait_for_initialization("t1", timeout=0.3)
        assert manager.state.load("t1").status == VMStatus.FAILED
        assert not pid_alive(pid, manager.vm_dir("t1"))
        assert "Status:   failed" in exc.value.details

    def test_hypervisor_exit_during_boot(self, manager, vm_config, connector, sleeper):
        connector.check_login.side_effect = OSError("connection refused")
        manager.create_vm(vm_config)

        def short_lived(vm, vm_dir, arch, attach_seed):
            return sleeper(vm_dir, 0.5)

        with patch.object(QemuSupervisor, "build_command", side_effect=short_lived):
            manager.start_vm("t1")
        with pytest.raises(HypervisorLaunchFailed):
            manager.wait_for_initialization("t1")
        vm = manager.state.load("t1")
        assert vm.status == VMStatus.FAILED
        assert "exited before boot" in vm.last_error

    def test_stop_during_initialization_fails_vm(self, manager, vm_config):
        manager.create_vm(vm_config)
        manager.start_vm("t1")
        vm = manager.stop_vm("t1")
        assert vm.status == VMStatus.FAILED
        assert vm.last_error == "stopped during initialization"

    def test_failed_vm_can_be_deleted(self, manager, seed_vm):
        seed_vm(VMStatus.FAILED)
        manager.delete_vm("t1")
        assert not manager.vm_dir("t1").exists()


class TestStateMachine:
    @pytest.mark.parametrize(
        "status",
        [VMStatus.INITIALIZING, VMStatus.STARTING, VMStatus.STARTED, VMStatus.FAILED],
    )
    def test_start_rejected(self, manager, seed_vm, status):
        seed_vm(status, initialized=True)
        with (
            patch.object(manager.supervisor, "is_running", return_value=True),
            patch.object(manager.registry, "reserve_port") as reserve,
        ):
            with pytest.raises(InvalidState):
                manager.start_vm("t1")
        reserve.assert_not_called()
        assert manager.state.load("t1").status == status

    @pytest.mark.parametrize(
        "status",
        [VMStatus.CREATED, VMStatus.READY, VMStatus.STOPPED, VMStatus.STARTED, VMStatus.FAILED],
    )
    def test_wait_rejected(self, manager, seed_vm, status):
        seed_vm(status, initialized=True)
        with patch.object(manager.supervisor, "is_running", return_value=True):
            with pytest.raises(InvalidState):
                manager.wait_for_initialization("t1")
        assert manager.state.load("t1").status == status

    @pytest.mark.parametrize("status", [VMStatus.CREATED, VMStatus.READY, VMStatus.STOPPED, VMStatus.FAILED])
    def test_stop_rejected(self, manager, seed_vm, status):
        seed_vm(status)
        with pytest.raises(InvalidState):
            manager.stop_vm("t1")
        assert manager.state.load("t1").status == status

    def test_stop_of_vanished_process_succeeds(self, manager, seed_vm):
        seed_vm(VMStatus.STARTED, pid=GONE_PID, initialized=True)
        assert manager.stop_vm("t1").status == VMStatus.STOPPED

    def test_unknown_vm(self, manager):
        for operation in (manager.get_vm, manager.start_vm, manager.stop_vm, manager.delete_vm):
            with pytest.raises(VMNotFound):
                operation("ghost")


class TestReconcile:
    def test_started_without_process_becomes_stopped(self, manager, seed_vm):
        seed_vm(VMStatus.STARTED, pid=GONE_PID, initialized=True)
        assert manager.get_vm("t1").status == VMStatus.STOPPED
        assert manager.state.load("t1").status == VMStatus.STOPPED

    def test_interrupted_initialization_becomes_failed(self, manager, seed_vm):
        seed_vm(VMStatus.INITIALIZING, pid=GONE_PID)
        vm = manager.get_vm("t1")
        assert vm.status == VMStatus.FAILED
        assert "interrupted" in vm.last_error
        assert manager.state.load("t1").status == VMStatus.FAILED

    def test_live_process_kept(self, manager, seed_vm, sleeper):
        vm_dir = manager.vm_dir("t1")
        vm_dir.mkdir(parents=True)
        proc = subprocess.Popen(sleeper(vm_dir))
        try:
            seed_vm(VMStatus.STARTED, pid=proc.pid, initialized=True)
            assert manager.get_vm("t1").status == VMStatus.STARTED
        finally:
            proc.kill()
            proc.wait()
        assert manager.get_vm("t1").status == VMStatus.STOPPED

    @pytest.mark.parametrize("session_alive, expected", [(True, VMStatus.STARTED), (False, VMStatus.STOPPED)])
    def test_tmux_vm_needs_its_session(self, manager, seed_vm, sleeper, session_alive, expected):
        vm_dir = manager.vm_dir("t1")
        vm_dir.mkdir(parents=True)
        proc = subprocess.Popen(sleeper(vm_dir))
        manager.multiplexer = MagicMock()
        manager.multiplexer.has_session.return_value = session_alive
        try:
            seed_vm(VMStatus.STARTED, pid=proc.pid, initialized=True, launch_strategy="tmux")
            assert manager.get_vm("t1").status == expected
            manager.multiplexer.has_session.assert_called_with("t1")
            assert pid_alive(proc.pid, vm_dir) is session_alive
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait()

    def test_list_vms_reconciles_each(self, manager, seed_vm):
        seed_vm(VMStatus.STARTING, pid=GONE_PID, initialized=True)
        manager.create_vm(_config("a0"))
        assert [(vm.name, vm.status) for vm in manager.list_vms()] == [("a0", "created"), ("t1", "stopped")]


class TestCleanupAndAccess:
    def test_cleanup_moves_everything(self, manager, vm_config):
        manager.create_vm(vm_config)
        manager.create_vm(_config("t2"))
        pid = manager.start_vm("t1").pid
        assert manager.cleanup_vms() == ["t1", "t2"]
        assert not pid_alive(pid, manager.vm_dir("t1"))
        assert (manager.settings.deleted_dir / "t2" / "vm-state.json").exists()
        assert manager.list_vms() == []

    def test_exec_requires_running_vm(self, manager, vm_config):
        manager.create_vm(vm_config)
        with pytest.raises(InvalidState):
            manager.exec_command("t1", "uptime")

    def test_exec_on_running_vm(self, manager, vm_config, connector):
        manager.create_vm(vm_config)
        manager.start_vm("t1")
        connector.run_command.return_value = (0, "up 1 min\n", "")
        assert manager.exec_command("t1", "uptime") == (0, "up 1 min\n", "")
        assert connector.run_command.call_args.args[2] == "uptime"
        manager.stop_vm("t1")

    def test_failure_report_includes_console_tail(self, manager, vm_config):
        manager.create_vm(vm_config)
        (manager.vm_dir("t1") / "qemu.log").write_text("kernel panic\n")
        vm = manager.state.load("t1")
        vm.last_error = "boom"
        report = manager.failure_report(vm)
        assert "Error:    boom" in report
        assert "  kernel panic" in report

    def test_stream_console(self, manager, vm_config):
        manager.create_vm(vm_config)
        (manager.vm_dir("t1") / "qemu.log").write_text("t1 login: ")
        chunks = []
        assert manager.stream_console("t1", chunks.append, CancelToken()) is True
        assert chunks == ["t1 login: "]


class TestTemplates:
    def _ready_template(self, manager, name="base", status=TemplateStatus.READY):
        template = Template(
            name=name,
            description="web base",
            base_image="ubuntu-22.04",
            status=status,
            metadata={"arch": "x86_64"},
        )
        manager.templates.save(template)
        manager.templates.disk_path(name).write_bytes(b"template disk")
        return template

    def test_create_template_provisions_and_discards_setup_vm(self, manager, connector):
        def _fake_convert(source, destination):
            destination.write_bytes(source.read_bytes())

        with patch("vmctl.vm.convert_disk", side_effect=_fake_convert) as convert:
            template = manager.create_template("base", "web base", "ubuntu-22.04", packages=["nginx", "nginx"])

        assert template.status == TemplateStatus.READY
        assert template.packages == ["nginx"]
        assert template.metadata["arch"] == "x86_64"
        assert manager.get_template("base").status == TemplateStatus.READY
        source, destination = convert.call_args.args
        assert source.name == "disk.qcow2"
        assert destination == manager.templates.disk_path("base")
        assert destination.read_bytes() == b"overlay"
        commands = [call.args[2] for call in connector.run_command.call_args_list]
        assert "cloud-init status --wait" in commands
        assert not manager.state.exists("template-base-setup")
        assert [t.name for t in manager.list_templates()] == ["base"]

    def test_cloud_init_errors_mark_template_error(self, manager, connector):
        connector.run_command.return_value = (1, "status: error\n", "")
        with patch("vmctl.vm.convert_disk") as convert:
            with pytest.raises(ManagerError, match="cloud-init finished with errors"):
                manager.create_template("base", "web base", "ubuntu-22.04")
        convert.assert_not_called()
        template = manager.get_template("base")
        assert template.status == TemplateStatus.ERROR
        assert "cloud-init finished with errors" in template.metadata["error"]
        assert not manager.state.exists("template-base-setup")

    def test_duplicate_template_rejected(self, manager):
        self._ready_template(manager)
        with pytest.raises(AlreadyExists):
            manager.create_template("base", "again", "ubuntu-22.04")

    def test_vm_backed_by_template(self, manager):
        self._ready_template(manager)
        with patch("vmctl.vm.create_overlay_disk") as overlay:
            vm = manager.create_vm(build_vm_config("t2", "base"), template="base")
        backing, disk, size = overlay.call_args.args
        assert backing == manager.templates.disk_path("base")
        assert disk == manager.vm_dir("t2") / "disk.qcow2"
        assert vm.config.base_image == "ubuntu-22.04"
        assert vm.metadata["template"] == "base"
        assert vm.metadata["arch"] == "x86_64"

    def test_template_must_be_ready(self, manager):
        self._ready_template(manager, status=TemplateStatus.CREATING)
        with pytest.raises(InvalidState, match="not ready"):
            manager.create_vm(build_vm_config("t2", "base"), template="base")
        assert not manager.vm_dir("t2").exists()

    def test_unknown_template(self, manager):
        with pytest.raises(TemplateNotFound):
            manager.create_vm(build_vm_config("t2", "base"), template="ghost")
        with pytest.raises(TemplateNotFound):
            manager.delete_template("ghost")

    def test_delete_template_in_use_rejected(self, manager):
        self._ready_template(manager)
        manager.create_vm(build_vm_config("t2", "base"), template="base")
        with pytest.raises(InvalidState, match="t2"):
            manager.delete_template("base")
        manager.delete_vm("t2")
        manager.delete_template("base")
        assert not manager.templates.template_dir("base").exists()
