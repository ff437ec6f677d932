"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List
from unittest.mock import MagicMock, patch

import pytest

from vmctl.config import Settings, build_network_config, build_vm_config
from vmctl.credentials import CredentialResolver
from vmctl.exceptions import ManagerError
from vmctl.models import VM, SSHInfo, VMConfig
from vmctl.qemu import QemuSupervisor
from vmctl.registry import ProcessRegistry
from vmctl.runtime import HostInfo
from vmctl.ssh import SSHConnector
from vmctl.vm import VMManager

TEST_PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITestKeyMaterial test@host"


def sleeper_command(vm_dir: Path, seconds: float = 60) -> List[str]:
    """A harmless stand-in for qemu whose command line references the VM directory."""
    return [sys.executable, "-c", f"import time; time.sleep({seconds})", str(vm_dir)]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        home=tmp_path / "home",
        init_timeout=5,
        ssh_interval=0.05,
        console_interval=0.05,
        stop_timeout=1,
        monitor_interval=0.05,
        generate_keys=False,
    )


@pytest.fixture
def ssh_dir(tmp_path) -> Path:
    path = tmp_path / "dot-ssh"
    path.mkdir()
    (path / "id_ed25519.pub").write_text(TEST_PUBLIC_KEY + "\n")
    return path


@pytest.fixture
def vm_config() -> VMConfig:
    """Return the canonical two-CPU VM used across lifecycle tests."""
    return build_vm_config(
        "t1",
        "ubuntu-22.04",
        cpus=2,
        memory="2G",
        disk_size="20G",
        network=build_network_config("t1", mac_address="52:54:00:12:34:56"),
    )


@pytest.fixture
def base_image(settings) -> Path:
    settings.images_dir.mkdir(parents=True)
    image = settings.images_dir / "ubuntu-22.04.img"
    image.write_bytes(b"QFI\xfb")
    return image


@pytest.fixture
def connector() -> MagicMock:
    mock = MagicMock(spec=SSHConnector)
    mock.check_login.return_value = True
    mock.request_shutdown.return_value = True
    mock.run_command.return_value = (0, "status: done\n", "")
    return mock


@pytest.fixture
def manager(settings, ssh_dir, connector, base_image):
    """A VMManager whose hypervisor is a sleeping Python process and whose disk tools are stubbed."""
    registry = ProcessRegistry()
    supervisor = QemuSupervisor(
        registry,
        host=HostInfo(system="linux", arch="x86_64", kvm=False, hvf=False),
        settle_seconds=0.05,
    )
    mgr = VMManager(
        settings,
        registry=registry,
        resolver=CredentialResolver(ssh_dir=ssh_dir, generate_keys=False),
        connector=connector,
        supervisor=supervisor,
    )

    def _fake_overlay(base, disk, size):
        disk.write_bytes(b"overlay")

    def _fake_iso(sources, output):
        output.write_bytes(b"iso")
        return output

    with (
        patch("vmctl.vm.create_overlay_disk", side_effect=_fake_overlay),
        patch.object(mgr.builder, "package_iso", side_effect=_fake_iso),
        patch.object(
            QemuSupervisor,
            "build_command",
            side_effect=lambda vm, vm_dir, arch, attach_seed: sleeper_command(vm_dir),
        ),
    ):
        yield mgr
        for name in registry.tracked():
            try:
                vm = mgr.state.load(name)
            except ManagerError:
                continue
            supervisor.kill(vm, mgr.vm_dir(name))


@pytest.fixture
def seed_vm(manager, vm_config):
    """Write a VM in an arbitrary status straight to the state store."""

    def _seed(status: str, **metadata) -> VM:
        manager.vm_dir(vm_config.name).mkdir(parents=True, exist_ok=True)
        vm = VM(
            name=vm_config.name,
            config=vm_config,
            ssh_info=SSHInfo(username="ubuntu"),
            status=status,
            metadata=dict(metadata),
        )
        manager.state.save(vm)
        return vm

    return _seed


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


_SETTINGS_ENV_VARS = [
    "VMCTL_HOME",
    "VMCTL_LAUNCH",
    "VMCTL_SSH_USER",
    "VMCTL_INIT_TIMEOUT",
    "VMCTL_SSH_INTERVAL",
    "VMCTL_CONSOLE_INTERVAL",
    "VMCTL_STOP_TIMEOUT",
    "VMCTL_MONITOR_INTERVAL",
    "VMCTL_AGENT_KEY_LABELS",
    "VMCTL_GENERATE_KEYS",
    "VMCTL_IMAGE_CATALOG",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def sleeper():
    return sleeper_command
