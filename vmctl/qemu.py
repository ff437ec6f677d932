"""QEMU process supervision for vmctl."""

from __future__ import annotations

import json
import shlex
import socket
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

import psutil

from vmctl.constants import (
    CONSOLE_LOG_NAME,
    DISK_FILE_NAME,
    GUEST_SSH_PORT,
    LAUNCH_SETTLE_SECONDS,
    PID_FILE_NAME,
    SEED_ISO_NAME,
    SUPPORTED_ARCHES,
)
from vmctl.exceptions import DiskOperationFailed, HypervisorExited, HypervisorLaunchFailed, ManagerError
from vmctl.models import VM
from vmctl.network import render_network_args
from vmctl.registry import ProcessHandle, ProcessRegistry
from vmctl.retry import CancelToken
from vmctl.runtime import HostInfo, detect_host, find_firmware
from vmctl.utils import log, run, tail_text, wait_for_path

EXIT_POLL_INTERVAL = 0.1

if TYPE_CHECKING:
    from vmctl.tmux import SessionMultiplexer


def image_format(path: Path) -> str:
    """Ask qemu-img for the on-disk format; cloud images are almost always qcow2."""
    try:
        result = run(["qemu-img", "info", "--output=json", str(path)], capture_output=True)
    except FileNotFoundError:
        raise DiskOperationFailed("qemu-img not found in PATH")
    except subprocess.CalledProcessError as exc:
        raise DiskOperationFailed(f"qemu-img info failed for {path}", details=(exc.stderr or "").strip())
    try:
        return json.loads(result.stdout).get("format") or "qcow2"
    except ValueError:
        return "qcow2"


def create_overlay_disk(base: Path, disk: Path, size: str) -> None:
    """Copy-on-write clone of ``base`` grown to ``size``; the base stays read-only."""
    cmd = ["qemu-img", "create", "-f", "qcow2", "-F", image_format(base), "-b", str(base), str(disk), size]
    try:
        run(cmd, capture_output=True)
    except FileNotFoundError:
        raise DiskOperationFailed("qemu-img not found in PATH")
    except subprocess.CalledProcessError as exc:
        raise DiskOperationFailed(
            f"qemu-img could not create {disk}",
            details=((exc.stderr or "").strip() or (exc.stdout or "").strip()),
        )
    log("INFO", f"Created {size} overlay {disk} backed by {base}")


def convert_disk(source: Path, destination: Path) -> None:
    """Flatten ``source`` and its backing chain into a standalone qcow2 image."""
    cmd = ["qemu-img", "convert", "-O", "qcow2", str(source), str(destination)]
    try:
        run(cmd, capture_output=True)
    except FileNotFoundError:
        raise DiskOperationFailed("qemu-img not found in PATH")
    except subprocess.CalledProcessError as exc:
        destination.unlink(missing_ok=True)
        raise DiskOperationFailed(
            f"qemu-img could not convert {source}",
            details=((exc.stderr or "").strip() or (exc.stdout or "").strip()),
        )
    log("INFO", f"Converted {source} into standalone image {destination}")


def qmp_command(port: int, command: str, timeout: float = 5.0) -> bool:
    """Run one QMP command over TCP; False when the monitor is unreachable or rejects it."""
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=timeout) as sock:
            stream = sock.makefile("rwb")
            stream.readline()  # greeting
            for payload in ({"execute": "qmp_capabilities"}, {"execute": command}):
                stream.write(json.dumps(payload).encode("utf-8") + b"\n")
                stream.flush()
                while True:
                    line = stream.readline()
                    if not line:
                        return False
                    reply = json.loads(line)
                    if "event" in reply:
                        continue
                    if "error" in reply:
                        log("DEBUG", f"QMP {payload['execute']} rejected: {reply['error']}")
                        return False
                    break
            return True
    except (OSError, ValueError) as exc:
        log("DEBUG", f"QMP {command} on port {port} failed: {exc}")
        return False


def pid_alive(pid: Optional[int], vm_dir: Path) -> bool:
    """True if ``pid`` is a live process whose command line references ``vm_dir``."""
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        return any(str(vm_dir) in arg for arg in proc.cmdline())
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return psutil.pid_exists(pid)


class QemuSupervisor:
    """Launch, observe and stop one QEMU process per VM."""

    def __init__(
        self,
        registry: ProcessRegistry,
        multiplexer: Optional["SessionMultiplexer"] = None,
        host: Optional[HostInfo] = None,
        settle_seconds: float = LAUNCH_SETTLE_SECONDS,
    ) -> None:
        self.registry = registry
        self.multiplexer = multiplexer
        self._host = host
        self.settle_seconds = settle_seconds

    @property
    def host(self) -> HostInfo:
        if self._host is None:
            self._host = detect_host()
        return self._host

    # -- command construction ----------------------------------------------

    def build_command(self, vm: VM, vm_dir: Path, arch: str, attach_seed: bool) -> List[str]:
        profile = SUPPORTED_ARCHES[arch]
        accel = self.host.accelerator(arch)
        machine = f"{profile['machine']},accel={accel}"
        if arch == "aarch64" and accel == "hvf":
            machine += ",highmem=on"
        cpu = "host" if accel in ("kvm", "hvf") else profile["tcg_fallback"]

        cmd = [
            profile["binary"],
            "-name",
            vm.name,
            "-machine",
            machine,
            "-cpu",
            cpu,
            "-smp",
            str(vm.config.cpus),
            "-m",
            vm.config.memory,
            "-nographic",
        ]
        firmware = find_firmware(profile["firmware"])
        if firmware is not None:
            cmd += ["-bios", str(firmware)]
        elif profile["firmware_required"]:
            searched = ", ".join(str(path) for path in profile["firmware"])
            raise HypervisorLaunchFailed(f"No UEFI firmware found for {arch}; searched {searched}")

        cmd += ["-drive", f"file={vm_dir / DISK_FILE_NAME},if=virtio,format=qcow2"]
        if attach_seed:
            cmd += ["-drive", f"file={vm_dir / SEED_ISO_NAME},if=virtio,format=raw,readonly=on"]

        ssh_port = vm.ssh_info.port if vm.config.network.mode == "user" else None
        cmd += render_network_args(vm.config.network, ssh_port=ssh_port, host_system=self.host.system)
        if vm.console_port:
            cmd += ["-qmp", f"tcp:127.0.0.1:{vm.console_port},server=on,wait=off"]
        cmd += ["-pidfile", str(vm_dir / PID_FILE_NAME)]
        if vm.config.extra_args:
            cmd += shlex.split(vm.config.extra_args)
        return cmd

    def allocate_ports(self, vm: VM) -> None:
        """Reserve the SSH forward and QMP ports and record them on the VM."""
        if vm.config.network.mode == "user":
            vm.ssh_info.host = "127.0.0.1"
            vm.ssh_info.port = self.registry.reserve_port(vm.name)
        else:
            vm.ssh_info.host = vm.config.network.static_address or ""
            vm.ssh_info.port = GUEST_SSH_PORT
        vm.console_port = self.registry.reserve_port(vm.name)

    # -- launch --------------------------------------------------------------

    def launch(self, vm: VM, vm_dir: Path, arch: str, attach_seed: bool, strategy: str = "direct") -> ProcessHandle:
        cmd = self.build_command(vm, vm_dir, arch, attach_seed)
        log_path = vm_dir / CONSOLE_LOG_NAME
        (vm_dir / PID_FILE_NAME).unlink(missing_ok=True)
        log("INFO", f"Launching {vm.name}: {' '.join(shlex.quote(part) for part in cmd)}")
        if strategy == "tmux":
            handle = self._launch_tmux(vm, vm_dir, cmd, log_path)
        elif strategy == "direct":
            handle = self._launch_direct(vm, vm_dir, cmd, log_path)
        else:
            raise ManagerError(f"Unknown launch strategy '{strategy}'")
        self.registry.register(handle)
        vm.metadata["pid"] = handle.pid
        vm.metadata["launch_strategy"] = strategy
        if handle.session:
            vm.metadata["session"] = handle.session
        return handle

    def _launch_direct(self, vm: VM, vm_dir: Path, cmd: List[str], log_path: Path) -> ProcessHandle:
        with open(log_path, "wb") as log_file:
            try:
                popen = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    cwd=str(vm_dir),
                    start_new_session=True,
                )
            except OSError as exc:
                raise HypervisorLaunchFailed(f"Could not execute {cmd[0]}: {exc}")
        time.sleep(self.settle_seconds)
        code = popen.poll()
        if code is not None:
            raise HypervisorExited(
                f"{cmd[0]} exited immediately with status {code}", details=tail_text(log_path)
            )
        return ProcessHandle(name=vm.name, pid=popen.pid, popen=popen)

    def _launch_tmux(self, vm: VM, vm_dir: Path, cmd: List[str], log_path: Path) -> ProcessHandle:
        if self.multiplexer is None:
            raise HypervisorLaunchFailed("The tmux launch strategy requires a session multiplexer")
        pipeline = f"{' '.join(shlex.quote(part) for part in cmd)} 2>&1 | tee {shlex.quote(str(log_path))}"
        session = self.multiplexer.create_session(vm.name, ["sh", "-c", pipeline], cwd=vm_dir)
        pid_path = vm_dir / PID_FILE_NAME
        if wait_for_path(pid_path, timeout=max(self.settle_seconds * 20, 10.0)):
            try:
                pid = int(pid_path.read_text().strip())
            except ValueError:
                pid = None
            if pid_alive(pid, vm_dir):
                return ProcessHandle(name=vm.name, pid=pid, session=session)
        self.multiplexer.close_session(vm.name)
        raise HypervisorExited(
            f"{cmd[0]} did not start inside tmux session {session}", details=tail_text(log_path)
        )

    # -- observation ---------------------------------------------------------

    def find_pid(self, vm: VM, vm_dir: Path) -> Optional[int]:
        handle = self.registry.get(vm.name)
        if handle is not None and handle.popen is not None and handle.popen.poll() is not None:
            return None
        candidates = [handle.pid if handle else None, vm.pid]
        pid_path = vm_dir / PID_FILE_NAME
        if pid_path.is_file():
            try:
                candidates.append(int(pid_path.read_text().strip()))
            except ValueError:
                pass
        for pid in candidates:
            if pid_alive(pid, vm_dir):
                return pid
        return None

    def is_running(self, vm: VM, vm_dir: Path) -> bool:
        return self.find_pid(vm, vm_dir) is not None

    def wait_for_exit(self, vm: VM, vm_dir: Path, timeout: float, cancel: Optional[CancelToken] = None) -> bool:
        """Poll until the QEMU process is gone; False on timeout or cancellation."""
        token = cancel or CancelToken()
        deadline = time.monotonic() + timeout
        while self.find_pid(vm, vm_dir) is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or token.wait(min(remaining, EXIT_POLL_INTERVAL)):
                return False
        return True

    # -- teardown ------------------------------------------------------------

    def _terminate(self, pid: int, grace: float) -> None:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=grace)
            except psutil.TimeoutExpired:
                log("WARN", f"QEMU PID {pid} ignored SIGTERM; sending SIGKILL")
                proc.kill()
                proc.wait(timeout=grace)
        except psutil.NoSuchProcess:
            pass

    def stop(self, vm: VM, vm_dir: Path, timeout: float, graceful: bool = True) -> None:
        """Powerdown over QMP, then SIGTERM, then SIGKILL; an already-gone process is success."""
        pid = self.find_pid(vm, vm_dir)
        if pid is None:
            log("DEBUG", f"No running QEMU process for {vm.name}")
        else:
            exited = False
            if graceful and vm.console_port and qmp_command(vm.console_port, "system_powerdown"):
                log("INFO", f"Requested ACPI powerdown for {vm.name}")
                exited = self.wait_for_exit(vm, vm_dir, timeout)
            if not exited:
                log("INFO", f"Terminating QEMU PID {pid} for {vm.name}")
                self._terminate(pid, grace=5.0)
        self.release(vm)

    def kill(self, vm: VM, vm_dir: Path) -> None:
        pid = self.find_pid(vm, vm_dir)
        if pid is not None:
            log("WARN", f"Killing QEMU PID {pid} for {vm.name}")
            self._terminate(pid, grace=2.0)
        self.release(vm)

    def release(self, vm: VM) -> None:
        """Reap the child, close its tmux session and free its ports."""
        handle = self.registry.remove(vm.name)
        if handle is not None and handle.popen is not None:
            try:
                handle.popen.wait(timeout=1)
            except subprocess.TimeoutExpired:
                log("WARN", f"QEMU child for {vm.name} has not exited yet")
        if self.multiplexer is not None and vm.metadata.get("launch_strategy") == "tmux":
            self.multiplexer.close_session(vm.name)
        self.registry.release_ports(vm.name)
        vm.metadata.pop("pid", None)
