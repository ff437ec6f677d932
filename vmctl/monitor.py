"""Boot readiness detection and log streaming for vmctl."""

from __future__ import annotations

import queue
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import paramiko

from vmctl.constants import GUEST_LOG_SOURCES, LOGIN_PROMPT_RE
from vmctl.exceptions import CanceledByCaller, HypervisorLaunchFailed, ManagerError, ReadinessTimeout
from vmctl.models import VM, SSHInfo, VMStatus
from vmctl.qemu import QemuSupervisor
from vmctl.retry import CancelToken, RetryPolicy
from vmctl.ssh import SSHConnector
from vmctl.utils import log, port_open

SSH_RETRYABLE = (ManagerError, paramiko.SSHException, OSError, EOFError)


class ConsoleScanner:
    """Read a growing console log from the last offset.

    The tail of the previous read is kept so a prompt split across two reads
    still matches.
    """

    def __init__(self, log_path: Path, pattern: re.Pattern = LOGIN_PROMPT_RE, window: int = 256) -> None:
        self.log_path = log_path
        self.pattern = pattern
        self.window = window
        self.offset = 0
        self._carry = ""
        self.matched = False

    def read(self) -> str:
        try:
            with open(self.log_path, "rb") as handle:
                handle.seek(0, 2)
                size = handle.tell()
                if size < self.offset:
                    # log was truncated by a relaunch
                    self.offset = 0
                    self._carry = ""
                handle.seek(self.offset)
                data = handle.read()
        except FileNotFoundError:
            return ""
        self.offset += len(data)
        return data.decode("utf-8", errors="replace")

    def feed(self, chunk: str) -> bool:
        text = self._carry + chunk
        if self.pattern.search(text):
            self.matched = True
        self._carry = text[-self.window:]
        return self.matched

    def scan(self) -> bool:
        return self.feed(self.read())


@dataclass
class ReadinessResult:
    source: str  # "ssh" or "console"
    elapsed: float


class ReadinessMonitor:
    """Race an SSH dial loop against a console scan; the first positive signal wins."""

    def __init__(
        self,
        connector: SSHConnector,
        supervisor: QemuSupervisor,
        ssh_interval: float,
        console_interval: float,
    ) -> None:
        self.connector = connector
        self.supervisor = supervisor
        self.ssh_interval = ssh_interval
        self.console_interval = console_interval

    def _ssh_strategy(self, vm: VM, vm_dir: Path, timeout: float) -> Callable[[CancelToken], object]:
        policy = RetryPolicy(interval=self.ssh_interval, timeout=timeout, retry_on=SSH_RETRYABLE)

        def _run(token: CancelToken) -> object:
            return policy.run(lambda: self.connector.check_login(vm.ssh_info, vm_dir), token, label=f"SSH to {vm.name}")

        return _run

    def _console_strategy(
        self, vm: VM, vm_dir: Path, log_path: Path, timeout: float
    ) -> Callable[[CancelToken], object]:
        scanner = ConsoleScanner(log_path)
        policy = RetryPolicy(interval=self.console_interval, timeout=timeout, retry_on=(OSError,))

        def _attempt() -> bool:
            # scan before the liveness check so a prompt printed just before exit still counts
            if scanner.scan():
                return True
            if not self.supervisor.is_running(vm, vm_dir):
                raise HypervisorLaunchFailed(f"QEMU for {vm.name} exited before boot completed")
            return False

        def _run(token: CancelToken) -> object:
            return policy.run(_attempt, token, label=f"console scan for {vm.name}")

        return _run

    def wait(self, vm: VM, vm_dir: Path, log_path: Path, timeout: float, cancel: CancelToken) -> ReadinessResult:
        token = cancel.child()
        winner: "queue.Queue[str]" = queue.Queue(maxsize=1)
        errors: "queue.Queue[Tuple[str, BaseException]]" = queue.Queue()
        start = time.monotonic()

        strategies = {"console": self._console_strategy(vm, vm_dir, log_path, timeout)}
        if vm.ssh_info.host and vm.ssh_info.port:
            strategies["ssh"] = self._ssh_strategy(vm, vm_dir, timeout)
        else:
            log("WARN", f"No SSH endpoint known for {vm.name}; relying on the console only")

        def _race(source: str, strategy: Callable[[CancelToken], object]) -> None:
            try:
                strategy(token)
            except CanceledByCaller as exc:
                if not token.canceled or cancel.canceled:
                    errors.put((source, exc))
                return
            except Exception as exc:
                errors.put((source, exc))
                return
            try:
                winner.put_nowait(source)
            except queue.Full:
                pass

        threads = [
            threading.Thread(target=_race, args=(source, strategy), name=f"{vm.name}-{source}", daemon=True)
            for source, strategy in strategies.items()
        ]
        for thread in threads:
            thread.start()

        failures: Dict[str, BaseException] = {}
        try:
            while True:
                cancel.raise_if_canceled()
                try:
                    source = winner.get(timeout=0.2)
                except queue.Empty:
                    source = None
                if source is not None:
                    elapsed = time.monotonic() - start
                    log("SUCCESS", f"{vm.name} is ready ({source} signal after {elapsed:.1f}s)")
                    return ReadinessResult(source=source, elapsed=elapsed)

                while not errors.empty():
                    name, exc = errors.get_nowait()
                    failures[name] = exc
                    log("DEBUG", f"{vm.name}: {name} strategy gave up: {exc}")
                    if isinstance(exc, HypervisorLaunchFailed):
                        raise exc

                if not any(thread.is_alive() for thread in threads) and winner.empty():
                    reasons = "; ".join(f"{name}: {exc}" for name, exc in sorted(failures.items()))
                    raise ReadinessTimeout(f"{vm.name} never became ready: {reasons or 'no signal observed'}")
                if time.monotonic() - start >= timeout:
                    raise ReadinessTimeout(f"{vm.name} did not become ready within {timeout:.0f}s")
        finally:
            token.cancel("readiness settled")
            for thread in threads:
                thread.join(timeout=max(self.ssh_interval, self.console_interval) + 1)


def follow_console(
    log_path: Path,
    sink: Callable[[str], None],
    cancel: CancelToken,
    interval: float = 0.5,
    stop_on_prompt: bool = True,
) -> bool:
    """Copy new console output to ``sink`` until canceled or a login prompt shows up."""
    scanner = ConsoleScanner(log_path)
    while not cancel.canceled:
        chunk = scanner.read()
        if chunk:
            sink(chunk)
            scanner.feed(chunk)
        if scanner.matched and stop_on_prompt:
            return True
        cancel.wait(interval)
    return scanner.matched


def _follow_remote(
    connector: SSHConnector,
    ssh_info: SSHInfo,
    vm_dir: Path,
    label: str,
    command: str,
    sink: Callable[[str, str], None],
    cancel: CancelToken,
) -> None:
    client = connector.connect(ssh_info, vm_dir)
    try:
        transport = client.get_transport()
        if transport is None:
            raise ManagerError(f"No SSH transport for {label}")
        channel = transport.open_session()
        channel.exec_command(command)
        pending = ""
        while not cancel.canceled:
            if channel.recv_ready():
                pending += channel.recv(4096).decode("utf-8", errors="replace")
                *lines, pending = pending.split("\n")
                for line in lines:
                    sink(label, line)
            elif channel.exit_status_ready():
                break
            else:
                cancel.wait(0.2)
        if pending:
            sink(label, pending)
        if channel.exit_status_ready():
            status = channel.recv_exit_status()
            if status != 0:
                raise ManagerError(f"'{command}' exited with status {status}")
        channel.close()
    finally:
        client.close()


def stream_guest_logs(
    connector: SSHConnector,
    ssh_info: SSHInfo,
    vm_dir: Path,
    sink: Callable[[str, str], None],
    cancel: CancelToken,
    sources: Mapping[str, str] = GUEST_LOG_SOURCES,
) -> List[Tuple[str, BaseException]]:
    """Follow several guest log commands at once.

    Each source runs in its own thread; failures are collected and reported
    without stopping the other sources.
    """
    collector: "queue.Queue[Tuple[str, BaseException]]" = queue.Queue()

    def _worker(label: str, command: str) -> None:
        try:
            _follow_remote(connector, ssh_info, vm_dir, label, command, sink, cancel)
        except Exception as exc:
            collector.put((label, exc))

    threads = [
        threading.Thread(target=_worker, args=(label, command), name=f"log-{label}", daemon=True)
        for label, command in sources.items()
    ]
    for thread in threads:
        thread.start()

    failures: List[Tuple[str, BaseException]] = []

    def _drain() -> None:
        while not collector.empty():
            label, exc = collector.get_nowait()
            log("WARN", f"Log source {label} failed: {exc}")
            failures.append((label, exc))

    while any(thread.is_alive() for thread in threads):
        _drain()
        cancel.wait(0.2)
        if cancel.canceled:
            break
    for thread in threads:
        thread.join(timeout=2)
    _drain()
    return failures


class StatusMonitor:
    """Background thread that refreshes the status and reachability of every VM."""

    def __init__(
        self,
        manager,
        interval: float,
        on_change: Optional[Callable[[str, Dict[str, object]], None]] = None,
    ) -> None:
        self.manager = manager
        self.interval = interval
        self.on_change = on_change
        self._lock = threading.Lock()
        self._snapshot: Dict[str, Dict[str, object]] = {}
        self._token = CancelToken()
        self._thread: Optional[threading.Thread] = None

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return {name: dict(info) for name, info in self._snapshot.items()}

    def refresh(self) -> None:
        current: Dict[str, Dict[str, object]] = {}
        for vm in self.manager.list_vms():
            reachable = False
            if vm.status in VMStatus.RUNNING and vm.ssh_info.host and vm.ssh_info.port:
                reachable = port_open(vm.ssh_info.host, vm.ssh_info.port)
            current[vm.name] = {"status": vm.status, "reachable": reachable, "ssh_port": vm.ssh_info.port}
        with self._lock:
            previous = self._snapshot
            self._snapshot = current
        for name, info in current.items():
            if previous.get(name) != info:
                log("DEBUG", f"Monitor: {name} {info}")
                if self.on_change is not None:
                    self.on_change(name, info)

    def _loop(self) -> None:
        while not self._token.canceled:
            try:
                self.refresh()
            except ManagerError as exc:
                log("WARN", f"Status refresh failed: {exc}")
            self._token.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._token = CancelToken()
        self._thread = threading.Thread(target=self._loop, name="vm-status-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._token.cancel("monitor stopped")
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None
