"""VM lifecycle management for vmctl."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Type

from vmctl.cloudinit import CloudInitBuilder
from vmctl.config import Settings, build_network_config, build_vm_config
from vmctl.constants import CONSOLE_LOG_NAME, CONSOLE_TAIL_LINES, DISK_FILE_NAME, SEED_ISO_NAME
from vmctl.credentials import CredentialResolver
from vmctl.exceptions import (
    AlreadyExists,
    CanceledByCaller,
    HypervisorExited,
    HypervisorLaunchFailed,
    InvalidState,
    ManagerError,
    ReadinessTimeout,
    SessionError,
    VMNotFound,
)
from vmctl.images import ImageStore
from vmctl.models import VM, SSHInfo, Template, TemplateStatus, VMConfig, VMStatus
from vmctl.monitor import ReadinessMonitor, ReadinessResult, StatusMonitor, follow_console, stream_guest_logs
from vmctl.qemu import QemuSupervisor, convert_disk, create_overlay_disk
from vmctl.registry import ProcessRegistry
from vmctl.retry import CancelToken, RetryPolicy
from vmctl.runtime import detect_arch
from vmctl.ssh import SSHConnector
from vmctl.state import StateStore
from vmctl.status import StatusBroadcaster
from vmctl.templates import TemplateStore
from vmctl.tmux import SessionMultiplexer
from vmctl.utils import ensure_directory, log, random_mac, run, tail_text, validate_vm_name

STARTABLE: FrozenSet[str] = frozenset({VMStatus.CREATED, VMStatus.READY, VMStatus.STOPPED})
STOPPABLE: FrozenSet[str] = VMStatus.RUNNING
CANCELED_REASON = "canceled by caller"
# `cloud-init status --wait` exit code for "done with recoverable errors"
CLOUD_INIT_DEGRADED = 2


class VMManager:
    """Own the VM state machine and every subsystem a transition touches.

    Mutating calls are serialized per VM name through the process registry's
    locks. Reads reconcile persisted status against live process evidence.
    """

    def __init__(
        self,
        settings: Settings,
        images: Optional[ImageStore] = None,
        state: Optional[StateStore] = None,
        registry: Optional[ProcessRegistry] = None,
        resolver: Optional[CredentialResolver] = None,
        connector: Optional[SSHConnector] = None,
        multiplexer: Optional[SessionMultiplexer] = None,
        supervisor: Optional[QemuSupervisor] = None,
        monitor: Optional[ReadinessMonitor] = None,
        builder: Optional[CloudInitBuilder] = None,
        templates: Optional[TemplateStore] = None,
    ) -> None:
        self.settings = settings
        self.images = images or ImageStore(settings.images_dir, settings.image_catalog)
        self.state = state or StateStore(settings.vms_dir)
        self.registry = registry or ProcessRegistry()
        self.resolver = resolver or CredentialResolver(
            agent_labels=settings.agent_key_labels,
            generate_keys=settings.generate_keys,
        )
        self.connector = connector or SSHConnector(self.resolver)
        if multiplexer is None and settings.launch_strategy == "tmux":
            multiplexer = SessionMultiplexer()
        self.multiplexer = multiplexer
        self.supervisor = supervisor or QemuSupervisor(self.registry, multiplexer=self.multiplexer)
        self.monitor = monitor or ReadinessMonitor(
            self.connector,
            self.supervisor,
            ssh_interval=settings.ssh_interval,
            console_interval=settings.console_interval,
        )
        self.builder = builder or CloudInitBuilder()
        self.templates = templates or TemplateStore(settings.templates_dir)
        self.broadcaster = StatusBroadcaster(self.multiplexer)

    # -- helpers -------------------------------------------------------------

    def vm_dir(self, name: str) -> Path:
        return self.state.vm_dir(name)

    def _commit(self, vm: VM, status: str, error: Optional[str] = None) -> None:
        previous = vm.status
        vm.status = status
        if error is not None:
            vm.last_error = error
        self.state.save(vm)
        self.broadcaster.publish(vm, self.vm_dir(vm.name))
        if previous != status:
            log("INFO", f"VM {vm.name}: {previous} -> {status}")

    @staticmethod
    def _require(vm: VM, operation: str, allowed: FrozenSet[str]) -> None:
        if vm.status not in allowed:
            expected = ", ".join(sorted(allowed))
            raise InvalidState(f"Cannot {operation} VM {vm.name} in status '{vm.status}' (expected one of: {expected})")

    def failure_report(self, vm: VM) -> str:
        lines = [
            f"VM:       {vm.name}",
            f"Status:   {vm.status}",
            f"Host:     {vm.ssh_info.host}",
            f"Port:     {vm.ssh_info.port}",
            f"Username: {vm.ssh_info.username}",
        ]
        if vm.last_error:
            lines.append(f"Error:    {vm.last_error}")
        tail = tail_text(self.vm_dir(vm.name) / CONSOLE_LOG_NAME, CONSOLE_TAIL_LINES)
        if tail:
            lines.append("Console log tail:")
            lines.extend(f"  {line}" for line in tail.splitlines())
        return "\n".join(lines)

    def _fail(self, vm: VM, message: str, error_cls: Type[ManagerError]) -> None:
        """Kill the hypervisor, persist ``failed`` and raise with a report attached."""
        self.supervisor.kill(vm, self.vm_dir(vm.name))
        self._commit(vm, VMStatus.FAILED, error=message)
        report = self.failure_report(vm)
        log("ERROR", f"VM {vm.name} failed: {message}")
        raise error_cls(f"VM {vm.name} failed: {message}", details=report)

    def _session_alive(self, vm: VM) -> bool:
        """A tmux-launched VM also needs its session; without it the console is gone."""
        if vm.metadata.get("launch_strategy") != "tmux" or self.multiplexer is None:
            return True
        try:
            return self.multiplexer.has_session(vm.name)
        except SessionError as exc:
            log("WARN", f"Cannot query tmux session for {vm.name}: {exc}")
            return True

    def _reconcile(self, vm: VM) -> VM:
        if vm.status not in VMStatus.RUNNING:
            return vm
        vm_dir = self.vm_dir(vm.name)
        if self.supervisor.is_running(vm, vm_dir) and self._session_alive(vm):
            for port in (vm.ssh_info.port if vm.config.network.mode == "user" else None, vm.console_port):
                if port and not self.registry.claim_port(vm.name, port):
                    log("WARN", f"Port {port} of VM {vm.name} is also claimed by another VM")
            return vm
        lock = self.registry.lock(vm.name)
        if not lock.acquire(blocking=False):
            return vm
        try:
            self.supervisor.kill(vm, vm_dir)
            if vm.metadata.get("initialized"):
                new_status, error = VMStatus.STOPPED, None
            else:
                new_status, error = VMStatus.FAILED, "hypervisor process not found; initialization was interrupted"
            log("WARN", f"VM {vm.name} claims '{vm.status}' but its QEMU process or session is gone")
            self._commit(vm, new_status, error=error)
        finally:
            lock.release()
        return vm

    # -- queries -------------------------------------------------------------

    def get_vm(self, name: str) -> VM:
        return self._reconcile(self.state.load(name))

    def list_vms(self) -> List[VM]:
        vms = []
        for name in self.state.names():
            try:
                vms.append(self.get_vm(name))
            except VMNotFound:
                continue
        return vms

    # -- transitions ---------------------------------------------------------

    def create_vm(self, config: VMConfig, template: Optional[str] = None) -> VM:
        """Create a VM over a base image, or over a ready template's disk when ``template`` is given."""
        name = validate_vm_name(config.name)
        with self.registry.lock(name):
            if self.state.exists(name):
                existing = self.state.load(name)
                if existing.status != VMStatus.DELETED:
                    raise AlreadyExists(f"VM '{name}' already exists (status {existing.status})")
                self.state.remove(name)
            vm_dir = self.vm_dir(name)
            if vm_dir.exists():
                raise AlreadyExists(f"VM directory {vm_dir} already exists")
            if template is None:
                image = self.images.lookup(config.base_image)
                backing, source = image.local_path, image.name
                arch = detect_arch(image.name, image.url, config.arch or image.arch)
            else:
                tpl = self.templates.load(template)
                if tpl.status != TemplateStatus.READY:
                    raise InvalidState(f"Template '{tpl.name}' is not ready (status {tpl.status})")
                config.base_image = tpl.base_image
                backing, source = self.templates.disk_path(tpl.name), f"template {tpl.name}"
                arch = detect_arch(tpl.base_image, declared=config.arch or tpl.metadata.get("arch"))

            if not config.network.mac_address:
                config.network.mac_address = random_mac()

            ensure_directory(vm_dir)
            try:
                create_overlay_disk(backing, vm_dir / DISK_FILE_NAME, config.disk_size)
                auth = self.resolver.auth_material(vm_dir, name, config.auth_mode)
                self.builder.generate(config, auth, vm_dir, vm_dir / SEED_ISO_NAME)
            except Exception:
                shutil.rmtree(vm_dir, ignore_errors=True)
                raise

            key_path = self.resolver.vm_key_path(vm_dir)
            metadata = {
                "arch": arch,
                "image_path": str(backing),
                "created_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            }
            if template is not None:
                metadata["template"] = template
            vm = VM(
                name=name,
                config=config,
                ssh_info=SSHInfo(
                    username=config.username,
                    private_key_ref=str(key_path) if key_path.exists() else None,
                    password=auth.password,
                ),
                status=VMStatus.CREATED,
                metadata=metadata,
            )
            self._commit(vm, VMStatus.CREATED)
            log("SUCCESS", f"Created VM {name} from {source} ({arch}, {config.cpus} CPU, {config.memory})")
            return vm

    def start_vm(self, name: str, wait_ready: bool = False, cancel: Optional[CancelToken] = None) -> VM:
        """Boot a created VM for first-boot setup, or restart a ready/stopped one.

        A first boot ends in ``initializing``; use :meth:`wait_for_initialization`
        afterwards. A restart ends in ``started``; with ``wait_ready`` the call
        first waits for the same readiness signal used on first boot.
        """
        with self.registry.lock(name):
            vm = self.get_vm(name)
            self._require(vm, "start", STARTABLE)
            vm_dir = self.vm_dir(name)
            previous = vm.status
            first_boot = previous == VMStatus.CREATED
            intermediate = VMStatus.INITIALIZING if first_boot else VMStatus.STARTING

            self.supervisor.allocate_ports(vm)
            vm.last_error = None
            self._commit(vm, intermediate)
            try:
                self.supervisor.launch(
                    vm,
                    vm_dir,
                    arch=vm.metadata.get("arch") or detect_arch(vm.config.base_image),
                    attach_seed=first_boot,
                    strategy=self.settings.launch_strategy,
                )
            except HypervisorExited as exc:
                self._fail(vm, str(exc), HypervisorLaunchFailed)
            except ManagerError as exc:
                self.supervisor.release(vm)
                vm.ssh_info.port = 0
                vm.console_port = None
                self._commit(vm, previous, error=str(exc))
                raise
            self.state.save(vm)

            if first_boot:
                log("INFO", f"VM {name} is initializing; SSH forward on port {vm.ssh_info.port}")
                return vm

            if wait_ready:
                self._await_ready(vm, cancel or CancelToken(), self.settings.init_timeout)
            self._commit(vm, VMStatus.STARTED)
            return vm

    def _await_ready(self, vm: VM, cancel: CancelToken, timeout: float) -> ReadinessResult:
        vm_dir = self.vm_dir(vm.name)
        try:
            return self.monitor.wait(vm, vm_dir, vm_dir / CONSOLE_LOG_NAME, timeout, cancel)
        except CanceledByCaller:
            self._fail(vm, CANCELED_REASON, CanceledByCaller)
        except ReadinessTimeout as exc:
            self._fail(vm, str(exc), ReadinessTimeout)
        except ManagerError as exc:
            self._fail(vm, str(exc), type(exc))

    def wait_for_initialization(
        self,
        name: str,
        cancel: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
        require_cloud_init: bool = False,
    ) -> VM:
        """Block until first boot completes, then power the guest off and mark it ``ready``.

        With ``require_cloud_init`` the guest must also report that cloud-init
        finished, which template provisioning needs for its package installs.
        Cancellation is honoured until the final commit.
        """
        cancel = cancel or CancelToken()
        with self.registry.lock(name):
            vm = self.get_vm(name)
            self._require(vm, "wait for initialization of", frozenset({VMStatus.INITIALIZING}))
            vm_dir = self.vm_dir(name)
            budget = timeout if timeout is not None else self.settings.init_timeout
            log("INFO", f"Waiting up to {budget:.0f}s for {name} to finish first boot")

            result = self._await_ready(vm, cancel, budget)

            vm.metadata["ready_signal"] = result.source
            if require_cloud_init:
                self._await_cloud_init(vm, vm_dir, cancel, budget)
            elif result.source == "ssh":
                self._record_cloud_init_status(vm, vm_dir)
            self._check_canceled(vm, cancel)
            if result.source == "ssh" or require_cloud_init:
                self.connector.request_shutdown(vm.ssh_info, vm_dir)
                self._check_canceled(vm, cancel)
                self.supervisor.wait_for_exit(vm, vm_dir, self.settings.stop_timeout, cancel=cancel)
                self._check_canceled(vm, cancel)
            self.supervisor.stop(vm, vm_dir, timeout=self.settings.stop_timeout)
            self._check_canceled(vm, cancel)

            vm.metadata["initialized"] = True
            vm.ssh_info.port = 0 if vm.config.network.mode == "user" else vm.ssh_info.port
            vm.console_port = None
            vm.last_error = None
            self._commit(vm, VMStatus.READY)
            log("SUCCESS", f"VM {name} finished first boot and is ready")
            return vm

    def _check_canceled(self, vm: VM, cancel: CancelToken) -> None:
        if cancel.canceled:
            self._fail(vm, CANCELED_REASON, CanceledByCaller)

    def _await_cloud_init(self, vm: VM, vm_dir: Path, cancel: CancelToken, timeout: float) -> None:
        """Wait over SSH for ``cloud-init status --wait``; errors reported by cloud-init fail the VM."""
        policy = RetryPolicy(interval=self.settings.ssh_interval, timeout=timeout, retry_on=(ManagerError, OSError))
        try:
            code, out, err = policy.run(
                lambda: self.connector.run_command(vm.ssh_info, vm_dir, "cloud-init status --wait", timeout=timeout),
                cancel,
                label=f"cloud-init on {vm.name}",
            )
        except CanceledByCaller:
            self._fail(vm, CANCELED_REASON, CanceledByCaller)
        except ReadinessTimeout as exc:
            self._fail(vm, str(exc), ReadinessTimeout)
        vm.metadata["cloud_init_status"] = out.strip() or f"exit {code}"
        if code == CLOUD_INIT_DEGRADED:
            log("WARN", f"cloud-init on {vm.name} finished with recoverable errors")
        elif code != 0:
            self._fail(vm, f"cloud-init finished with errors (exit {code}): {(err or out).strip()}", ManagerError)

    def _record_cloud_init_status(self, vm: VM, vm_dir: Path) -> None:
        """Diagnostic only; never gates readiness."""
        try:
            code, out, _ = self.connector.run_command(vm.ssh_info, vm_dir, "cloud-init status", timeout=30)
        except (ManagerError, OSError) as exc:
            log("DEBUG", f"cloud-init status unavailable for {vm.name}: {exc}")
            return
        vm.metadata["cloud_init_status"] = out.strip() or f"exit {code}"

    def stop_vm(self, name: str) -> VM:
        with self.registry.lock(name):
            vm = self.state.load(name)
            self._require(vm, "stop", STOPPABLE)
            was_initializing = vm.status == VMStatus.INITIALIZING
            self.supervisor.stop(vm, self.vm_dir(name), timeout=self.settings.stop_timeout)
            if vm.config.network.mode == "user":
                vm.ssh_info.port = 0
            vm.console_port = None
            if was_initializing:
                self._commit(vm, VMStatus.FAILED, error="stopped during initialization")
            else:
                self._commit(vm, VMStatus.STOPPED)
            return vm

    def delete_vm(self, name: str) -> None:
        with self.registry.lock(name):
            vm = self.state.load(name)
            if vm.status == VMStatus.DELETED:
                raise VMNotFound(f"VM '{name}' not found")
            vm_dir = self.vm_dir(name)
            if vm.status in VMStatus.RUNNING or self.supervisor.is_running(vm, vm_dir):
                self.supervisor.stop(vm, vm_dir, timeout=self.settings.stop_timeout)
            else:
                self.supervisor.release(vm)
            self._commit(vm, VMStatus.DELETED)
            self.state.remove(name)
            log("SUCCESS", f"Deleted VM {name}")

    def cleanup_vms(self) -> List[str]:
        """Stop everything and move every VM directory into the quarantine area."""
        moved = []
        for name in self.state.names():
            with self.registry.lock(name):
                vm = self.state.load(name)
                vm_dir = self.vm_dir(name)
                if self.supervisor.is_running(vm, vm_dir):
                    self.supervisor.stop(vm, vm_dir, timeout=self.settings.stop_timeout)
                else:
                    self.supervisor.release(vm)
                target = self.state.quarantine(name, self.settings.deleted_dir)
                log("INFO", f"Moved VM {name} to {target}")
                moved.append(name)
        return moved

    # -- templates -----------------------------------------------------------

    def list_templates(self) -> List[Template]:
        return self.templates.list_templates()

    def get_template(self, name: str) -> Template:
        return self.templates.load(name)

    def create_template(
        self,
        name: str,
        description: str,
        base_image: str,
        packages: Optional[List[str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Template:
        """Provision a throwaway VM with ``packages`` and keep its flattened disk as a template.

        The setup VM is always deleted afterwards. A failure leaves the
        template in ``error`` with the reason under ``metadata["error"]``.
        """
        validate_vm_name(name)
        if self.templates.exists(name):
            raise AlreadyExists(f"Template '{name}' already exists")
        setup_name = f"template-{name}-setup"
        if self.state.exists(setup_name):
            raise AlreadyExists(f"Setup VM '{setup_name}' for template {name} already exists; delete it first")
        image = self.images.lookup(base_image)
        template = Template(
            name=name,
            description=description,
            base_image=image.name,
            packages=list(dict.fromkeys(packages or [])),
            created_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        )
        self.templates.save(template)
        log("INFO", f"Preparing template {name} from {image.name} in setup VM {setup_name}")

        setup_vm = None
        try:
            config = build_vm_config(
                setup_name,
                image.name,
                network=build_network_config(setup_name),
                username=self.settings.ssh_user,
                packages=template.packages,
            )
            setup_vm = self.create_vm(config)
            self.start_vm(setup_name)
            self.wait_for_initialization(setup_name, cancel=cancel, require_cloud_init=True)
            convert_disk(self.vm_dir(setup_name) / DISK_FILE_NAME, self.templates.disk_path(name))
        except ManagerError as exc:
            template.status = TemplateStatus.ERROR
            template.metadata["error"] = str(exc)
            self.templates.save(template)
            raise
        finally:
            if setup_vm is not None:
                self._discard_setup_vm(setup_name)

        template.status = TemplateStatus.READY
        template.metadata["arch"] = setup_vm.metadata["arch"]
        self.templates.save(template)
        log("SUCCESS", f"Template {name} is ready at {self.templates.disk_path(name)}")
        return template

    def _discard_setup_vm(self, name: str) -> None:
        try:
            self.delete_vm(name)
        except ManagerError as exc:
            log("WARN", f"Could not delete setup VM {name}: {exc}")

    def delete_template(self, name: str) -> None:
        """Remove a template unless a VM still uses its disk as a backing file."""
        self.templates.load(name)
        users = [vm.name for vm in self.list_vms() if vm.metadata.get("template") == name]
        if users:
            raise InvalidState(f"Template '{name}' is still used by VM(s): {', '.join(users)}")
        self.templates.remove(name)

    # -- guest access --------------------------------------------------------

    def _running_vm(self, name: str, operation: str) -> VM:
        vm = self.get_vm(name)
        self._require(vm, operation, VMStatus.RUNNING)
        return vm

    def exec_command(self, name: str, command: str, timeout: Optional[float] = None) -> Tuple[int, str, str]:
        vm = self._running_vm(name, "run a command on")
        return self.connector.run_command(vm.ssh_info, self.vm_dir(name), command, timeout=timeout)

    def shell(self, name: str) -> int:
        vm = self._running_vm(name, "open a shell on")
        cmd = [
            "ssh",
            "-p",
            str(vm.ssh_info.port),
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]
        identity = self.resolver.identity_file(self.vm_dir(name))
        if identity is not None:
            cmd += ["-i", str(identity)]
        cmd.append(f"{vm.ssh_info.username}@{vm.ssh_info.host}")
        return run(cmd, check=False).returncode

    def stream_console(self, name: str, sink: Callable[[str], None], cancel: CancelToken) -> bool:
        vm = self.get_vm(name)
        return follow_console(
            self.vm_dir(vm.name) / CONSOLE_LOG_NAME,
            sink,
            cancel,
            interval=min(self.settings.console_interval, 1),
        )

    def stream_guest_logs(
        self,
        name: str,
        sink: Callable[[str, str], None],
        cancel: CancelToken,
    ) -> List[Tuple[str, BaseException]]:
        vm = self._running_vm(name, "stream logs from")
        return stream_guest_logs(self.connector, vm.ssh_info, self.vm_dir(name), sink, cancel)

    def attach(self, name: str) -> int:
        vm = self.get_vm(name)
        if self.multiplexer is None:
            self.multiplexer = SessionMultiplexer()
        return self.multiplexer.attach_session(vm.name)

    def status_monitor(self, on_change: Optional[Callable[[str, Dict[str, object]], None]] = None) -> StatusMonitor:
        return StatusMonitor(self, self.settings.monitor_interval, on_change=on_change)
