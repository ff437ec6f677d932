"""CLI entry points for vmctl."""

from __future__ import annotations

import argparse
import signal
import sys
import traceback
from typing import Callable, List, Optional, TypeVar

from vmctl.config import build_network_config, build_vm_config, load_settings
from vmctl.exceptions import ManagerError
from vmctl.models import VM
from vmctl.retry import CancelToken
from vmctl.utils import log
from vmctl.vm import VMManager

T = TypeVar("T")


def print_banner(lines: List[str], colour: str = "\033[0;36m") -> None:
    """Print a visually distinct block (access info or failure report)."""
    if not lines:
        return
    border_len = max(len(line) for line in lines) + 2
    reset = "\033[0m"
    print(f"{colour}{'=' * border_len}{reset}", flush=True)
    for line in lines:
        print(f"{colour}{line}{reset}", flush=True)
    print(f"{colour}{'=' * border_len}{reset}", flush=True)


def print_access_banner(vm: VM) -> None:
    lines = [
        f"  VM: {vm.name} ({vm.status})",
        f"  Image: {vm.config.base_image} | Memory: {vm.config.memory} | CPUs: {vm.config.cpus}",
    ]
    if vm.ssh_info.port:
        lines.append(f"  SSH:  ssh -p {vm.ssh_info.port} {vm.ssh_info.username}@{vm.ssh_info.host}")
    if vm.ssh_info.password:
        lines.append(f"  User: {vm.ssh_info.username}  Pass: {vm.ssh_info.password}")
    if vm.metadata.get("session"):
        lines.append(f"  tmux: tmux attach -t {vm.metadata['session']}")
    print_banner(lines)


def print_vm_table(vms: List[VM]) -> None:
    if not vms:
        log("INFO", "No VMs found")
        return
    width = max(len(vm.name) for vm in vms)
    for vm in vms:
        port = vm.ssh_info.port or "-"
        error = f"  error: {vm.last_error}" if vm.last_error and vm.status == "failed" else ""
        print(f"  {vm.name:<{width}}  {vm.status:<12}  ssh={port}  image={vm.config.base_image}{error}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vmctl", description="Local QEMU VM manager")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list-images", help="List known and downloaded base images")
    download = sub.add_parser("download-image", help="Download a base image from the catalog")
    download.add_argument("name")
    download.add_argument("url", nargs="?", default=None, help="Source URL for images outside the catalog")
    download.add_argument("--force", action="store_true", help="Download even if already present")
    delete_image = sub.add_parser("delete-image", help="Delete a downloaded base image")
    delete_image.add_argument("name")

    sub.add_parser("list-vms", help="List VMs and their status")
    show = sub.add_parser("show-vm", help="Show a single VM")
    show.add_argument("name")

    create = sub.add_parser("create-vm", help="Create a VM from a base image")
    create.add_argument("name")
    create.add_argument("--image", required=True, help="Base image name")
    create.add_argument("--cpus", type=int, default=2)
    create.add_argument("--memory", default="2G")
    create.add_argument("--disk-size", default="20G")
    create.add_argument("--network", choices=["user", "bridged"], default="user")
    create.add_argument("--mac", default=None, help="Fixed MAC address (generated when omitted)")
    create.add_argument("--static-ip", default=None, help="Static address range, comma separated")
    create.add_argument("--netmask", default=None)
    create.add_argument("--bridge", default=None)
    create.add_argument("--hostname", default=None)
    create.add_argument("--user", default=None, help="Guest login user")
    create.add_argument("--password-auth", action="store_true", help="Use a generated password instead of a key")
    create.add_argument("--package", action="append", default=[], dest="packages")
    create.add_argument("--arch", default=None)
    create.add_argument("--extra-args", default="", help="Extra QEMU arguments")
    create.add_argument("--start", action="store_true", help="Start the VM after creating it")
    create.add_argument("--wait", action="store_true", help="With --start, wait for first boot to finish")

    start = sub.add_parser("start-vm", help="Start a VM")
    start.add_argument("name")
    start.add_argument("--wait", action="store_true", help="Wait for first boot or readiness")

    for command, help_text in (
        ("wait-vm", "Wait for first boot to finish"),
        ("stop-vm", "Stop a running VM"),
        ("delete-vm", "Stop and delete a VM"),
        ("logs", "Follow the VM console log until a login prompt appears"),
        ("guest-logs", "Follow kernel and cloud-init logs over SSH"),
        ("shell", "Open an interactive SSH shell"),
        ("attach", "Attach to the VM's tmux session"),
    ):
        item = sub.add_parser(command, help=help_text)
        item.add_argument("name")

    exec_cmd = sub.add_parser("exec", help="Run a command in the guest over SSH")
    exec_cmd.add_argument("name")
    exec_cmd.add_argument("remote", nargs=argparse.REMAINDER)

    sub.add_parser("list-templates", help="List VM templates")
    create_template = sub.add_parser("create-template", help="Provision a template from a base image")
    create_template.add_argument("name")
    create_template.add_argument("description")
    create_template.add_argument("base_image")
    create_template.add_argument("packages", nargs="*", help="Packages installed into the template")
    delete_template = sub.add_parser("delete-template", help="Delete a template")
    delete_template.add_argument("name")
    from_template = sub.add_parser("create-vm-from-template", help="Create and start a VM backed by a template")
    from_template.add_argument("name")
    from_template.add_argument("template")
    from_template.add_argument("--cpus", type=int, default=2)
    from_template.add_argument("--memory", default="2G")
    from_template.add_argument("--disk-size", default="20G")
    from_template.add_argument("--user", default=None, help="Guest login user")
    from_template.add_argument("--password-auth", action="store_true", help="Use a generated password instead of a key")
    from_template.add_argument("--wait", action="store_true", help="Wait for first boot to finish")

    sub.add_parser("cleanup-vms", help="Stop all VMs and move them to the quarantine directory")
    sub.add_parser("monitor", help="Print status changes of all VMs until interrupted")
    return parser


def _cancellable(name: str, call: Callable[[CancelToken], T]) -> T:
    """Ctrl+C or SIGTERM cancels the wait, which kills the VM and marks it failed."""
    token = CancelToken()

    def _request_cancel(signum, frame):
        log("WARN", f"{signal.Signals(signum).name} received, canceling wait for {name}")
        token.cancel()

    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    try:
        return call(token)
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)


def _run_command(args: argparse.Namespace, manager: VMManager) -> int:
    if args.command == "list-images":
        for image in manager.images.list_images():
            state = "downloaded" if image.downloaded else "remote"
            print(f"  {image.name:<32} {state:<10} {image.url or image.local_path}")
        return 0
    if args.command == "download-image":
        image = manager.images.download(args.name, url=args.url, force=args.force)
        log("SUCCESS", f"Image {image.name} available at {image.local_path}")
        return 0
    if args.command == "delete-image":
        manager.images.delete(args.name)
        return 0

    if args.command == "list-vms":
        print_vm_table(manager.list_vms())
        return 0
    if args.command == "show-vm":
        print_access_banner(manager.get_vm(args.name))
        return 0

    if args.command == "create-vm":
        network = build_network_config(
            args.name,
            mode=args.network,
            mac_address=args.mac,
            static_address_range=args.static_ip,
            subnet_mask=args.netmask,
            hostname=args.hostname,
            bridge=args.bridge,
        )
        config = build_vm_config(
            args.name,
            args.image,
            cpus=args.cpus,
            memory=args.memory,
            disk_size=args.disk_size,
            network=network,
            extra_args=args.extra_args,
            username=args.user or manager.settings.ssh_user,
            auth_mode="password" if args.password_auth else "key",
            packages=args.packages,
            arch=args.arch,
        )
        vm = manager.create_vm(config)
        if args.start:
            vm = manager.start_vm(vm.name)
            if args.wait:
                vm = _cancellable(vm.name, lambda token: manager.wait_for_initialization(vm.name, cancel=token))
        print_access_banner(vm)
        return 0

    if args.command == "start-vm":
        current = manager.get_vm(args.name)
        if current.status == "created":
            vm = manager.start_vm(args.name)
            if args.wait:
                vm = _cancellable(args.name, lambda token: manager.wait_for_initialization(args.name, cancel=token))
        elif args.wait:
            vm = _cancellable(args.name, lambda token: manager.start_vm(args.name, wait_ready=True, cancel=token))
        else:
            vm = manager.start_vm(args.name)
        print_access_banner(vm)
        return 0
    if args.command == "wait-vm":
        vm = _cancellable(args.name, lambda token: manager.wait_for_initialization(args.name, cancel=token))
        print_access_banner(vm)
        return 0
    if args.command == "stop-vm":
        manager.stop_vm(args.name)
        return 0
    if args.command == "delete-vm":
        manager.delete_vm(args.name)
        return 0

    if args.command == "logs":
        token = CancelToken()
        try:
            manager.stream_console(args.name, lambda chunk: print(chunk, end="", flush=True), token)
        except KeyboardInterrupt:
            token.cancel()
        return 0
    if args.command == "guest-logs":
        token = CancelToken()
        try:
            failures = manager.stream_guest_logs(
                args.name, lambda label, line: print(f"[{label}] {line}", flush=True), token
            )
        except KeyboardInterrupt:
            token.cancel()
            return 0
        return 1 if failures else 0
    if args.command == "exec":
        if not args.remote:
            log("ERROR", "exec requires a command")
            return 2
        code, out, err = manager.exec_command(args.name, " ".join(args.remote))
        sys.stdout.write(out)
        sys.stderr.write(err)
        return code
    if args.command == "shell":
        return manager.shell(args.name)
    if args.command == "attach":
        return manager.attach(args.name)

    if args.command == "list-templates":
        templates = manager.list_templates()
        if not templates:
            log("INFO", "No templates found")
        for template in templates:
            print(f"  {template.name:<24} {template.status:<9} {template.base_image:<28} {template.description}")
        return 0
    if args.command == "create-template":
        template = _cancellable(
            args.name,
            lambda token: manager.create_template(
                args.name, args.description, args.base_image, packages=args.packages, cancel=token
            ),
        )
        log("SUCCESS", f"Template {template.name} ready")
        return 0
    if args.command == "delete-template":
        manager.delete_template(args.name)
        return 0
    if args.command == "create-vm-from-template":
        config = build_vm_config(
            args.name,
            args.template,
            cpus=args.cpus,
            memory=args.memory,
            disk_size=args.disk_size,
            network=build_network_config(args.name),
            username=args.user or manager.settings.ssh_user,
            auth_mode="password" if args.password_auth else "key",
        )
        vm = manager.create_vm(config, template=args.template)
        vm = manager.start_vm(vm.name)
        if args.wait:
            vm = _cancellable(vm.name, lambda token: manager.wait_for_initialization(vm.name, cancel=token))
        print_access_banner(vm)
        return 0

    if args.command == "cleanup-vms":
        moved = manager.cleanup_vms()
        log("SUCCESS", f"Moved {len(moved)} VM(s) to {manager.settings.deleted_dir}")
        return 0
    if args.command == "monitor":
        monitor = manager.status_monitor(
            on_change=lambda name, info: print(
                f"  {name:<20} {info['status']:<12} reachable={info['reachable']}", flush=True
            )
        )
        monitor.start()
        try:
            CancelToken().wait(float("inf"))
        except KeyboardInterrupt:
            pass
        finally:
            monitor.stop()
        return 0

    raise ManagerError(f"Unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        manager = VMManager(load_settings())
        return _run_command(args, manager)
    except ManagerError as exc:
        log("ERROR", str(exc))
        if exc.details:
            print_banner([f"  {line}" for line in exc.details.splitlines()], colour="\033[0;31m")
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:  # pragma: no cover
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1
