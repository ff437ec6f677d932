"""VM status rendering and broadcasting for vmctl."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from vmctl.constants import STATUS_FILE_NAME
from vmctl.exceptions import SessionError
from vmctl.models import VM, SSHInfo
from vmctl.utils import atomic_write_text, log

if TYPE_CHECKING:
    from vmctl.tmux import SessionMultiplexer


def render_status(vm_name: str, status: str, ssh_info: Optional[SSHInfo], details: Dict[str, object]) -> str:
    """Key/value block with a stable key order so identical input renders identically."""
    rows = [("VM", vm_name), ("Status", status)]
    if ssh_info is not None and ssh_info.port:
        rows.append(("SSH", f"ssh -p {ssh_info.port} {ssh_info.username}@{ssh_info.host}"))
    for key in sorted(details):
        value = details[key]
        if value is None or value == "":
            continue
        rows.append((key, str(value)))
    width = max(len(key) for key, _ in rows)
    return "\n".join(f"{key:<{width}}  {value}" for key, value in rows) + "\n"


class StatusBroadcaster:
    """Publish lifecycle transitions to ``status.txt`` and the VM's tmux status window."""

    def __init__(self, multiplexer: Optional["SessionMultiplexer"] = None) -> None:
        self.multiplexer = multiplexer

    def publish(self, vm: VM, vm_dir: Path) -> None:
        status_file = vm_dir / STATUS_FILE_NAME
        details: Dict[str, object] = {
            "CPUs": vm.config.cpus,
            "Memory": vm.config.memory,
            "Disk": vm.config.disk_size,
            "Image": vm.config.base_image,
            "Error": vm.last_error,
        }
        if not vm_dir.exists():
            return
        if self.multiplexer is not None:
            try:
                if self.multiplexer.has_session(vm.name):
                    self.multiplexer.update_status(vm.name, vm.status, vm.ssh_info, details, status_file)
                    log("DEBUG", f"Status: {vm.name} -> {vm.status}")
                    return
            except SessionError as exc:
                log("WARN", f"Could not refresh status window for {vm.name}: {exc}")
        atomic_write_text(status_file, render_status(vm.name, vm.status, vm.ssh_info, details))
        log("DEBUG", f"Status: {vm.name} -> {vm.status}")
