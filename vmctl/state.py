"""Persisted VM state for vmctl."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import List

from vmctl.constants import STATE_FILE_NAME
from vmctl.exceptions import ManagerError, VMNotFound
from vmctl.models import VM
from vmctl.utils import atomic_write_text, ensure_directory, log


class StateStore:
    """One directory per VM under ``vms_dir``; ``vm-state.json`` is always rewritten whole."""

    def __init__(self, vms_dir: Path) -> None:
        self.vms_dir = vms_dir

    def vm_dir(self, name: str) -> Path:
        return self.vms_dir / name

    def state_path(self, name: str) -> Path:
        return self.vm_dir(name) / STATE_FILE_NAME

    def exists(self, name: str) -> bool:
        return self.state_path(name).is_file()

    def save(self, vm: VM) -> None:
        payload = json.dumps(vm.to_dict(), indent=2, sort_keys=True) + "\n"
        atomic_write_text(self.state_path(vm.name), payload)
        log("DEBUG", f"Persisted {vm.name} status={vm.status}")

    def load(self, name: str) -> VM:
        path = self.state_path(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise VMNotFound(f"VM '{name}' not found")
        try:
            return VM.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise ManagerError(f"Corrupt state file {path}: {exc}")

    def names(self) -> List[str]:
        if not self.vms_dir.exists():
            return []
        return sorted(entry.name for entry in self.vms_dir.iterdir() if (entry / STATE_FILE_NAME).is_file())

    def remove(self, name: str) -> None:
        vm_dir = self.vm_dir(name)
        if vm_dir.exists():
            shutil.rmtree(vm_dir)

    def quarantine(self, name: str, deleted_dir: Path) -> Path:
        """Move a VM directory aside, replacing an older quarantined copy."""
        ensure_directory(deleted_dir)
        target = deleted_dir / name
        if target.exists():
            shutil.rmtree(target)
        shutil.move(str(self.vm_dir(name)), str(target))
        return target
