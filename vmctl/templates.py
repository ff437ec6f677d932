"""VM templates: pre-provisioned disks stored under ``templates/<name>/``."""

from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import List

from vmctl.constants import TEMPLATE_FILE_NAME
from vmctl.exceptions import ManagerError, TemplateNotFound
from vmctl.models import Template
from vmctl.utils import atomic_write_text, log


class TemplateStore:
    def __init__(self, templates_dir: Path) -> None:
        self.templates_dir = templates_dir

    def template_dir(self, name: str) -> Path:
        return self.templates_dir / name

    def config_path(self, name: str) -> Path:
        return self.template_dir(name) / TEMPLATE_FILE_NAME

    def disk_path(self, name: str) -> Path:
        return self.template_dir(name) / f"{name}.qcow2"

    def exists(self, name: str) -> bool:
        return self.template_dir(name).exists()

    def save(self, template: Template) -> None:
        payload = json.dumps(template.to_dict(), indent=2, sort_keys=True) + "\n"
        atomic_write_text(self.config_path(template.name), payload)

    def load(self, name: str) -> Template:
        path = self.config_path(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise TemplateNotFound(f"Template '{name}' not found")
        try:
            return Template.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise ManagerError(f"Corrupt template file {path}: {exc}")

    def list_templates(self) -> List[Template]:
        """Every readable template, sorted by name; unreadable ones are skipped with a warning."""
        if not self.templates_dir.exists():
            return []
        templates = []
        for entry in sorted(self.templates_dir.iterdir()):
            if not (entry / TEMPLATE_FILE_NAME).is_file():
                continue
            try:
                templates.append(self.load(entry.name))
            except ManagerError as exc:
                log("WARN", f"Skipping template {entry.name}: {exc}")
        return templates

    def remove(self, name: str) -> None:
        if not self.exists(name):
            raise TemplateNotFound(f"Template '{name}' not found")
        shutil.rmtree(self.template_dir(name))
        log("INFO", f"Deleted template {name}")
