"""Cloud-init NoCloud seed generation for vmctl."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Dict, List

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmctl.constants import META_DATA_NAME, NETWORK_CONFIG_NAME, USER_DATA_NAME
from vmctl.credentials import AuthMaterial
from vmctl.exceptions import DiskOperationFailed, ManagerError, NoCredentialsAvailable
from vmctl.models import CloudInitDocuments, VMConfig
from vmctl.network import render_network_document
from vmctl.utils import log, run

BASE_PACKAGES = ["curl", "ca-certificates", "openssh-server"]
ISO_TOOLS = ("genisoimage", "mkisofs", "xorriso")


def _dump(document: Dict[str, object]) -> str:
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


class CloudInitBuilder:
    """Render meta-data, user-data and network-config, then pack them into a ``cidata`` ISO."""

    def build(self, config: VMConfig, auth: AuthMaterial) -> CloudInitDocuments:
        if auth.public_key and auth.password_hash:
            raise ManagerError("Refusing to embed both an SSH key and a password in user-data")
        if not auth.public_key and not auth.password_hash:
            raise NoCredentialsAvailable(f"No SSH key or password available for VM {config.name}")

        hostname = config.network.hostname or config.name
        meta_data = f"instance-id: {config.name}\nlocal-hostname: {hostname}\n"

        user: Dict[str, object] = {
            "name": config.username,
            "sudo": "ALL=(ALL) NOPASSWD:ALL",
            "groups": "sudo",
            "shell": "/bin/bash",
        }
        if auth.public_key:
            user["lock_passwd"] = True
            user["ssh_authorized_keys"] = [auth.public_key]
        else:
            user["lock_passwd"] = False
            user["passwd"] = auth.password_hash

        packages: List[str] = []
        for package in BASE_PACKAGES + list(config.packages):
            if package not in packages:
                packages.append(package)

        user_cfg: Dict[str, object] = {
            "hostname": hostname,
            "users": [user],
            "ssh_pwauth": auth.public_key is None,
            "chpasswd": {"expire": False},
            "packages": packages,
        }
        user_data = "#cloud-config\n" + _dump(user_cfg)
        network_config = _dump(render_network_document(config.network))
        return CloudInitDocuments(meta_data=meta_data, user_data=user_data, network_config=network_config)

    def write(self, documents: CloudInitDocuments, vm_dir: Path) -> List[Path]:
        paths = [vm_dir / META_DATA_NAME, vm_dir / USER_DATA_NAME, vm_dir / NETWORK_CONFIG_NAME]
        contents = [documents.meta_data, documents.user_data, documents.network_config]
        for path, content in zip(paths, contents):
            path.write_text(content, encoding="utf-8")
        return paths

    @staticmethod
    def _iso_command(tool: str, output: Path, sources: List[Path]) -> List[str]:
        if Path(tool).name == "xorriso":
            cmd = [tool, "-as", "mkisofs", "-o", str(output), "-V", "cidata", "-J", "-R"]
        else:
            cmd = [tool, "-output", str(output), "-volid", "cidata", "-joliet", "-rock"]
        return cmd + [str(path) for path in sources]

    def package_iso(self, sources: List[Path], output: Path) -> Path:
        tool = next((found for found in (shutil.which(name) for name in ISO_TOOLS) if found), None)
        if tool is None:
            raise DiskOperationFailed(f"No ISO tool found; install one of: {', '.join(ISO_TOOLS)}")
        try:
            run(self._iso_command(tool, output, sources), capture_output=True)
        except subprocess.CalledProcessError as exc:
            raise DiskOperationFailed(
                f"{Path(tool).name} failed to build {output}",
                details=(exc.stderr or exc.stdout or "").strip(),
            )
        return output

    def generate(self, config: VMConfig, auth: AuthMaterial, vm_dir: Path, output: Path) -> CloudInitDocuments:
        documents = self.build(config, auth)
        sources = self.write(documents, vm_dir)
        self.package_iso(sources, output)
        log("INFO", f"Cloud-init seed written to {output}")
        return documents
