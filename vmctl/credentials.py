"""SSH credential discovery and generation for vmctl."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import paramiko

from vmctl.constants import CONVENTIONAL_KEY_NAMES, VM_KEY_NAME
from vmctl.exceptions import NoCredentialsAvailable
from vmctl.utils import generate_password, hash_password, log

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class AuthMethod:
    kind: str  # "vm-key", "agent", "key-file" or "password"
    label: str
    pkey: Optional[paramiko.PKey] = None
    password: Optional[str] = None
    key_path: Optional[Path] = None


@dataclass(frozen=True)
class AuthMaterial:
    """What the guest is told to trust on first boot; exactly one side is set."""

    public_key: Optional[str] = None
    password: Optional[str] = None
    password_hash: Optional[str] = None


def load_private_key(path: Path) -> Optional[paramiko.PKey]:
    """Try each supported key type; unreadable or encrypted keys are skipped."""
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path))
        except (paramiko.SSHException, ValueError, OSError):
            continue
    log("DEBUG", f"Skipping unusable private key {path}")
    return None


class CredentialResolver:
    def __init__(
        self,
        ssh_dir: Optional[Path] = None,
        agent_labels: Iterable[str] = (),
        generate_keys: bool = True,
        agent_factory: Callable[[], paramiko.Agent] = paramiko.Agent,
    ) -> None:
        self.ssh_dir = ssh_dir or Path.home() / ".ssh"
        self.agent_labels = [label for label in agent_labels if label]
        self.generate_keys = generate_keys
        self._agent_factory = agent_factory

    # -- key pair for cloud-init -------------------------------------------

    @staticmethod
    def vm_key_path(vm_dir: Path) -> Path:
        return vm_dir / VM_KEY_NAME

    def generate_key_pair(self, vm_dir: Path, comment: str) -> str:
        key_path = self.vm_key_path(vm_dir)
        key = paramiko.RSAKey.generate(bits=2048)
        key.write_private_key_file(str(key_path))
        os.chmod(key_path, 0o600)
        public_key = f"{key.get_name()} {key.get_base64()} {comment}"
        key_path.with_suffix(".pub").write_text(public_key + "\n", encoding="utf-8")
        log("INFO", f"Generated SSH key pair {key_path}")
        return public_key

    def find_public_key(self, vm_dir: Path) -> Optional[str]:
        """VM-local key first, then the conventional files under ~/.ssh."""
        candidates = [self.vm_key_path(vm_dir).with_suffix(".pub")]
        candidates += [self.ssh_dir / f"{name}.pub" for name in CONVENTIONAL_KEY_NAMES]
        for path in candidates:
            if path.is_file():
                content = path.read_text(encoding="utf-8").strip()
                if content:
                    log("DEBUG", f"Using public key {path}")
                    return content
        return None

    def auth_material(
        self,
        vm_dir: Path,
        vm_name: str,
        auth_mode: str = "key",
        password: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> AuthMaterial:
        if auth_mode == "password":
            secret = password or generate_password()
            return AuthMaterial(password=secret, password_hash=password_hash or hash_password(secret))

        public_key = self.find_public_key(vm_dir)
        if public_key is None and self.generate_keys:
            public_key = self.generate_key_pair(vm_dir, comment=f"vmctl@{vm_name}")
        if public_key is None:
            raise NoCredentialsAvailable(
                f"No SSH public key found for VM {vm_name}: looked in {vm_dir} and {self.ssh_dir} "
                "(set VMCTL_GENERATE_KEYS=1 to generate one)"
            )
        return AuthMaterial(public_key=public_key)

    # -- ordered auth methods for connecting -------------------------------

    def _label_matches(self, key: paramiko.PKey) -> bool:
        if not self.agent_labels:
            return True
        comment = getattr(key, "comment", "") or ""
        if isinstance(comment, bytes):
            comment = comment.decode("utf-8", errors="replace")
        fingerprint = key.get_fingerprint().hex()
        return any(label in comment or label == fingerprint for label in self.agent_labels)

    def _agent_methods(self) -> List[AuthMethod]:
        try:
            agent = self._agent_factory()
            keys = agent.get_keys()
        except paramiko.SSHException as exc:
            log("DEBUG", f"SSH agent unavailable: {exc}")
            return []
        methods = []
        for key in keys:
            if self._label_matches(key):
                methods.append(AuthMethod(kind="agent", label=f"agent:{key.get_fingerprint().hex()}", pkey=key))
        return methods

    def auth_methods(self, vm_dir: Path, password: Optional[str] = None) -> List[AuthMethod]:
        """Re-resolved on every call so newly added keys are picked up."""
        methods: List[AuthMethod] = []
        vm_key = self.vm_key_path(vm_dir)
        if vm_key.is_file():
            pkey = load_private_key(vm_key)
            if pkey is not None:
                methods.append(AuthMethod(kind="vm-key", label=str(vm_key), pkey=pkey, key_path=vm_key))

        methods.extend(self._agent_methods())

        for name in CONVENTIONAL_KEY_NAMES:
            path = self.ssh_dir / name
            if not path.is_file():
                continue
            pkey = load_private_key(path)
            if pkey is not None:
                methods.append(AuthMethod(kind="key-file", label=str(path), pkey=pkey, key_path=path))

        methods.append(AuthMethod(kind="password", label="password", password=password or ""))
        return methods

    def identity_file(self, vm_dir: Path) -> Optional[Path]:
        """First private key file usable by the external ssh client."""
        for method in self.auth_methods(vm_dir):
            if method.key_path is not None:
                return method.key_path
        return None
