"""SSH connectivity to guests for vmctl."""

from __future__ import annotations

import socket
from pathlib import Path
from typing import List, Optional, Tuple

import paramiko

from vmctl.constants import SSH_CONNECT_TIMEOUT
from vmctl.credentials import CredentialResolver
from vmctl.exceptions import ManagerError, NoCredentialsAvailable
from vmctl.models import SSHInfo
from vmctl.utils import log


class SSHConnector:
    """Open authenticated paramiko clients by walking the resolver's methods in order."""

    def __init__(self, resolver: CredentialResolver, timeout: float = SSH_CONNECT_TIMEOUT) -> None:
        self.resolver = resolver
        self.timeout = timeout

    def connect(self, ssh_info: SSHInfo, vm_dir: Path) -> paramiko.SSHClient:
        """Authentication failures fall through to the next method; transport errors propagate."""
        if not ssh_info.port:
            raise ManagerError("VM has no SSH port assigned")
        attempted: List[str] = []
        for method in self.resolver.auth_methods(vm_dir, ssh_info.password):
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    hostname=ssh_info.host,
                    port=ssh_info.port,
                    username=ssh_info.username,
                    pkey=method.pkey,
                    password=method.password,
                    timeout=self.timeout,
                    banner_timeout=self.timeout,
                    auth_timeout=self.timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except paramiko.AuthenticationException:
                client.close()
                attempted.append(method.label)
                continue
            except Exception:
                client.close()
                raise
            log("DEBUG", f"SSH authenticated to {ssh_info.host}:{ssh_info.port} via {method.label}")
            return client
        raise NoCredentialsAvailable(
            f"All SSH auth methods failed for {ssh_info.username}@{ssh_info.host}:{ssh_info.port}",
            details="Tried: " + ", ".join(attempted),
        )

    def check_login(self, ssh_info: SSHInfo, vm_dir: Path) -> bool:
        """One readiness attempt: True once an authenticated session is established."""
        client = self.connect(ssh_info, vm_dir)
        client.close()
        return True

    def run_command(
        self,
        ssh_info: SSHInfo,
        vm_dir: Path,
        command: str,
        timeout: Optional[float] = None,
    ) -> Tuple[int, str, str]:
        client = self.connect(ssh_info, vm_dir)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout) as exc:
            raise ManagerError(f"Command '{command}' failed on {ssh_info.host}:{ssh_info.port}: {exc}")
        finally:
            client.close()
        return status, out, err

    def request_shutdown(self, ssh_info: SSHInfo, vm_dir: Path) -> bool:
        """The session usually drops mid-command, so any transport error counts as sent."""
        try:
            client = self.connect(ssh_info, vm_dir)
        except (ManagerError, paramiko.SSHException, OSError) as exc:
            log("DEBUG", f"Could not reach guest for shutdown: {exc}")
            return False
        try:
            client.exec_command("sudo shutdown -h now", timeout=self.timeout)
        except (paramiko.SSHException, OSError):
            pass
        finally:
            client.close()
        return True
