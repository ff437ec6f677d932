"""Per-VM tmux sessions for vmctl."""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Dict, List, Optional

from libtmux import Server as TmuxServer

from vmctl.constants import CONSOLE_WINDOW, STATUS_WINDOW
from vmctl.exceptions import SessionError
from vmctl.models import SSHInfo
from vmctl.status import render_status
from vmctl.utils import atomic_write_text, log, run, session_name_for


def _stderr(result) -> str:
    lines = getattr(result, "stderr", None) or []
    return "\n".join(lines) if isinstance(lines, list) else str(lines)


class SessionMultiplexer:
    """Named ``vm-<name>`` sessions with a ``console`` and a ``status`` window.

    Raw tmux commands go through ``Server.cmd`` so behaviour does not depend on
    libtmux's higher level helpers, which change between releases.
    """

    def __init__(self, server: Optional[TmuxServer] = None) -> None:
        self._server = server

    @property
    def server(self) -> TmuxServer:
        if self._server is None:
            self._server = TmuxServer()
        return self._server

    @staticmethod
    def session_name(vm_name: str) -> str:
        return session_name_for(vm_name)

    def _cmd(self, *args: str):
        try:
            return self.server.cmd(*args)
        except Exception as exc:
            raise SessionError(f"tmux {args[0]} failed: {exc}") from exc

    def has_session(self, vm_name: str) -> bool:
        result = self._cmd("has-session", "-t", self.session_name(vm_name))
        return getattr(result, "returncode", 1) == 0

    def create_session(self, vm_name: str, command: Optional[List[str]] = None, cwd: Optional[Path] = None) -> str:
        name = self.session_name(vm_name)
        if self.has_session(vm_name):
            raise SessionError(f"tmux session {name} already exists")
        args = ["new-session", "-d", "-s", name, "-n", CONSOLE_WINDOW]
        if cwd is not None:
            args += ["-c", str(cwd)]
        if command:
            # sh -lc so PATH and redirections behave as in a login shell
            args += ["sh", "-lc", " ".join(shlex.quote(part) for part in command)]
        result = self._cmd(*args)
        if getattr(result, "returncode", 0) != 0:
            raise SessionError(f"Failed to create tmux session {name}", details=_stderr(result))
        result = self._cmd("new-window", "-d", "-t", f"{name}:", "-n", STATUS_WINDOW)
        if getattr(result, "returncode", 0) != 0:
            raise SessionError(f"Failed to create status window in {name}", details=_stderr(result))
        log("INFO", f"Created tmux session {name}")
        return name

    def run_console_command(self, vm_name: str, command: str) -> None:
        target = f"{self.session_name(vm_name)}:{CONSOLE_WINDOW}"
        result = self._cmd("send-keys", "-t", target, command, "Enter")
        if getattr(result, "returncode", 0) != 0:
            raise SessionError(f"Failed to send command to {target}", details=_stderr(result))

    def update_status(
        self,
        vm_name: str,
        status: str,
        ssh_info: Optional[SSHInfo],
        details: Dict[str, object],
        status_file: Path,
    ) -> None:
        """Rewrite the status file and redraw it in the status window."""
        atomic_write_text(status_file, render_status(vm_name, status, ssh_info, details))
        target = f"{self.session_name(vm_name)}:{STATUS_WINDOW}"
        redraw = f"clear && cat {shlex.quote(str(status_file))}"
        result = self._cmd("send-keys", "-t", target, redraw, "Enter")
        if getattr(result, "returncode", 0) != 0:
            raise SessionError(f"Failed to refresh status window {target}", details=_stderr(result))

    def close_session(self, vm_name: str) -> None:
        name = self.session_name(vm_name)
        if not self.has_session(vm_name):
            return
        self._cmd("kill-session", "-t", name)
        if self.has_session(vm_name):
            raise SessionError(f"tmux session {name} is still present after kill-session")
        log("INFO", f"Closed tmux session {name}")

    def attach_session(self, vm_name: str) -> int:
        name = self.session_name(vm_name)
        if not self.has_session(vm_name):
            raise SessionError(f"No tmux session {name}")
        if os.environ.get("TMUX"):
            result = self._cmd("switch-client", "-t", name)
            return getattr(result, "returncode", 0)
        return run(["tmux", "attach-session", "-t", name], check=False).returncode
