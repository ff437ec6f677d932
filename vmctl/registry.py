"""In-process registry of live hypervisor processes, ports and per-VM locks."""

from __future__ import annotations

import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from vmctl.exceptions import HypervisorLaunchFailed
from vmctl.utils import find_free_port, log


@dataclass
class ProcessHandle:
    name: str
    pid: Optional[int] = None
    popen: Optional[subprocess.Popen] = None
    session: Optional[str] = None


class ProcessRegistry:
    """Owned by the lifecycle manager and shared with the supervisor and monitor.

    Port reservations are checked under one guard so two concurrent starts can
    never hand out the same host port.
    """

    def __init__(self, port_allocator: Callable[[], int] = find_free_port, max_port_attempts: int = 32) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._handles: Dict[str, ProcessHandle] = {}
        self._ports: Dict[int, str] = {}
        self._allocate = port_allocator
        self._max_port_attempts = max_port_attempts

    def lock(self, name: str) -> threading.RLock:
        with self._guard:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    def reserve_port(self, owner: str) -> int:
        for _ in range(self._max_port_attempts):
            candidate = self._allocate()
            with self._guard:
                if candidate not in self._ports:
                    self._ports[candidate] = owner
                    log("DEBUG", f"Reserved port {candidate} for {owner}")
                    return candidate
        raise HypervisorLaunchFailed(f"Could not allocate a free local port for {owner}")

    def claim_port(self, owner: str, port: int) -> bool:
        """Record a port already in use by a live VM found on reload."""
        with self._guard:
            holder = self._ports.get(port)
            if holder is not None and holder != owner:
                return False
            self._ports[port] = owner
            return True

    def release_ports(self, owner: str) -> None:
        with self._guard:
            for port in [port for port, holder in self._ports.items() if holder == owner]:
                del self._ports[port]

    def ports_for(self, owner: str) -> List[int]:
        with self._guard:
            return sorted(port for port, holder in self._ports.items() if holder == owner)

    def register(self, handle: ProcessHandle) -> None:
        with self._guard:
            self._handles[handle.name] = handle

    def get(self, name: str) -> Optional[ProcessHandle]:
        with self._guard:
            return self._handles.get(name)

    def remove(self, name: str) -> Optional[ProcessHandle]:
        with self._guard:
            return self._handles.pop(name, None)

    def tracked(self) -> List[str]:
        with self._guard:
            return sorted(self._handles)
