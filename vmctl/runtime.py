"""Host capability detection for vmctl."""

from __future__ import annotations

import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from vmctl.constants import ARCH_ALIASES, SUPPORTED_ARCHES
from vmctl.utils import kvm_available, log


@dataclass
class HostInfo:
    system: str  # "linux", "darwin", ...
    arch: str  # normalized, e.g. "x86_64" or "aarch64"
    kvm: bool
    hvf: bool

    def accelerator(self, guest_arch: str) -> str:
        """Hardware acceleration only applies when guest and host arch match."""
        if guest_arch != self.arch:
            return "tcg"
        if self.kvm:
            return "kvm"
        if self.hvf:
            return "hvf"
        return "tcg"


def _host_arch() -> str:
    machine = platform.machine().lower()
    return ARCH_ALIASES.get(machine, machine)


def _hvf_available(system: str) -> bool:
    """Hypervisor.framework ships with every supported macOS release."""
    return system == "darwin"


def detect_host() -> HostInfo:
    system = platform.system().lower()
    arch = _host_arch()
    kvm = system == "linux" and kvm_available()
    hvf = _hvf_available(system)
    if not kvm and not hvf:
        log("WARN", "No hardware acceleration detected; guests will run under TCG emulation")
    return HostInfo(system=system, arch=arch, kvm=kvm, hvf=hvf)


def detect_arch(image_name: str, image_url: str = "", declared: Optional[str] = None, host_arch: str = "") -> str:
    """Pick the guest arch from an explicit value, then image naming, then the host."""
    if declared:
        return declared
    haystack = f"{image_name} {image_url}".lower()
    if "arm64" in haystack or "aarch64" in haystack:
        return "aarch64"
    if "amd64" in haystack or "x86_64" in haystack or "x64" in haystack:
        return "x86_64"
    arch = host_arch or _host_arch()
    return arch if arch in SUPPORTED_ARCHES else "x86_64"


def find_firmware(candidates: Sequence[Path]) -> Optional[Path]:
    for path in candidates:
        if path.exists():
            return path
    return None
