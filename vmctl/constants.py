"""Global constants and path configuration for vmctl."""

from __future__ import annotations

import os
import re
from pathlib import Path

# VMCTL_HOME provides a single root for images and VM directories.
DEFAULT_HOME = Path(os.environ.get("VMCTL_HOME") or Path.home() / ".vmctl")
IMAGES_DIR_NAME = "images"
VMS_DIR_NAME = "vms"
DELETED_DIR_NAME = "vms-deleted"
TEMPLATES_DIR_NAME = "templates"

# Files inside a VM directory
STATE_FILE_NAME = "vm-state.json"
DISK_FILE_NAME = "disk.qcow2"
SEED_ISO_NAME = "cidata.iso"
CONSOLE_LOG_NAME = "qemu.log"
PID_FILE_NAME = "qemu.pid"
STATUS_FILE_NAME = "status.txt"
META_DATA_NAME = "meta-data"
USER_DATA_NAME = "user-data"
NETWORK_CONFIG_NAME = "network-config"
VM_KEY_NAME = "id_rsa"
TEMPLATE_FILE_NAME = "template.json"

TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")
DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
MEMORY_RE = re.compile(r"^\d+[MGmg]?$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

DEFAULT_USER = "ubuntu"
DEFAULT_CPUS = 2
DEFAULT_MEMORY = "2G"
DEFAULT_DISK_SIZE = "20G"
GUEST_SSH_PORT = 22

# Timeouts (seconds)
DEFAULT_INIT_TIMEOUT = 600
DEFAULT_SSH_INTERVAL = 5
DEFAULT_CONSOLE_INTERVAL = 1
DEFAULT_STOP_TIMEOUT = 30
DEFAULT_MONITOR_INTERVAL = 5
SSH_CONNECT_TIMEOUT = 10
LAUNCH_SETTLE_SECONDS = 0.5

LOGIN_PROMPT_RE = re.compile(r"\blogin:")
CONSOLE_TAIL_LINES = 20
CONSOLE_WINDOW = "console"
STATUS_WINDOW = "status"
SESSION_PREFIX = "vm-"

LAUNCH_STRATEGIES = {"direct", "tmux"}
NETWORK_MODES = {"user", "bridged"}
AUTH_MODES = {"key", "password"}
DEFAULT_BRIDGE = "br0"
DEFAULT_DNS = ("8.8.8.8", "8.8.4.4")

SUPPORTED_ARCHES = {
    "x86_64": {
        "binary": "qemu-system-x86_64",
        "machine": "q35",
        "tcg_fallback": "qemu64",
        "firmware_required": False,
        "firmware": (
            Path("/usr/share/qemu/OVMF.fd"),
            Path("/usr/share/ovmf/OVMF.fd"),
            Path("/opt/homebrew/share/qemu/edk2-x86_64-code.fd"),
            Path("/usr/local/share/qemu/edk2-x86_64-code.fd"),
        ),
    },
    "aarch64": {
        "binary": "qemu-system-aarch64",
        "machine": "virt",
        "tcg_fallback": "cortex-a72",
        "firmware_required": True,
        "firmware": (
            Path("/usr/share/qemu/edk2-aarch64-code.fd"),
            Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
            Path("/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
            Path("/opt/homebrew/share/qemu/edk2-aarch64-code.fd"),
            Path("/usr/local/share/qemu/edk2-aarch64-code.fd"),
        ),
    },
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}

_UBUNTU_CLOUD = "https://cloud-images.ubuntu.com"

# name -> (url, arch)
DEFAULT_IMAGES = {
    "ubuntu-22.04": (f"{_UBUNTU_CLOUD}/jammy/current/jammy-server-cloudimg-amd64.img", "x86_64"),
    "ubuntu-24.04": (f"{_UBUNTU_CLOUD}/noble/current/noble-server-cloudimg-amd64.img", "x86_64"),
    "jammy-server-cloudimg-amd64": (f"{_UBUNTU_CLOUD}/jammy/current/jammy-server-cloudimg-amd64.img", "x86_64"),
    "jammy-server-cloudimg-arm64": (f"{_UBUNTU_CLOUD}/jammy/current/jammy-server-cloudimg-arm64.img", "aarch64"),
    "noble-server-cloudimg-amd64": (f"{_UBUNTU_CLOUD}/noble/current/noble-server-cloudimg-amd64.img", "x86_64"),
    "noble-server-cloudimg-arm64": (f"{_UBUNTU_CLOUD}/noble/current/noble-server-cloudimg-arm64.img", "aarch64"),
}
IMAGE_EXTENSIONS = (".img", ".qcow2", ".raw")

# Public keys offered to cloud-init, then private keys tried for SSH, in order.
CONVENTIONAL_KEY_NAMES = ("id_ed25519", "id_ecdsa", "id_rsa")

GUEST_LOG_SOURCES = {
    "kernel": "dmesg -w",
    "cloud-init-journal": "sudo journalctl -f -u cloud-init -u cloud-init-local -u cloud-config -u cloud-final",
    "cloud-init": "sudo tail -n +1 -F /var/log/cloud-init.log",
    "cloud-init-output": "sudo tail -n +1 -F /var/log/cloud-init-output.log",
}
