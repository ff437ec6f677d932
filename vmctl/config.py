"""Configuration loading and environment variable parsing for vmctl."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmctl.constants import (
    ARCH_ALIASES,
    AUTH_MODES,
    DEFAULT_BRIDGE,
    DEFAULT_CONSOLE_INTERVAL,
    DEFAULT_HOME,
    DEFAULT_IMAGES,
    DEFAULT_INIT_TIMEOUT,
    DEFAULT_MONITOR_INTERVAL,
    DEFAULT_SSH_INTERVAL,
    DEFAULT_STOP_TIMEOUT,
    DEFAULT_USER,
    DELETED_DIR_NAME,
    IMAGES_DIR_NAME,
    LAUNCH_STRATEGIES,
    MAC_ADDRESS_RE,
    NETWORK_MODES,
    SUPPORTED_ARCHES,
    TEMPLATES_DIR_NAME,
    VMS_DIR_NAME,
)
from vmctl.exceptions import ManagerError
from vmctl.models import NetworkConfig, VMConfig
from vmctl.utils import (
    get_env,
    get_env_bool,
    log,
    parse_int_env,
    validate_disk_size,
    validate_memory,
    validate_vm_name,
)


@dataclass
class Settings:
    home: Path
    launch_strategy: str = "direct"
    ssh_user: str = DEFAULT_USER
    init_timeout: int = DEFAULT_INIT_TIMEOUT
    ssh_interval: float = DEFAULT_SSH_INTERVAL
    console_interval: float = DEFAULT_CONSOLE_INTERVAL
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    monitor_interval: float = DEFAULT_MONITOR_INTERVAL
    agent_key_labels: List[str] = field(default_factory=list)
    generate_keys: bool = True
    image_catalog: Dict[str, Tuple[str, Optional[str]]] = field(default_factory=lambda: dict(DEFAULT_IMAGES))

    @property
    def images_dir(self) -> Path:
        return self.home / IMAGES_DIR_NAME

    @property
    def vms_dir(self) -> Path:
        return self.home / VMS_DIR_NAME

    @property
    def deleted_dir(self) -> Path:
        return self.home / DELETED_DIR_NAME

    @property
    def templates_dir(self) -> Path:
        return self.home / TEMPLATES_DIR_NAME


def normalize_arch(raw: str) -> str:
    lower = raw.strip().lower()
    arch = ARCH_ALIASES.get(lower, lower)
    if arch not in SUPPORTED_ARCHES:
        supported = ", ".join(sorted(SUPPORTED_ARCHES))
        raise ManagerError(f"Unsupported arch '{raw}'. Supported: {supported}")
    return arch


def load_image_catalog(path: Path) -> Dict[str, Tuple[str, Optional[str]]]:
    """Read a YAML catalog of the form ``images: {name: {url: ..., arch: ...}}``."""
    if not path.exists():
        raise ManagerError(f"Image catalog missing: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"Image catalog {path} contains invalid YAML: {exc}")
    images = data.get("images")
    if not isinstance(images, dict):
        raise ManagerError(f"Image catalog {path} must contain an 'images' mapping")
    catalog: Dict[str, Tuple[str, Optional[str]]] = {}
    for name, info in images.items():
        if not isinstance(info, dict) or not info.get("url"):
            raise ManagerError(f"Image '{name}' in {path} has no url")
        arch = info.get("arch")
        catalog[str(name)] = (str(info["url"]), normalize_arch(str(arch)) if arch else None)
    return catalog


def load_settings() -> Settings:
    home_raw = (get_env("VMCTL_HOME") or "").strip()
    home = Path(home_raw).expanduser() if home_raw else DEFAULT_HOME

    launch = (get_env("VMCTL_LAUNCH") or "direct").strip().lower()
    if launch not in LAUNCH_STRATEGIES:
        raise ManagerError(f"Unsupported VMCTL_LAUNCH '{launch}'. Expected one of direct, tmux.")

    labels_raw = get_env("VMCTL_AGENT_KEY_LABELS") or ""
    labels = [item.strip() for item in labels_raw.split(",") if item.strip()]

    catalog = dict(DEFAULT_IMAGES)
    catalog_path = (get_env("VMCTL_IMAGE_CATALOG") or "").strip()
    if catalog_path:
        extra = load_image_catalog(Path(catalog_path).expanduser())
        log("DEBUG", f"Loaded {len(extra)} image(s) from {catalog_path}")
        catalog.update(extra)

    return Settings(
        home=home,
        launch_strategy=launch,
        ssh_user=(get_env("VMCTL_SSH_USER") or DEFAULT_USER).strip() or DEFAULT_USER,
        init_timeout=parse_int_env("VMCTL_INIT_TIMEOUT", str(DEFAULT_INIT_TIMEOUT)),
        ssh_interval=parse_int_env("VMCTL_SSH_INTERVAL", str(DEFAULT_SSH_INTERVAL)),
        console_interval=parse_int_env("VMCTL_CONSOLE_INTERVAL", str(DEFAULT_CONSOLE_INTERVAL)),
        stop_timeout=parse_int_env("VMCTL_STOP_TIMEOUT", str(DEFAULT_STOP_TIMEOUT)),
        monitor_interval=parse_int_env("VMCTL_MONITOR_INTERVAL", str(DEFAULT_MONITOR_INTERVAL)),
        agent_key_labels=labels,
        generate_keys=get_env_bool("VMCTL_GENERATE_KEYS", True),
        image_catalog=catalog,
    )


def _validate_ipv4(value: str, label: str) -> None:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        raise ManagerError(f"{label} must be an IPv4 address (got '{value}')")


def build_network_config(
    name: str,
    mode: str = "user",
    mac_address: Optional[str] = None,
    static_address_range: Optional[str] = None,
    subnet_mask: Optional[str] = None,
    hostname: Optional[str] = None,
    bridge: Optional[str] = None,
) -> NetworkConfig:
    mode = (mode or "user").strip().lower()
    if mode not in NETWORK_MODES:
        raise ManagerError(f"Unsupported network mode '{mode}'. Expected one of bridged, user.")

    mac = (mac_address or "").strip().lower()
    if mac and not MAC_ADDRESS_RE.match(mac):
        raise ManagerError(f"Invalid MAC address '{mac_address}'")

    address_range = (static_address_range or "").strip() or None
    mask = (subnet_mask or "").strip() or None
    if address_range:
        for item in address_range.split(","):
            if item.strip():
                _validate_ipv4(item.strip(), "Static address")
        if mask is None:
            mask = "255.255.255.0"
        try:
            ipaddress.IPv4Network(f"0.0.0.0/{mask}")
        except ValueError:
            raise ManagerError(f"Invalid subnet mask '{mask}'")
    elif mask:
        raise ManagerError("A subnet mask requires a static address range")

    return NetworkConfig(
        mode=mode,
        mac_address=mac,
        static_address_range=address_range,
        subnet_mask=mask,
        hostname=(hostname or "").strip() or name,
        bridge=(bridge or "").strip() or (DEFAULT_BRIDGE if mode == "bridged" else None),
    )


def build_vm_config(
    name: str,
    base_image: str,
    cpus: int = 2,
    memory: str = "2G",
    disk_size: str = "20G",
    network: Optional[NetworkConfig] = None,
    extra_args: str = "",
    username: Optional[str] = None,
    auth_mode: str = "key",
    packages: Optional[List[str]] = None,
    arch: Optional[str] = None,
) -> VMConfig:
    """Validate caller input and return an immutable-by-convention VMConfig."""
    validate_vm_name(name)
    if not base_image or not base_image.strip():
        raise ManagerError("A base image is required")
    if cpus < 1 or cpus > 256:
        raise ManagerError(f"cpus must be between 1 and 256 (got {cpus})")
    if auth_mode not in AUTH_MODES:
        raise ManagerError(f"Unsupported auth mode '{auth_mode}'. Expected one of key, password.")

    return VMConfig(
        name=name,
        base_image=base_image.strip(),
        cpus=cpus,
        memory=validate_memory(str(memory)),
        disk_size=validate_disk_size(str(disk_size)),
        network=network or build_network_config(name),
        extra_args=extra_args or "",
        username=(username or DEFAULT_USER).strip() or DEFAULT_USER,
        auth_mode=auth_mode,
        packages=list(packages or []),
        arch=normalize_arch(arch) if arch else None,
    )
