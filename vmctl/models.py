"""Data models for vmctl."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from vmctl.constants import DEFAULT_CPUS, DEFAULT_DISK_SIZE, DEFAULT_MEMORY, DEFAULT_USER


class VMStatus:
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    STARTING = "starting"
    STARTED = "started"
    STOPPED = "stopped"
    FAILED = "failed"
    DELETED = "deleted"

    ALL = frozenset({CREATED, INITIALIZING, READY, STARTING, STARTED, STOPPED, FAILED, DELETED})
    # Statuses that claim a hypervisor process is alive.
    RUNNING = frozenset({INITIALIZING, STARTING, STARTED})


@dataclass(frozen=True)
class Image:
    name: str
    url: str
    local_path: Path
    arch: Optional[str] = None

    @property
    def downloaded(self) -> bool:
        return self.local_path.exists()


@dataclass
class NetworkConfig:
    mode: str = "user"
    mac_address: str = ""
    static_address_range: Optional[str] = None
    subnet_mask: Optional[str] = None
    hostname: str = ""
    bridge: Optional[str] = None

    @property
    def static_address(self) -> Optional[str]:
        """First address of the comma separated range."""
        if not self.static_address_range:
            return None
        first = self.static_address_range.split(",")[0].strip()
        return first or None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkConfig":
        return cls(
            mode=data.get("mode", "user"),
            mac_address=data.get("mac_address", ""),
            static_address_range=data.get("static_address_range"),
            subnet_mask=data.get("subnet_mask"),
            hostname=data.get("hostname", ""),
            bridge=data.get("bridge"),
        )


@dataclass
class VMConfig:
    name: str
    base_image: str
    cpus: int = DEFAULT_CPUS
    memory: str = DEFAULT_MEMORY
    disk_size: str = DEFAULT_DISK_SIZE
    network: NetworkConfig = field(default_factory=NetworkConfig)
    extra_args: str = ""
    username: str = DEFAULT_USER
    auth_mode: str = "key"  # "key" or "password"
    packages: List[str] = field(default_factory=list)
    arch: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VMConfig":
        return cls(
            name=data["name"],
            base_image=data["base_image"],
            cpus=int(data.get("cpus", DEFAULT_CPUS)),
            memory=str(data.get("memory", DEFAULT_MEMORY)),
            disk_size=str(data.get("disk_size", DEFAULT_DISK_SIZE)),
            network=NetworkConfig.from_dict(data.get("network") or {}),
            extra_args=data.get("extra_args", ""),
            username=data.get("username", DEFAULT_USER),
            auth_mode=data.get("auth_mode", "key"),
            packages=list(data.get("packages") or []),
            arch=data.get("arch"),
        )


@dataclass
class SSHInfo:
    username: str = DEFAULT_USER
    host: str = "127.0.0.1"
    port: int = 0
    private_key_ref: Optional[str] = None
    password: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SSHInfo":
        return cls(
            username=data.get("username", DEFAULT_USER),
            host=data.get("host", "127.0.0.1"),
            port=int(data.get("port") or 0),
            private_key_ref=data.get("private_key_ref"),
            password=data.get("password"),
        )


@dataclass(frozen=True)
class CloudInitDocuments:
    meta_data: str
    user_data: str
    network_config: str


@dataclass
class VM:
    name: str
    config: VMConfig
    ssh_info: SSHInfo = field(default_factory=SSHInfo)
    status: str = VMStatus.CREATED
    last_error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    console_port: Optional[int] = None

    @property
    def pid(self) -> Optional[int]:
        value = self.metadata.get("pid")
        return int(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VM":
        return cls(
            name=data["name"],
            config=VMConfig.from_dict(data["config"]),
            ssh_info=SSHInfo.from_dict(data.get("ssh_info") or {}),
            status=data.get("status", VMStatus.CREATED),
            last_error=data.get("last_error"),
            metadata=dict(data.get("metadata") or {}),
            console_port=data.get("console_port"),
        )


class TemplateStatus:
    CREATING = "creating"
    READY = "ready"
    ERROR = "error"


@dataclass
class Template:
    """A provisioned base disk that new VMs can use as their backing file."""

    name: str
    description: str
    base_image: str
    status: str = TemplateStatus.CREATING
    packages: List[str] = field(default_factory=list)
    created_at: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Template":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            base_image=data["base_image"],
            status=data.get("status", TemplateStatus.CREATING),
            packages=list(data.get("packages") or []),
            created_at=data.get("created_at", ""),
            metadata=dict(data.get("metadata") or {}),
        )
