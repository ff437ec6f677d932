"""Network argument and netplan generation for vmctl."""

from __future__ import annotations

import ipaddress
from typing import Dict, List, Optional

from vmctl.constants import DEFAULT_DNS, GUEST_SSH_PORT
from vmctl.exceptions import ManagerError
from vmctl.models import NetworkConfig


def gateway_for(address: str) -> str:
    """Same /24 as ``address`` with the last octet replaced by 1."""
    octets = address.split(".")
    if len(octets) != 4:
        raise ManagerError(f"Cannot derive a gateway from '{address}'")
    return ".".join(octets[:3] + ["1"])


def prefix_length(mask: Optional[str]) -> int:
    if not mask:
        return 24
    return ipaddress.IPv4Network(f"0.0.0.0/{mask}").prefixlen


def render_network_document(config: NetworkConfig) -> Dict[str, object]:
    """Build a netplan v2 document: DHCP unless a static range is configured."""
    match = {"name": "en*"}
    address = config.static_address
    if address is None:
        ethernet: Dict[str, object] = {"match": match, "dhcp4": True}
    else:
        ethernet = {
            "match": match,
            "dhcp4": False,
            "addresses": [f"{address}/{prefix_length(config.subnet_mask)}"],
            "gateway4": gateway_for(address),
            "nameservers": {"addresses": list(DEFAULT_DNS)},
        }
    return {"version": 2, "ethernets": {"eth0": ethernet}}


def render_network_args(
    config: NetworkConfig,
    ssh_port: Optional[int] = None,
    host_system: str = "linux",
) -> List[str]:
    """Render the QEMU -netdev/-device pair for the requested network mode."""
    if not config.mac_address:
        raise ManagerError("A MAC address must be assigned before launch")
    device = ["-device", f"virtio-net-pci,netdev=net0,mac={config.mac_address}"]

    if config.mode == "user":
        netdev = "user,id=net0"
        if ssh_port is not None:
            netdev += f",hostfwd=tcp:127.0.0.1:{ssh_port}-:{GUEST_SSH_PORT}"
        return ["-netdev", netdev] + device

    if config.mode == "bridged":
        if host_system == "darwin":
            netdev = "vmnet-shared,id=net0"
            addresses = [item.strip() for item in (config.static_address_range or "").split(",") if item.strip()]
            if len(addresses) >= 2:
                netdev += f",start-address={addresses[0]},end-address={addresses[-1]}"
                netdev += f",subnet-mask={config.subnet_mask or '255.255.255.0'}"
            return ["-netdev", netdev] + device
        if not config.bridge:
            raise ManagerError("A bridge name is required for bridged networking")
        return ["-netdev", f"bridge,id=net0,br={config.bridge}"] + device

    raise ManagerError(f"Unsupported network mode: {config.mode}")
