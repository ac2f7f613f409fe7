"""VLAN inference for subnets that have no VLAN assigned."""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable
from typing import NamedTuple

from loguru import logger

from ipamscan.discovery.categorize import _categorize
from ipamscan.discovery.models import DeviceCategory
from ipamscan.inventory.models import ActivityAction, ActivityLogEntry, Device, Subnet, Vlan
from ipamscan.inventory.store import InventoryStore

# "VLAN 20", "vlan-20", "vlan_20" in a subnet description
_VLAN_HINT = re.compile(r"\bvlan[\s_-]*(\d{1,4})\b", re.IGNORECASE)

# Match patterns: (device categories seen in the subnet, VLAN name keywords)
_DEVICE_RULES: list[tuple[set[str], list[str]]] = [
    (
        {DeviceCategory.CAMERA.value, DeviceCategory.ENCODER.value},
        ["broadcast", "production", "srt", "video", "camera"],
    ),
    (
        {DeviceCategory.SWITCH.value, DeviceCategory.ROUTER.value},
        ["engineering", "control", "management", "mgmt"],
    ),
]


class VlanAssignment(NamedTuple):
    assigned: int = 0
    unassigned: int = 0


def _by_description_tag(subnet: Subnet, vlans: list[Vlan]) -> Vlan | None:
    match = _VLAN_HINT.search(subnet.description)
    if not match:
        return None
    tag = int(match.group(1))
    return next((v for v in vlans if v.vlan_id == tag), None)


def _by_gateway(subnet: Subnet, vlans: list[Vlan]) -> Vlan | None:
    """VLAN tagged like the gateway's third octet (10.1.20.1 -> VLAN 20)."""
    if not subnet.gateway:
        return None
    try:
        octet = ipaddress.IPv4Address(subnet.gateway).packed[2]
    except ValueError:
        return None
    return next((v for v in vlans if v.vlan_id == octet), None)


def _by_devices(subnet: Subnet, vlans: list[Vlan], devices: Iterable[Device]) -> Vlan | None:
    categories = {
        d.device_type or _categorize(d.vendor, d.hostname, d.open_ports).value
        for d in devices
        if d.subnet_id == subnet.id
    }
    for wanted, keywords in _DEVICE_RULES:
        if not categories & wanted:
            continue
        for vlan in vlans:
            if any(k in vlan.name.lower() for k in keywords):
                return vlan
    return None


def _by_description_name(subnet: Subnet, vlans: list[Vlan]) -> Vlan | None:
    text = subnet.description.lower()
    if not text:
        return None
    return next((v for v in vlans if v.name and v.name.lower() in text), None)


def infer_vlan(subnet: Subnet, vlans: list[Vlan], devices: Iterable[Device]) -> tuple[Vlan, str] | None:
    """Guess the VLAN of *subnet*. Returns ``(vlan, method)`` or None.

    Methods are tried in order: an explicit ``VLAN <tag>`` in the
    description, the gateway's third octet, the kinds of devices found in
    the subnet, and finally a VLAN name mentioned in the description.
    """
    if not vlans:
        return None
    checks = (
        ("description tag", lambda: _by_description_tag(subnet, vlans)),
        ("gateway", lambda: _by_gateway(subnet, vlans)),
        ("devices", lambda: _by_devices(subnet, vlans, devices)),
        ("description name", lambda: _by_description_name(subnet, vlans)),
    )
    for method, check in checks:
        vlan = check()
        if vlan is not None:
            return vlan, method
    return None


def assign_vlans(store: InventoryStore, subnet_ids: Iterable[int] | None = None) -> VlanAssignment:
    """Assign inferred VLANs to subnets without one and log each assignment.

    Only *subnet_ids* are considered when given. Subnets that already carry
    a VLAN are never touched.
    """
    vlans = store.list_vlans()
    if not vlans:
        logger.debug("No VLANs defined, skipping VLAN inference")
        return VlanAssignment()

    wanted = set(subnet_ids) if subnet_ids is not None else None
    candidates = [
        s for s in store.list_subnets() if s.vlan_id is None and (wanted is None or s.id in wanted)
    ]
    if not candidates:
        return VlanAssignment()

    devices = store.list_devices()
    assigned = 0
    for subnet in candidates:
        found = infer_vlan(subnet, vlans, devices)
        if found is None:
            logger.debug(f"No VLAN found for subnet {subnet.network}")
            continue
        vlan, method = found
        if store.update_subnet(subnet.id, {"vlan_id": vlan.id}) is None:
            continue
        assigned += 1
        logger.info(f"Subnet {subnet.network} assigned to VLAN {vlan.vlan_id} ({vlan.name or 'unnamed'}) by {method}")
        store.append_activity(
            ActivityLogEntry(
                action=ActivityAction.SUBNET_VLAN_ASSIGNED,
                entity_type="subnet",
                entity_id=str(subnet.id),
                details={"network": subnet.network, "vlan": vlan.vlan_id, "vlan_name": vlan.name, "method": method},
            )
        )
    return VlanAssignment(assigned=assigned, unassigned=len(candidates) - assigned)
