"""Subnet matching and utilisation helpers."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

from loguru import logger

from ipamscan.discovery.enumerator import count_hosts, parse_cidr
from ipamscan.exceptions import InvalidCIDR
from ipamscan.inventory.models import Device, DeviceStatus, Subnet


def longest_prefix_match(address: str, subnets: Iterable[Subnet]) -> Subnet | None:
    """Return the most specific subnet containing *address*, or None.

    Ties on prefix length go to the lowest subnet id so the result is stable.
    """
    try:
        ip = ipaddress.IPv4Address(address)
    except ValueError:
        return None

    best: Subnet | None = None
    best_prefix = -1
    for subnet in subnets:
        try:
            network = parse_cidr(subnet.network)
        except InvalidCIDR:
            logger.warning(f"Skipping subnet {subnet.id} with invalid network {subnet.network!r}")
            continue
        if ip not in network:
            continue
        if network.prefixlen > best_prefix or (network.prefixlen == best_prefix and best and subnet.id < best.id):
            best = subnet
            best_prefix = network.prefixlen
    return best


def subnet_utilization(subnet: Subnet, devices: Iterable[Device]) -> tuple[int, int, float]:
    """Return (online devices, usable hosts, percent) for *subnet*."""
    capacity = count_hosts(subnet.network)
    used = sum(1 for d in devices if d.subnet_id == subnet.id and d.status == DeviceStatus.ONLINE)
    percent = (used / capacity * 100) if capacity else 0.0
    return used, capacity, percent
