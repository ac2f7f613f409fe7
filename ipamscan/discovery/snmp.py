"""SNMP-assisted link-layer lookup via router ARP tables (ipNetToMediaTable)."""

from __future__ import annotations

import threading
import time
from typing import Any

from loguru import logger

from ipamscan.discovery.oui import normalize_mac

# Optional pysnmp import
try:
    import asyncio

    from pysnmp.hlapi.asyncio import (
        CommunityData,
        ContextData,
        ObjectIdentity,
        ObjectType,
        SnmpEngine,
        UdpTransportTarget,
        bulk_walk_cmd,
    )

    HAS_PYSNMP = True
except ImportError:
    HAS_PYSNMP = False

# IP-MIB ipNetToMediaPhysAddress, indexed by ifIndex.a.b.c.d
_OID_IP_NET_TO_MEDIA_PHYS = "1.3.6.1.2.1.4.22.1.2"


async def _snmp_walk_table(
    engine: Any, auth: Any, target: Any, oid: str, index_len: int = 1, host: str = ""
) -> list[tuple[Any, Any]]:
    """Bulk-walk an OID subtree.

    index_len=1: return (last_index, value) tuples.
    index_len=N: return (tuple of the last N index components, value) tuples.
    """
    tag = f" [{host}]" if host else ""
    results = []
    async for error_indication, error_status, _, var_binds in bulk_walk_cmd(
        engine,
        auth,
        target,
        ContextData(),
        0,
        25,
        ObjectType(ObjectIdentity(oid)),
        lexicographicMode=False,
    ):
        if error_indication:
            logger.warning(f"SNMP walk error{tag} on {oid}: {error_indication}")
            break
        if error_status:
            logger.warning(f"SNMP walk error{tag} on {oid}: {error_status.prettyPrint()}")
            break
        for var_bind_oid, val in var_binds:
            idx: Any
            if index_len == 1:
                idx = int(var_bind_oid[-1])
            else:
                idx = tuple(int(var_bind_oid[-i]) for i in range(index_len, 0, -1))
            results.append((idx, val))
    return results


def _format_phys_address(value: Any) -> str:
    """Render an SNMP PhysAddress value as ``aa:bb:cc:dd:ee:ff``."""
    if hasattr(value, "asOctets"):
        raw = bytes(value.asOctets())
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        return normalize_mac(str(value))
    if len(raw) != 6:
        return ""
    return ":".join(f"{b:02x}" for b in raw)


def _rows_to_arp_table(rows: list[tuple[Any, Any]]) -> dict[str, str]:
    """Convert ipNetToMediaPhysAddress rows into {ip: mac}."""
    table: dict[str, str] = {}
    for idx, val in rows:
        ip = ".".join(str(o) for o in idx)
        mac = _format_phys_address(val)
        if mac and ip not in table:
            table[ip] = mac
    return table


class SnmpArpTable:
    """IP -> MAC cache built from the ARP tables of one or more routers.

    Hosts on routed subnets never show up in the local neighbour table; their
    gateway router has seen them, so its ipNetToMediaTable fills the gap.
    """

    def __init__(self, routers: list[tuple[str, str]], timeout: float = 2.0, max_age: float = 300.0):
        """
        Args:
            routers: List of (ip, community) tuples.
            timeout: Per-request SNMP timeout in seconds.
            max_age: Seconds before the cached table is considered stale.
        """
        self.routers = routers
        self.timeout = timeout
        self.max_age = max_age
        self._table: dict[str, str] = {}
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    async def _query_router(self, router_ip: str, community: str) -> dict[str, str]:
        logger.info(f"SNMP querying ARP table of {router_ip} (community: {community})...")
        engine = SnmpEngine()
        auth = CommunityData(community)
        target = await UdpTransportTarget.create((router_ip, 161), timeout=self.timeout, retries=1)
        try:
            rows = await _snmp_walk_table(
                engine,
                auth,
                target,
                _OID_IP_NET_TO_MEDIA_PHYS,
                index_len=4,
                host=router_ip,
            )
            table = _rows_to_arp_table(rows)
            logger.info(f"  {router_ip}: {len(table)} ARP entries")
            return table
        finally:
            engine.close_dispatcher()

    async def _collect_all(self) -> dict[str, str]:
        tasks = [self._query_router(ip, community) for ip, community in self.routers]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        merged: dict[str, str] = {}
        for r in results:
            if isinstance(r, BaseException):
                logger.error(f"Router ARP query failed: {r}")
                continue
            for ip, mac in r.items():
                merged.setdefault(ip, mac)
        return merged

    def refresh(self) -> dict[str, str]:
        """Re-read every router's ARP table. Returns the merged table."""
        if not self.routers or not HAS_PYSNMP:
            return self._table
        table = asyncio.run(self._collect_all())
        self._table = table
        self._loaded_at = time.monotonic()
        return table

    def _is_stale(self) -> bool:
        return not self._loaded_at or time.monotonic() - self._loaded_at > self.max_age

    def lookup(self, ip: str) -> str:
        """Return the MAC for *ip*, or an empty string.

        A stale table is refreshed by at most one caller; everybody else reads
        the current table without waiting.
        """
        if self._is_stale() and self._lock.acquire(blocking=False):
            try:
                if self._is_stale():
                    self.refresh()
            finally:
                self._lock.release()
        return self._table.get(ip, "")
