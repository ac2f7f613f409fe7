"""Host discovery subpackage.

Expands CIDR blocks into host addresses and probes each host for liveness,
reverse DNS name, open TCP ports, MAC address and vendor.
"""

from ipamscan.discovery.enumerator import AddressEnumerator, count_hosts, parse_cidr
from ipamscan.discovery.models import (
    DeviceCategory,
    ProbeFailure,
    ProbeMethod,
    ProbeOutcome,
    ProbeResult,
)
from ipamscan.discovery.oui import OuiResolver
from ipamscan.discovery.probe import DEFAULT_PROBE_PORTS, ProbeWorker, ProbeWorkerPool
from ipamscan.discovery.snmp import SnmpArpTable

__all__ = [
    "AddressEnumerator",
    "count_hosts",
    "parse_cidr",
    "DeviceCategory",
    "ProbeFailure",
    "ProbeMethod",
    "ProbeOutcome",
    "ProbeResult",
    "OuiResolver",
    "DEFAULT_PROBE_PORTS",
    "ProbeWorker",
    "ProbeWorkerPool",
    "SnmpArpTable",
]
