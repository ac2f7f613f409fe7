"""Device type classification rules for scan summaries."""

from __future__ import annotations

from collections.abc import Iterable

from ipamscan.discovery.models import DeviceCategory, ProbeResult

# Match patterns: (category, vendor_substrings, hostname_patterns)
_CATEGORY_RULES: list[tuple[DeviceCategory, list[str], list[str]]] = [
    (
        DeviceCategory.CAMERA,
        [
            "Axis",
            "Hikvision",
            "Dahua",
            "Panasonic",
            "Sony",
        ],
        [
            "camera",
            "cam-",
            "ipcam",
            "ptz",
            "nvr",
        ],
    ),
    (
        DeviceCategory.ENCODER,
        [
            "Haivision",
            "Blackmagic",
            "Teradek",
            "Matrox",
            "Kiloview",
        ],
        [
            "encoder",
            "decoder",
            "srt",
            "makito",
        ],
    ),
    (
        DeviceCategory.SWITCH,
        [
            "NETGEAR",
            "Netgear",
            "Ubiquiti",
            "TP-Link",
        ],
        [
            "switch",
            "sw-",
        ],
    ),
    (
        DeviceCategory.ROUTER,
        [
            "MikroTik",
            "Juniper",
        ],
        [
            "router",
            "gw-",
            "gateway",
            "rtr",
        ],
    ),
]

# Fallback by open port when vendor and hostname say nothing
_PORT_RULES: list[tuple[DeviceCategory, tuple[int, ...]]] = [
    (DeviceCategory.CAMERA, (554,)),
    (DeviceCategory.ENCODER, (1935, 9000)),
    (DeviceCategory.WEB_SERVER, (80, 443, 8080)),
    (DeviceCategory.SSH_SERVER, (22,)),
    (DeviceCategory.TELNET, (23,)),
]


def _categorize(vendor: str | None, hostname: str | None, open_ports: Iterable[int]) -> DeviceCategory:
    """Classify a host by vendor, hostname and open ports."""
    vendor_lower = (vendor or "").lower()
    hostname_lower = (hostname or "").lower()

    for category, vendor_patterns, hostname_patterns in _CATEGORY_RULES:
        for vp in vendor_patterns:
            if vendor_lower and vp.lower() in vendor_lower:
                return category
        for hp in hostname_patterns:
            if hp in hostname_lower:
                return category

    ports = set(open_ports)
    for category, port_set in _PORT_RULES:
        if ports.intersection(port_set):
            return category

    return DeviceCategory.UNKNOWN


def _categorize_host(result: ProbeResult) -> DeviceCategory:
    """Classify a probed host."""
    return _categorize(result.vendor, result.hostname, result.open_ports or ())
