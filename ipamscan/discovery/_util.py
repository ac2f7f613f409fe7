"""Shared helper functions for host probing."""

from __future__ import annotations

import ipaddress
import re
import subprocess

from loguru import logger

_MAC_RE = re.compile(r"([0-9a-f]{2}(?:[:-][0-9a-f]{2}){5})", re.IGNORECASE)


def _run_cmd(cmd: list[str], timeout: float = 30) -> str:
    """Run a subprocess command and return stdout."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        return result.stdout
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.debug(f"Command {cmd[0]} failed: {e}")
        return ""


def _validate_ip(ip: str) -> bool:
    """Validate IPv4 address string."""
    try:
        ipaddress.IPv4Address(ip)
        return True
    except ValueError:
        return False


def _extract_mac(text: str) -> str:
    """Return the first MAC address found in *text*, lower-case and colon-separated."""
    m = _MAC_RE.search(text)
    if not m:
        return ""
    mac = m.group(1).replace("-", ":").lower()
    # incomplete neighbour entries report an all-zero address
    if mac == "00:00:00:00:00:00":
        return ""
    return mac


def _parse_ping_rtt(output: str) -> float | None:
    """Parse the round-trip time from ``ping`` output, None when no reply."""
    m = re.search(r"time[=<]\s*([\d.]+)\s*ms", output)
    if m:
        return float(m.group(1))
    return None
