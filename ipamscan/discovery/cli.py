"""CLI entry point for probing individual hosts or whole CIDR blocks."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger
from tabulate import tabulate

from ipamscan.discovery._util import _validate_ip
from ipamscan.discovery.categorize import _categorize_host
from ipamscan.discovery.enumerator import AddressEnumerator
from ipamscan.discovery.models import ProbeFailure, ProbeResult
from ipamscan.discovery.oui import OuiResolver
from ipamscan.discovery.probe import DEFAULT_PROBE_PORTS, ProbeWorker, ProbeWorkerPool
from ipamscan.discovery.snmp import HAS_PYSNMP, SnmpArpTable
from ipamscan.exceptions import InvalidCIDR


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Build argparse parser for host probing."""
    parser = argparse.ArgumentParser(
        description="Probe hosts for liveness, hostname, open ports and vendor",
    )
    parser.add_argument(
        "targets",
        help="Comma-separated IPs, CIDR (192.168.1.0/24), or last-octet range (192.168.1.1-254)",
    )
    parser.add_argument(
        "-p",
        "--ports",
        default=",".join(str(p) for p in DEFAULT_PROBE_PORTS),
        help="TCP ports to probe (default: %(default)s)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Total per-host probe budget in seconds (default: 5)",
    )
    parser.add_argument(
        "--ping-timeout",
        type=float,
        default=2.0,
        help="ICMP echo timeout in seconds (default: 2)",
    )
    parser.add_argument(
        "--port-timeout",
        type=float,
        default=1.0,
        help="Per-port TCP connect timeout in seconds (default: 1)",
    )
    parser.add_argument(
        "--dns-timeout",
        type=float,
        default=2.0,
        help="Reverse DNS timeout in seconds (default: 2)",
    )
    parser.add_argument(
        "--pool-size",
        type=int,
        default=64,
        help="Concurrent probes (default: 64)",
    )
    parser.add_argument(
        "--no-ports",
        action="store_true",
        help="Skip the TCP port probe",
    )
    parser.add_argument(
        "--no-tcp-fallback",
        action="store_true",
        help="Only trust ICMP echo for liveness",
    )
    parser.add_argument(
        "--routers",
        help="SNMP ARP lookup: comma-separated router IPs with optional community "
        "(e.g. 192.168.1.1:public,10.0.0.1). Default community: public",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="List unreachable addresses as well",
    )
    parser.add_argument(
        "--count",
        action="store_true",
        help="Only print how many addresses the targets expand to",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Output file (default: stdout)",
    )
    parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args(args)


def _expand_targets(targets_str: str) -> list[str]:
    """Expand comma-separated targets (IPs, CIDR, ranges) into a flat list."""
    result: list[str] = []
    for part in targets_str.split(","):
        part = part.strip()
        if not part:
            continue
        if "/" in part:
            try:
                result.extend(AddressEnumerator(part))
            except InvalidCIDR as e:
                logger.warning(str(e))
        elif "-" in part.rsplit(".", 1)[-1]:
            prefix, last = part.rsplit(".", 1)
            try:
                start_s, end_s = last.split("-", 1)
                start, end = int(start_s), int(end_s)
            except (ValueError, TypeError):
                logger.warning(f"Invalid range target: {part}")
                continue
            result.extend(f"{prefix}.{i}" for i in range(max(start, 0), min(end, 255) + 1))
        elif _validate_ip(part):
            result.append(part)
        else:
            logger.warning(f"Invalid target: {part}")
    return list(dict.fromkeys(result))


def _parse_ports(ports_str: str) -> list[int]:
    """Parse a comma-separated port list, dropping anything outside 1-65535."""
    ports: list[int] = []
    for part in ports_str.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            port = int(part)
        except ValueError:
            logger.warning(f"Invalid port: {part}")
            continue
        if 0 < port < 65536:
            ports.append(port)
        else:
            logger.warning(f"Port out of range: {port}")
    return ports


def _parse_routers(routers_str: str) -> list[tuple[str, str]]:
    """Parse router list: IP[:COMMUNITY],..."""
    routers: list[tuple[str, str]] = []
    for part in routers_str.split(","):
        part = part.strip()
        if not part:
            continue
        if ":" in part:
            ip, community = part.split(":", 1)
        else:
            ip, community = part, "public"
        routers.append((ip, community))
    return routers


def _format_table(outcomes: list[ProbeResult | ProbeFailure], show_all: bool = False) -> str:
    rows = []
    for outcome in outcomes:
        if isinstance(outcome, ProbeFailure):
            rows.append([outcome.address, "error", "", "", "", "", "", outcome.error])
            continue
        if not outcome.alive and not show_all:
            continue
        rows.append(
            [
                outcome.address,
                "up" if outcome.alive else "down",
                f"{outcome.rtt_ms:.1f}" if outcome.rtt_ms is not None else "",
                outcome.hostname or "",
                outcome.mac or "",
                outcome.vendor or "",
                ",".join(str(p) for p in outcome.open_ports or ()),
                _categorize_host(outcome).value if outcome.alive else "",
            ]
        )
    headers = ["address", "state", "rtt ms", "hostname", "mac", "vendor", "ports", "type"]
    return tabulate(rows, headers=headers, tablefmt="simple")


def _format_json(outcomes: list[ProbeResult | ProbeFailure]) -> str:
    return "[\n" + ",\n".join(o.model_dump_json(indent=2) for o in outcomes) + "\n]"


def main(args: list[str] | None = None) -> None:
    """Main entry point for probe CLI."""
    parsed = parse_args(args)

    if not parsed.verbose:
        logger.remove()
        logger.add(sys.stderr, level="INFO")

    targets = _expand_targets(parsed.targets)
    if parsed.count:
        print(len(targets))
        return
    if not targets:
        logger.error("No valid targets")
        sys.exit(1)

    snmp_arp: SnmpArpTable | None = None
    if parsed.routers:
        if not HAS_PYSNMP:
            logger.error("pysnmp is required for --routers (pip install pysnmp)")
            sys.exit(1)
        snmp_arp = SnmpArpTable(_parse_routers(parsed.routers))

    worker = ProbeWorker(
        ports=_parse_ports(parsed.ports),
        probe_timeout=parsed.timeout,
        ping_timeout=parsed.ping_timeout,
        port_timeout=parsed.port_timeout,
        dns_timeout=parsed.dns_timeout,
        scan_ports=not parsed.no_ports,
        tcp_fallback=not parsed.no_tcp_fallback,
        oui=OuiResolver(),
        snmp_arp=snmp_arp,
        lookup_workers=parsed.pool_size,
    )
    worker.prepare()
    pool = ProbeWorkerPool(worker, size=parsed.pool_size)

    logger.info(f"Probing {len(targets)} address(es)...")
    outcomes = [outcome for _, outcome in pool.run((None, ip) for ip in targets)]
    worker.close()

    order = {ip: i for i, ip in enumerate(targets)}
    outcomes.sort(key=lambda o: order.get(o.address, len(order)))
    alive = sum(1 for o in outcomes if isinstance(o, ProbeResult) and o.alive)
    logger.info(f"{alive} of {len(targets)} address(es) responded")

    if parsed.format == "json":
        output = _format_json(outcomes)
    else:
        output = _format_table(outcomes, show_all=parsed.all)

    if parsed.output:
        Path(parsed.output).write_text(output + "\n")
        logger.info(f"Output written to {parsed.output}")
    else:
        print(output)
