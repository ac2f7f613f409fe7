"""CLI entry point for a one-shot scan against a JSON inventory."""

from __future__ import annotations

import argparse
import json
import sys

from loguru import logger
from tabulate import tabulate

from ipamscan.exceptions import InvalidCIDR, PersistenceError, ScanError
from ipamscan.inventory.models import Subnet, Vlan
from ipamscan.inventory.notifications import CompositeNotifier, LogNotifier, Notifier, WebhookNotifier
from ipamscan.inventory.settings import InMemorySettingsStore, ScanSettings
from ipamscan.inventory.store import InMemoryInventoryStore, InventoryStore, JsonInventoryStore
from ipamscan.scanning.coordinator import ScanCoordinator
from ipamscan.scanning.models import EventType, ScanEvent, ScanStatus, ScanSummary


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--inventory",
        help="JSON inventory file (created if missing; default: in-memory only)",
    )
    parser.add_argument(
        "-s",
        "--subnet",
        action="append",
        default=[],
        help="Subnet CIDR to add to the inventory if not present (repeatable)",
    )
    parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a setting, e.g. --set probe_pool_size=128 (repeatable)",
    )
    parser.add_argument(
        "--vlan",
        action="append",
        default=[],
        metavar="TAG[:NAME]",
        help="Define a VLAN for subnet VLAN inference, e.g. --vlan 20:Production (repeatable)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Verbose logging",
    )


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Build argparse parser for one-shot scans."""
    parser = argparse.ArgumentParser(
        description="Scan subnets once and reconcile the results into the inventory",
    )
    _add_common_args(parser)
    parser.add_argument(
        "--subnet-id",
        type=int,
        action="append",
        default=[],
        help="Only scan this subnet id (repeatable; default: all subnets)",
    )
    parser.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Summary output format (default: table)",
    )
    parser.add_argument(
        "--devices",
        action="store_true",
        help="Also list the devices of the scanned subnets",
    )
    return parser.parse_args(args)


def _parse_overrides(pairs: list[str]) -> dict[str, str]:
    """Parse KEY=VALUE strings."""
    overrides: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            logger.warning(f"Ignoring malformed setting (need KEY=VALUE): {pair}")
            continue
        overrides[key.strip()] = value.strip()
    return overrides


def _ensure_subnets(store: InventoryStore, cidrs: list[str]) -> list[Subnet]:
    """Add *cidrs* missing from *store*. Returns the subnets matching *cidrs*."""
    existing = {s.network: s for s in store.list_subnets()}
    result: list[Subnet] = []
    for cidr in cidrs:
        if cidr in existing:
            result.append(existing[cidr])
            continue
        try:
            subnet = store.add_subnet(Subnet(network=cidr, description="added from command line"))
        except (InvalidCIDR, ValueError) as e:
            logger.error(f"Invalid subnet {cidr}: {e}")
            continue
        existing[cidr] = subnet
        result.append(subnet)
    return result


def _ensure_vlans(store: InventoryStore, values: list[str]) -> list[Vlan]:
    """Add VLANs given as ``TAG[:NAME]`` that *store* lacks. Returns the matching VLANs."""
    existing = {v.vlan_id: v for v in store.list_vlans()}
    result: list[Vlan] = []
    for value in values:
        tag, _, name = value.partition(":")
        try:
            vlan = Vlan(vlan_id=int(tag), name=name.strip())
        except ValueError as e:
            logger.error(f"Invalid VLAN {value}: {e}")
            continue
        if vlan.vlan_id not in existing:
            existing[vlan.vlan_id] = store.add_vlan(vlan)
        result.append(existing[vlan.vlan_id])
    return result


def _build_notifier(settings: ScanSettings) -> Notifier:
    notifiers: list[Notifier] = [LogNotifier()]
    if settings.webhook_url:
        notifiers.append(WebhookNotifier(settings.webhook_url))
    return CompositeNotifier(notifiers)


def _build_coordinator(parsed: argparse.Namespace) -> ScanCoordinator:
    """Store, settings and coordinator from the common CLI arguments."""
    settings = InMemorySettingsStore(_parse_overrides(parsed.set))
    store: InventoryStore = JsonInventoryStore(parsed.inventory) if parsed.inventory else InMemoryInventoryStore()
    _ensure_subnets(store, parsed.subnet)
    _ensure_vlans(store, parsed.vlan)
    return ScanCoordinator(store, settings, notifier=_build_notifier(ScanSettings.from_store(settings)))


def _log_event(event: ScanEvent) -> None:
    if event.type == EventType.PROGRESS:
        found = f" new device {event.newly_found_device}" if event.newly_found_device else ""
        logger.info(f"[{event.job_id}] {event.current}/{event.total} {event.current_address or ''}{found}")
    elif event.type == EventType.PHASE and event.phase is not None:
        logger.info(f"[{event.job_id}] phase: {event.phase.value}")


def _format_summary(summary: ScanSummary) -> str:
    rows = [
        ["status", summary.status.value],
        ["subnets scanned", summary.subnets_scanned],
        ["hosts alive", summary.devices_found],
        ["online devices", summary.online_devices],
    ]
    for error in summary.errors:
        rows.append(["error", error])
    parts = [tabulate(rows, tablefmt="simple")]
    if summary.vendor_breakdown:
        parts.append(tabulate(summary.vendor_breakdown.items(), headers=["vendor", "devices"], tablefmt="simple"))
    if summary.device_type_breakdown:
        parts.append(
            tabulate(summary.device_type_breakdown.items(), headers=["device type", "devices"], tablefmt="simple")
        )
    return "\n\n".join(parts)


def _format_devices(store: InventoryStore, subnet_ids: list[int]) -> str:
    rows = [
        [d.address, d.status.value, d.hostname or "", d.mac or "", d.vendor or "", ",".join(map(str, d.open_ports))]
        for d in store.list_devices()
        if d.subnet_id in subnet_ids
    ]
    return tabulate(rows, headers=["address", "status", "hostname", "mac", "vendor", "ports"], tablefmt="simple")


def main(args: list[str] | None = None) -> None:
    """Main entry point for the scan CLI."""
    parsed = parse_args(args)

    if not parsed.verbose:
        logger.remove()
        logger.add(sys.stderr, level="INFO")

    try:
        coordinator = _build_coordinator(parsed)
    except PersistenceError as e:
        logger.error(str(e))
        sys.exit(1)

    subscription = coordinator.broadcaster.subscribe()
    try:
        job_id = coordinator.start_scan(parsed.subnet_id)
    except ScanError as e:
        logger.error(str(e))
        sys.exit(1)

    summary: ScanSummary | None = None
    try:
        for event in subscription:
            _log_event(event)
            if event.type == EventType.SUMMARY and event.job_id == job_id:
                summary = event.summary
                break
    except KeyboardInterrupt:
        logger.warning("Interrupted, cancelling scan...")
        try:
            coordinator.cancel_scan(job_id)
        except ScanError:
            pass
        for event in subscription:
            if event.type == EventType.SUMMARY and event.job_id == job_id:
                summary = event.summary
                break
    finally:
        subscription.close()
        coordinator.wait(job_id)

    if summary is None:
        logger.error("Scan ended without a summary")
        sys.exit(1)

    if parsed.format == "json":
        output = summary.model_dump_json(indent=2)
        if parsed.devices:
            devices = [d.model_dump(mode="json") for d in coordinator.store.list_devices()]
            output = json.dumps({"summary": json.loads(output), "devices": devices}, indent=2)
    else:
        output = _format_summary(summary)
        if parsed.devices:
            job = coordinator.get_status(job_id)
            output += "\n\n" + _format_devices(coordinator.store, job.subnet_ids)
    print(output)

    if summary.status == ScanStatus.FAILED:
        sys.exit(2)
