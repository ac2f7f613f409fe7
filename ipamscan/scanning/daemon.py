"""CLI entry point running the scan scheduler until interrupted."""

from __future__ import annotations

import argparse
import signal
import sys
import threading

from loguru import logger

from ipamscan.exceptions import PersistenceError
from ipamscan.scanning.cli import _add_common_args, _build_coordinator, _log_event
from ipamscan.scanning.models import EventType
from ipamscan.scanning.scheduler import ScanScheduler


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Build argparse parser for the scheduler daemon."""
    parser = argparse.ArgumentParser(
        description="Scan all subnets every scan_interval minutes",
    )
    _add_common_args(parser)
    parser.add_argument(
        "--now",
        action="store_true",
        help="Run the first scan immediately instead of after one interval",
    )
    parser.add_argument(
        "--quiet-progress",
        action="store_true",
        help="Only log phase changes and summaries, not per-address progress",
    )
    return parser.parse_args(args)


def main(args: list[str] | None = None) -> None:
    """Main entry point for the scheduler daemon."""
    parsed = parse_args(args)

    if not parsed.verbose:
        logger.remove()
        logger.add(sys.stderr, level="INFO")

    try:
        coordinator = _build_coordinator(parsed)
    except PersistenceError as e:
        logger.error(str(e))
        sys.exit(1)

    scheduler = ScanScheduler(coordinator)
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    subscription = coordinator.broadcaster.subscribe()
    scheduler.start(run_immediately=parsed.now)
    try:
        while not stop.is_set():
            event = subscription.get(timeout=1.0)
            if event is None:
                continue
            if event.type == EventType.SUMMARY and event.summary is not None:
                s = event.summary
                logger.info(
                    f"[{s.job_id}] {s.status.value}: {s.online_devices} online in "
                    f"{s.subnets_scanned} subnet(s), {len(s.errors)} error(s)"
                )
            elif not (parsed.quiet_progress and event.type == EventType.PROGRESS):
                _log_event(event)
    finally:
        subscription.close()
        scheduler.stop()
        coordinator.shutdown()
