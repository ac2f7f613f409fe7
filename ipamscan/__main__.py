"""Orchestrator CLI: dispatches to sub-CLIs.

Sub-commands:
  probe   Probe addresses or a CIDR block once, no inventory involved
  scan    One-shot scan of inventory subnets with live progress and a summary
  daemon  Scheduled scans every scan_interval minutes

Examples:
  ipamscan probe 192.168.1.0/24 --format json

  ipamscan scan --inventory inventory.json -s 10.0.0.0/24 --devices

  IPAMSCAN_SCAN_INTERVAL=15 ipamscan daemon --inventory inventory.json --now
"""

from __future__ import annotations

import os
import sys

from tabulate import tabulate

from ipamscan import __version__, configure_logging
from ipamscan import glogger

COMMANDS = {
    "probe": ("ipamscan.discovery.cli", "Probe hosts for liveness and identity"),
    "scan": ("ipamscan.scanning.cli", "One-shot subnet scan into the inventory"),
    "daemon": ("ipamscan.scanning.daemon", "Scheduled subnet scans"),
}


def _print_usage() -> None:
    print("usage: ipamscan <command> [options]\n")
    print("Available commands:")
    for cmd, (_, desc) in COMMANDS.items():
        print(f"  {cmd:10s}  {desc}")
    print("\nRun 'ipamscan <command> --help' for command-specific options.")


def _print_startup_banner() -> None:
    startup_rows = [
        ["version", __version__],
        ["log level", os.getenv("LOGURU_LEVEL", "INFO")],
        ["euid", str(os.geteuid())],
    ]

    for var in ("IPAMSCAN_SCAN_INTERVAL", "IPAMSCAN_PROBE_POOL_SIZE", "BUILDTIME"):
        val = os.environ.get(var)
        if val:
            startup_rows.append([var, val])

    table_str = tabulate(startup_rows, tablefmt="mixed_grid")
    lines = table_str.split("\n")
    table_width = len(lines[0])
    title = "ipamscan starting up"
    title_border = "┍" + "━" * (table_width - 2) + "┑"
    title_row = "│ " + title.center(table_width - 4) + " │"
    separator = lines[0].replace("┍", "┝").replace("┑", "┥").replace("┯", "┿")

    glogger.opt(raw=True).info(
        "\n{}\n", title_border + "\n" + title_row + "\n" + separator + "\n" + "\n".join(lines[1:])
    )


def main() -> None:
    """Main entry point, dispatching to a sub-CLI."""
    configure_logging()
    _print_startup_banner()

    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        _print_usage()
        sys.exit(0 if len(sys.argv) >= 2 else 1)

    command = sys.argv[1]
    if command not in COMMANDS:
        print(f"ipamscan: unknown command '{command}'\n", file=sys.stderr)
        _print_usage()
        sys.exit(1)

    module_path, _ = COMMANDS[command]

    from importlib import import_module

    module = import_module(module_path)
    module.main(sys.argv[2:])


if __name__ == "__main__":
    main()
