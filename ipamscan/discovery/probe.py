"""Per-host liveness and identity probing with a bounded worker pool."""

from __future__ import annotations

import concurrent.futures
import math
import os
import socket
import threading
import time
from collections.abc import Iterable, Iterator
from typing import Any

from loguru import logger

from ipamscan.discovery._util import _extract_mac, _parse_ping_rtt, _run_cmd
from ipamscan.discovery.models import ProbeFailure, ProbeMethod, ProbeResult
from ipamscan.discovery.oui import OuiResolver
from ipamscan.discovery.snmp import SnmpArpTable
from ipamscan.exceptions import ProbeTimeout

# Optional scapy import
try:
    from scapy.all import ARP, Ether, srp  # type: ignore[import-untyped]

    HAS_SCAPY = True
except ImportError:
    HAS_SCAPY = False

# SSH, telnet, HTTP(S), RTSP, RTMP, alt-HTTP, SRT
DEFAULT_PROBE_PORTS: tuple[int, ...] = (22, 23, 80, 443, 554, 1935, 8080, 9000)

_PORT_OPEN = "open"
_PORT_CLOSED = "closed"
_PORT_FILTERED = "filtered"


class _Budget:
    """Wall-clock budget shared by all steps of one probe."""

    def __init__(self, seconds: float):
        self.deadline = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


class ProbeWorker:
    """Probe a single host: liveness, reverse DNS, TCP ports, MAC and vendor.

    All four steps share one ``probe_timeout`` budget; reverse DNS is further
    capped at ``dns_timeout``. Step failures leave the corresponding field
    unset (``open_ports`` stays None unless every port got an answer or a
    timeout); only a host that answers nothing is reported as ``alive=False``.
    """

    def __init__(
        self,
        ports: Iterable[int] = DEFAULT_PROBE_PORTS,
        probe_timeout: float = 5.0,
        ping_timeout: float = 2.0,
        port_timeout: float = 1.0,
        dns_timeout: float = 2.0,
        scan_ports: bool = True,
        tcp_fallback: bool = True,
        oui: OuiResolver | None = None,
        snmp_arp: SnmpArpTable | None = None,
        interface: str | None = None,
        lookup_workers: int = 64,
    ):
        self.ports = tuple(dict.fromkeys(int(p) for p in ports))
        self.probe_timeout = probe_timeout
        self.ping_timeout = ping_timeout
        self.port_timeout = port_timeout
        self.dns_timeout = dns_timeout
        self.scan_ports = scan_ports
        self.tcp_fallback = tcp_fallback
        self.oui = oui or OuiResolver()
        self.snmp_arp = snmp_arp
        self.interface = interface
        self.is_root = os.geteuid() == 0
        # one lookup slot per concurrent probe
        self._lookup_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, lookup_workers), thread_name_prefix="probe-dns"
        )

    def prepare(self) -> None:
        """Warm caches before a job starts probing."""
        if self.snmp_arp is not None:
            try:
                self.snmp_arp.refresh()
            except Exception as e:
                logger.warning(f"SNMP ARP table refresh failed: {e}")

    def close(self) -> None:
        self._lookup_pool.shutdown(wait=False, cancel_futures=True)

    def probe(self, address: str, cancel: threading.Event | None = None) -> ProbeResult | ProbeFailure:
        """Probe *address*. Never raises; unexpected errors become a ProbeFailure."""
        try:
            return self._probe(address, cancel or threading.Event())
        except Exception as e:
            logger.warning(f"Probe of {address} failed: {e}")
            return ProbeFailure(address=address, error=str(e))

    def _probe(self, address: str, cancel: threading.Event) -> ProbeResult:
        budget = _Budget(self.probe_timeout)

        alive, rtt, method, checked = self._check_liveness(address, budget)
        if not alive:
            return ProbeResult(address=address, alive=False)

        hostname: str | None = None
        open_ports: tuple[int, ...] | None = None
        mac: str | None = None
        vendor: str | None = None

        if not cancel.is_set():
            hostname = self._reverse_dns(address, budget)

        if not cancel.is_set() and self.scan_ports:
            open_ports = self._scan_ports(address, budget, checked)

        if not cancel.is_set():
            mac = self._lookup_mac(address, budget) or None
            if mac:
                vendor = self.oui.resolve(mac) or None

        return ProbeResult(
            address=address,
            alive=True,
            rtt_ms=rtt,
            hostname=hostname,
            mac=mac,
            vendor=vendor,
            open_ports=open_ports,
            method=method,
        )

    # ── step 1: liveness ───────────────────────────────────────────────

    def _check_liveness(
        self, address: str, budget: _Budget
    ) -> tuple[bool, float | None, ProbeMethod, dict[int, str]]:
        """ICMP echo first, TCP connect fallback.

        Returns (alive, rtt_ms, method, port states already settled by the
        fallback).
        """
        wait_secs = min(self.ping_timeout, budget.remaining())
        if wait_secs > 0:
            output = _run_cmd(
                ["ping", "-c", "1", "-W", str(max(1, math.ceil(wait_secs))), address],
                timeout=wait_secs + 0.5,
            )
            rtt = _parse_ping_rtt(output)
            if rtt is not None:
                return True, rtt, ProbeMethod.ICMP, {}

        if not self.tcp_fallback or budget.expired:
            return False, None, ProbeMethod.NONE, {}

        states, _ = self._probe_ports(address, self.ports, budget)
        responding = [(port, rtt) for port, (state, rtt) in states.items() if state != _PORT_FILTERED]
        if not responding:
            return False, None, ProbeMethod.NONE, {}
        # a refused connection still proves somebody answered
        rtt_ms = min(r for _, r in responding if r is not None)
        return True, rtt_ms, ProbeMethod.TCP, {port: state for port, (state, _) in states.items()}

    # ── step 2: reverse DNS ────────────────────────────────────────────

    def _reverse_dns(self, address: str, budget: _Budget) -> str | None:
        """Reverse DNS lookup bounded by the remaining budget, None on failure."""
        if budget.expired:
            return None
        future = self._lookup_pool.submit(socket.gethostbyaddr, address)
        try:
            hostname, _, _ = future.result(timeout=min(self.dns_timeout, budget.remaining()))
            return hostname or None
        except concurrent.futures.TimeoutError:
            logger.debug(str(ProbeTimeout(address, "reverse DNS")))
            return None
        except (socket.herror, socket.gaierror, OSError):
            return None

    # ── step 3: TCP ports ──────────────────────────────────────────────

    def _connect(self, address: str, port: int, timeout: float) -> tuple[str, float | None]:
        start = time.monotonic()
        try:
            with socket.create_connection((address, port), timeout=timeout):
                return _PORT_OPEN, (time.monotonic() - start) * 1000
        except ConnectionRefusedError:
            return _PORT_CLOSED, (time.monotonic() - start) * 1000
        except OSError:
            return _PORT_FILTERED, None

    def _probe_ports(
        self, address: str, ports: tuple[int, ...], budget: _Budget
    ) -> tuple[dict[int, tuple[str, float | None]], bool]:
        """Connect to all *ports* concurrently.

        Returns the settled ``{port: (state, rtt_ms)}`` and whether every
        port settled before the budget ran out.
        """
        if not ports:
            return {}, True
        if budget.expired:
            return {}, False
        timeout = min(self.port_timeout, budget.remaining())
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=len(ports), thread_name_prefix="probe-port")
        futures = {pool.submit(self._connect, address, port, timeout): port for port in ports}
        try:
            done, pending = concurrent.futures.wait(futures, timeout=budget.remaining() + 0.05)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        if pending:
            logger.debug(str(ProbeTimeout(address, f"port probe ({len(pending)} port(s))")))
        return {futures[f]: f.result() for f in done}, not pending

    def _scan_ports(self, address: str, budget: _Budget, checked: dict[int, str]) -> tuple[int, ...] | None:
        """Open ports, or None when some port was left unprobed."""
        remaining_ports = tuple(p for p in self.ports if p not in checked)
        states, complete = self._probe_ports(address, remaining_ports, budget)
        if not complete:
            return None
        open_ports = {port for port, state in checked.items() if state == _PORT_OPEN}
        open_ports.update(port for port, (state, _) in states.items() if state == _PORT_OPEN)
        return tuple(sorted(open_ports))

    # ── step 4: link-layer address ─────────────────────────────────────

    def _neighbour_mac(self, address: str, budget: _Budget) -> str:
        """Read the kernel neighbour table, falling back to ``arp -n``."""
        output = _run_cmd(["ip", "-4", "neigh", "show", address], timeout=max(0.1, budget.remaining()))
        mac = _extract_mac(output)
        if mac or budget.expired:
            return mac
        return _extract_mac(_run_cmd(["arp", "-n", address], timeout=max(0.1, budget.remaining())))

    def _scapy_arp(self, address: str, budget: _Budget) -> str:
        """ARP who-has via scapy (requires root)."""
        packet = Ether(dst="ff:ff:ff:ff:ff:ff") / ARP(pdst=address)
        kwargs: dict[str, Any] = {"timeout": min(1.0, budget.remaining()), "verbose": False}
        if self.interface:
            kwargs["iface"] = self.interface
        answered, _ = srp(packet, **kwargs)
        for _, received in answered:
            return str(received.hwsrc).lower()
        return ""

    def _lookup_mac(self, address: str, budget: _Budget) -> str:
        mac = ""
        try:
            mac = self._neighbour_mac(address, budget)
            if not mac and self.is_root and HAS_SCAPY and not budget.expired:
                mac = self._scapy_arp(address, budget)
            if not mac and self.snmp_arp is not None:
                mac = self.snmp_arp.lookup(address)
        except Exception as e:
            logger.debug(f"MAC lookup for {address} failed: {e}")
        return mac


class ProbeWorkerPool:
    """Bounded pool of concurrent probes fed from an address iterator.

    At most ``2 * size`` probes are queued or running at any time, so a slow
    network throttles enumeration instead of growing an unbounded backlog.
    Results are yielded in completion order.
    """

    def __init__(self, worker: ProbeWorker, size: int = 64, cancel_grace: float = 5.0):
        self.worker = worker
        self.size = max(1, size)
        self.cancel_grace = cancel_grace

    @staticmethod
    def _outcome(future: concurrent.futures.Future, address: str) -> ProbeResult | ProbeFailure:
        try:
            return future.result()
        except Exception as e:
            return ProbeFailure(address=address, error=str(e))

    def run(
        self,
        targets: Iterable[tuple[Any, str]],
        cancel: threading.Event | None = None,
    ) -> Iterator[tuple[Any, ProbeResult | ProbeFailure]]:
        """Probe every ``(tag, address)`` in *targets*, yielding ``(tag, outcome)``.

        When *cancel* is set no further addresses are dispatched; in-flight
        probes get ``cancel_grace`` seconds to finish and are abandoned after.
        """
        cancel = cancel or threading.Event()
        max_in_flight = self.size * 2
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="probe")
        in_flight: dict[concurrent.futures.Future, tuple[Any, str]] = {}
        iterator = iter(targets)
        exhausted = False

        try:
            while True:
                while not exhausted and not cancel.is_set() and len(in_flight) < max_in_flight:
                    try:
                        tag, address = next(iterator)
                    except StopIteration:
                        exhausted = True
                        break
                    future = executor.submit(self.worker.probe, address, cancel)
                    in_flight[future] = (tag, address)

                if not in_flight or cancel.is_set():
                    break

                done, _ = concurrent.futures.wait(
                    in_flight, timeout=0.5, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    tag, address = in_flight.pop(future)
                    yield tag, self._outcome(future, address)

            if cancel.is_set() and in_flight:
                logger.info(f"Cancelled: waiting up to {self.cancel_grace}s for {len(in_flight)} in-flight probe(s)")
                deadline = time.monotonic() + self.cancel_grace
                while in_flight:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    done, _ = concurrent.futures.wait(
                        in_flight, timeout=remaining, return_when=concurrent.futures.FIRST_COMPLETED
                    )
                    for future in done:
                        tag, address = in_flight.pop(future)
                        yield tag, self._outcome(future, address)
                if in_flight:
                    logger.warning(f"Abandoning {len(in_flight)} straggling probe(s)")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
