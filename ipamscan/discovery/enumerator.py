"""Lazy expansion of a CIDR block into scannable host addresses."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Iterator

from ipamscan.exceptions import InvalidCIDR


def parse_cidr(cidr: str) -> ipaddress.IPv4Network:
    """Parse IPv4 CIDR notation, masking host bits. Raises InvalidCIDR."""
    text = (cidr or "").strip()
    if "/" in text:
        _, _, prefix = text.partition("/")
        if not prefix.isdigit() or not 0 <= int(prefix) <= 32:
            raise InvalidCIDR(cidr, f"prefix must be 0-32, got '/{prefix}'")
    try:
        return ipaddress.IPv4Network(text, strict=False)
    except (ipaddress.AddressValueError, ipaddress.NetmaskValueError, ValueError) as e:
        raise InvalidCIDR(cidr, str(e)) from e


def _host_range(network: ipaddress.IPv4Network) -> range:
    first = int(network.network_address)
    last = int(network.broadcast_address)
    if network.prefixlen >= 31:
        # /31 point-to-point links use both addresses, /32 is the host itself
        return range(first, last + 1)
    return range(first + 1, last)


def count_hosts(cidr: str) -> int:
    """Number of usable host addresses in *cidr*."""
    return len(_host_range(parse_cidr(cidr)))


class AddressEnumerator:
    """Ordered, lazy, restartable sequence of host addresses of one subnet.

    Network and broadcast addresses are skipped for prefixes up to /30.
    Nothing is materialised: iteration walks an integer range, so memory use
    is the same for a /30 and a /8.

    Args:
        cidr: Subnet in CIDR notation, e.g. ``"192.168.1.0/24"``.
        exclude: Addresses to leave out (e.g. the gateway).
    """

    def __init__(self, cidr: str, exclude: Iterable[str] = ()):
        self.cidr = cidr
        self.network = parse_cidr(cidr)
        self._range = _host_range(self.network)
        excluded: set[int] = set()
        for addr in exclude:
            if not addr:
                continue
            try:
                value = int(ipaddress.IPv4Address(addr))
            except ValueError:
                continue
            if value in self._range:
                excluded.add(value)
        self._excluded = frozenset(excluded)

    def __iter__(self) -> Iterator[str]:
        for value in self._range:
            if value in self._excluded:
                continue
            yield str(ipaddress.IPv4Address(value))

    def __len__(self) -> int:
        return len(self._range) - len(self._excluded)

    def __contains__(self, address: object) -> bool:
        try:
            value = int(ipaddress.IPv4Address(str(address)))
        except ValueError:
            return False
        return value in self._range and value not in self._excluded

    def __repr__(self) -> str:
        return f"AddressEnumerator({str(self.network)!r}, hosts={len(self)})"
