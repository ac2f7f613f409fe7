"""OUI (Organizationally Unique Identifier) database loading and vendor lookup."""

from __future__ import annotations

import os
import re
import threading
import time
from collections.abc import Iterable
from pathlib import Path

import requests
from loguru import logger

OUI_URL = "https://standards-oui.ieee.org/oui/oui.txt"
OUI_CACHE_PATH = Path("/tmp/ipamscan-oui.txt")

# Prefixes that resolve even without the IEEE download
BUILTIN_OUI: dict[str, str] = {
    "00:1B:11": "Cisco Systems",
    "00:1A:2F": "Cisco Systems",
    "00:25:22": "Cisco Systems",
    "00:26:F2": "Cisco Systems",
    "00:50:C2": "IEEE Registration Authority",
    "00:E0:4C": "Realtek Semiconductor",
    "00:27:D7": "Belkin International",
    "D8:5D:4C": "Apple",
    "3C:07:F4": "Apple",
    "78:A3:E4": "Apple",
    "24:F0:94": "Apple",
    "6C:96:CF": "Apple",
    "8C:85:90": "Apple",
    "00:40:8C": "Axis Communications",
    "AC:CC:8E": "Axis Communications",
    "B8:A4:4F": "Axis Communications",
    "44:19:B6": "Hikvision",
    "00:0F:7C": "ACTi",
    "00:1C:A8": "AirTies",
    "B8:27:EB": "Raspberry Pi",
    "DC:A6:32": "Raspberry Pi",
}

# Shorten verbose registry names for summaries
VENDOR_ABBREV: dict[str, str] = {
    "Cisco Systems, Inc": "Cisco",
    "Cisco Systems": "Cisco",
    "Hewlett Packard": "HP",
    "HP Inc.": "HP",
    "Raspberry Pi Trading Ltd": "Raspberry Pi",
    "Raspberry Pi (Trading) Ltd": "Raspberry Pi",
    "Axis Communications AB": "Axis Communications",
    "Hangzhou Hikvision Digital Technology Co.,Ltd.": "Hikvision",
    "Blackmagic Design": "Blackmagic",
    "Haivision Network Video": "Haivision",
    "NETGEAR": "Netgear",
    "Ubiquiti Inc": "Ubiquiti",
    "TP-LINK TECHNOLOGIES CO.,LTD.": "TP-Link",
    "REALTEK SEMICONDUCTOR CORP.": "Realtek",
    "Realtek Semiconductor": "Realtek",
    "Intel Corporate": "Intel",
    "Super Micro Computer, Inc.": "Supermicro",
}


def _abbreviate_vendor(vendor: str) -> str:
    """Return abbreviated vendor name if available."""
    return VENDOR_ABBREV.get(vendor, vendor)


def normalize_mac(mac: str) -> str:
    """Normalise a MAC address to lower-case ``aa:bb:cc:dd:ee:ff``.

    Accepts colon, dash, Cisco dotted (``aabb.ccdd.eeff``) and bare hex forms.
    Returns an empty string for anything that is not 12 hex digits.
    """
    digits = re.sub(r"[^0-9a-fA-F]", "", mac or "")
    if len(digits) != 12:
        return ""
    digits = digits.lower()
    return ":".join(digits[i : i + 2] for i in range(0, 12, 2))


def _parse_oui_lines(lines: Iterable[str]) -> dict[str, str]:
    """Map ``AA:BB:CC`` prefixes to vendors from IEEE ``oui.txt`` lines."""
    oui_db: dict[str, str] = {}
    for line in lines:
        prefix, sep, vendor = line.partition("(hex)")
        if sep and vendor.strip():
            oui_db[prefix.strip().replace("-", ":").upper()] = vendor.strip()
    return oui_db


def _download_oui(path: Path, timeout: float = 30.0) -> bool:
    """Fetch ``oui.txt`` into *path*. Returns False (and logs) on any failure."""
    logger.info(f"Downloading OUI database to {path}")
    tmp = path.with_name(path.name + ".part")
    try:
        with requests.get(OUI_URL, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(tmp, "wb") as f:
                for chunk in response.iter_content(chunk_size=65536):
                    f.write(chunk)
        os.replace(tmp, path)
        return True
    except (requests.RequestException, OSError) as e:
        logger.warning(f"Failed to download OUI database: {e}")
        tmp.unlink(missing_ok=True)
        return False


def load_oui_db(download: bool = True, path: Path | None = None, max_age_days: float = 30) -> dict[str, str]:
    """Load the IEEE OUI database from the cache file.

    A missing cache (or one older than *max_age_days*) is fetched when
    *download* is set. A stale cache is still used if the refresh fails.
    The cache location defaults to ``$IPAMSCAN_OUI_CACHE`` or
    ``/tmp/ipamscan-oui.txt``.
    """
    oui_path = path or Path(os.environ.get("IPAMSCAN_OUI_CACHE", OUI_CACHE_PATH))

    stale = oui_path.exists() and time.time() - oui_path.stat().st_mtime > max_age_days * 86400
    if download and (stale or not oui_path.exists()):
        _download_oui(oui_path)
    if not oui_path.exists():
        return {}

    try:
        with open(oui_path, encoding="utf-8", errors="replace") as f:
            return _parse_oui_lines(f)
    except OSError as e:
        logger.warning(f"Could not read OUI database {oui_path}: {e}")
        return {}


def lookup_vendor(mac: str, oui_db: dict[str, str]) -> str:
    """Look up vendor from MAC address using OUI prefix."""
    normalized = normalize_mac(mac)
    if not normalized:
        return ""
    prefix = normalized.upper()[:8]  # XX:XX:XX
    vendor = oui_db.get(prefix) or BUILTIN_OUI.get(prefix, "")
    return _abbreviate_vendor(vendor)


class OuiResolver:
    """Thread-safe vendor resolver that loads the OUI database on first use."""

    def __init__(self, download: bool = True, oui_db: dict[str, str] | None = None):
        self.download = download
        self._db = oui_db
        self._lock = threading.Lock()

    def _ensure_loaded(self) -> dict[str, str]:
        if self._db is None:
            with self._lock:
                if self._db is None:
                    self._db = load_oui_db(download=self.download)
                    logger.debug(f"OUI database: {len(self._db)} prefixes")
        return self._db

    def resolve(self, mac: str) -> str:
        return lookup_vendor(mac, self._ensure_loaded())
