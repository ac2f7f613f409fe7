"""Tests for ipamscan/discovery/oui.py"""

import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from ipamscan.discovery.oui import OuiResolver, _abbreviate_vendor, load_oui_db, lookup_vendor, normalize_mac


class TestAbbreviateVendor:
    """Tests for _abbreviate_vendor function."""

    def test_abbreviates_known_vendor(self):
        """Test abbreviation of known vendor."""
        assert _abbreviate_vendor("Axis Communications AB") == "Axis Communications"

    def test_returns_unknown_vendor_as_is(self):
        """Test unknown vendor is returned unchanged."""
        assert _abbreviate_vendor("Unknown Vendor Corp") == "Unknown Vendor Corp"


class TestNormalizeMac:
    """Tests for normalize_mac function."""

    @pytest.mark.parametrize(
        "raw",
        ["AC:CC:8E:12:34:56", "ac-cc-8e-12-34-56", "accc.8e12.3456", "ACCC8E123456"],
    )
    def test_formats(self, raw):
        """Test colon, dash, dotted and bare forms normalise identically."""
        assert normalize_mac(raw) == "ac:cc:8e:12:34:56"

    def test_invalid_returns_empty(self):
        """Test too short input returns empty string."""
        assert normalize_mac("ac:cc:8e") == ""
        assert normalize_mac("") == ""


class TestLookupVendor:
    """Tests for lookup_vendor function."""

    def test_lookup_vendor_with_matching_prefix(self):
        """Test lookup with matching OUI prefix."""
        oui_db = {"AA:BB:CC": "TestVendor"}
        assert lookup_vendor("aa:bb:cc:dd:ee:ff", oui_db) == "TestVendor"

    def test_builtin_table_fallback(self):
        """Test built-in prefixes resolve without a database."""
        assert lookup_vendor("AC:CC:8E:00:00:01", {}) == "Axis Communications"

    def test_database_wins_over_builtin(self):
        """Test the IEEE database takes precedence over the built-in table."""
        assert lookup_vendor("b8:27:eb:00:00:01", {"B8:27:EB": "Custom Vendor"}) == "Custom Vendor"

    def test_missing_prefix_returns_empty(self):
        """Test missing prefix returns empty string."""
        assert lookup_vendor("11:22:33:44:55:66", {}) == ""

    def test_garbage_returns_empty(self):
        """Test an unparsable MAC returns empty string."""
        assert lookup_vendor("not-a-mac", {"AA:BB:CC": "X"}) == ""


class TestLoadOuiDb:
    """Tests for load_oui_db function."""

    OUI_TEXT = "AA-BB-CC   (hex)\t\tTestVendor\n11-22-33   (hex)\t\tAnotherVendor\nRandom line without hex\n"

    def test_cache_exists_parses_file(self, tmp_path):
        """Test loading OUI database from a fresh cache file."""
        cache = tmp_path / "oui.txt"
        cache.write_text(self.OUI_TEXT)

        with patch("ipamscan.discovery.oui.requests.get") as mock_get:
            result = load_oui_db(path=cache)

        assert result == {"AA:BB:CC": "TestVendor", "11:22:33": "AnotherVendor"}
        mock_get.assert_not_called()

    def test_no_download_returns_empty(self, tmp_path):
        """Test download=False skips the fetch when no cache exists."""
        with patch("ipamscan.discovery.oui.requests.get") as mock_get:
            assert load_oui_db(download=False, path=tmp_path / "oui.txt") == {}
        mock_get.assert_not_called()

    def test_downloads_missing_cache(self, tmp_path):
        """Test a missing cache is downloaded, stored and parsed."""
        cache = tmp_path / "oui.txt"
        response = MagicMock()
        response.__enter__.return_value = response
        response.iter_content.return_value = [self.OUI_TEXT.encode()]

        with patch("ipamscan.discovery.oui.requests.get", return_value=response):
            result = load_oui_db(path=cache)

        assert result["AA:BB:CC"] == "TestVendor"
        assert cache.read_text() == self.OUI_TEXT

    def test_download_failure_returns_empty_dict(self, tmp_path):
        """Test an HTTP error leaves no cache and returns an empty dictionary."""
        cache = tmp_path / "oui.txt"

        with patch("ipamscan.discovery.oui.requests.get", side_effect=requests.ConnectionError("offline")):
            assert load_oui_db(path=cache) == {}
        assert list(tmp_path.iterdir()) == []

    def test_stale_cache_used_when_refresh_fails(self, tmp_path):
        """Test an expired cache is still read if the refresh fails."""
        cache = tmp_path / "oui.txt"
        cache.write_text(self.OUI_TEXT)
        os.utime(cache, (0, 0))

        with patch("ipamscan.discovery.oui.requests.get", side_effect=requests.Timeout("slow")) as mock_get:
            result = load_oui_db(path=cache)

        mock_get.assert_called_once()
        assert result["11:22:33"] == "AnotherVendor"

    def test_cache_path_from_environment(self, tmp_path, monkeypatch):
        """Test IPAMSCAN_OUI_CACHE selects the cache file."""
        cache = tmp_path / "custom.txt"
        cache.write_text(self.OUI_TEXT)
        monkeypatch.setenv("IPAMSCAN_OUI_CACHE", str(cache))

        assert load_oui_db(download=False) == {"AA:BB:CC": "TestVendor", "11:22:33": "AnotherVendor"}


class TestOuiResolver:
    """Tests for OuiResolver class."""

    def test_uses_given_database(self):
        """Test an injected database is used without loading."""
        resolver = OuiResolver(oui_db={"AA:BB:CC": "TestVendor"})
        assert resolver.resolve("aa:bb:cc:00:00:01") == "TestVendor"

    @patch("ipamscan.discovery.oui.load_oui_db")
    def test_loads_once(self, mock_load):
        """Test the database is loaded lazily and only once."""
        mock_load.return_value = {"AA:BB:CC": "TestVendor"}
        resolver = OuiResolver(download=False)

        resolver.resolve("aa:bb:cc:00:00:01")
        resolver.resolve("aa:bb:cc:00:00:02")

        mock_load.assert_called_once_with(download=False)
