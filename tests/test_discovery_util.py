"""Tests for ipamscan/discovery/_util.py"""

import subprocess
from unittest.mock import Mock, patch

import pytest

from ipamscan.discovery._util import _extract_mac, _parse_ping_rtt, _run_cmd, _validate_ip


class TestValidateIp:
    """Tests for _validate_ip function."""

    def test_valid_ipv4(self):
        """Test valid IPv4 addresses."""
        assert _validate_ip("192.168.1.1") is True
        assert _validate_ip("10.0.0.255") is True

    def test_invalid(self):
        """Test invalid strings and IPv6 are rejected."""
        assert _validate_ip("256.1.1.1") is False
        assert _validate_ip("host") is False
        assert _validate_ip("::1") is False


class TestExtractMac:
    """Tests for _extract_mac function."""

    def test_ip_neigh_output(self):
        """Test MAC extraction from 'ip neigh' output."""
        output = "192.168.1.50 dev eth0 lladdr AC:CC:8E:12:34:56 REACHABLE\n"
        assert _extract_mac(output) == "ac:cc:8e:12:34:56"

    def test_arp_output_dashes(self):
        """Test dash-separated MACs are normalised."""
        assert _extract_mac("? (10.0.0.5) at 00-40-8c-aa-bb-cc [ether]") == "00:40:8c:aa:bb:cc"

    def test_incomplete_entry(self):
        """Test FAILED neighbour entries yield no MAC."""
        assert _extract_mac("192.168.1.51 dev eth0 FAILED\n") == ""

    def test_all_zero_is_ignored(self):
        """Test the all-zero placeholder address is treated as absent."""
        assert _extract_mac("10.0.0.9 at 00:00:00:00:00:00") == ""


class TestParsePingRtt:
    """Tests for _parse_ping_rtt function."""

    def test_reply(self):
        """Test round-trip time is parsed from a reply line."""
        output = "64 bytes from 192.168.1.50: icmp_seq=1 ttl=64 time=0.412 ms\n"
        assert _parse_ping_rtt(output) == pytest.approx(0.412)

    def test_sub_millisecond_marker(self):
        """Test 'time<1 ms' form."""
        assert _parse_ping_rtt("reply from 10.0.0.1: time<1 ms") == 1.0

    def test_no_reply(self):
        """Test no reply returns None."""
        assert _parse_ping_rtt("1 packets transmitted, 0 received, 100% packet loss") is None


class TestRunCmd:
    """Tests for _run_cmd function."""

    @patch("ipamscan.discovery._util.subprocess.run")
    def test_returns_stdout(self, mock_run):
        """Test stdout is returned."""
        mock_run.return_value = Mock(stdout="ok\n")
        assert _run_cmd(["echo", "ok"], timeout=3) == "ok\n"
        assert mock_run.call_args.kwargs["timeout"] == 3

    @patch("ipamscan.discovery._util.subprocess.run")
    def test_timeout_returns_empty(self, mock_run):
        """Test timeout yields an empty string."""
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="ping", timeout=1)
        assert _run_cmd(["ping"]) == ""

    @patch("ipamscan.discovery._util.subprocess.run")
    def test_missing_binary_returns_empty(self, mock_run):
        """Test missing binary yields an empty string."""
        mock_run.side_effect = FileNotFoundError()
        assert _run_cmd(["arp"]) == ""
