"""Tests for network identity detection."""

import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from groupcall.net.locator import (
    MOBILE_NETWORK,
    UNKNOWN_NETWORK,
    NetworkLocator,
    candidate_ips_from_sdp,
    extract_ip_from_candidate,
    generate_group_name,
    get_network_prefix,
    is_fallback_identity,
    is_mobile_user_agent,
)


IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36"

SAMPLE_SDP = "\r\n".join(
    [
        "v=0",
        "m=application 9 DTLS/SCTP 5000",
        "a=candidate:1 1 udp 2130706431 fe80::1 50000 typ host",
        "a=candidate:2 1 udp 2130706431 127.0.0.1 50001 typ host",
        "a=candidate:3 1 udp 2130706431 169.254.3.4 50002 typ host",
        "a=candidate:4 1 udp 2130706431 192.168.1.42 50003 typ host",
        "a=candidate:5 1 udp 1694498815 203.0.113.7 50004 typ srflx raddr 192.168.1.42 rport 50003",
        "a=candidate:6 1 udp 2130706431 192.168.1.42 50005 typ host",
        "a=end-of-candidates",
    ]
)


async def no_candidates() -> None:
    return None


class TestPrefixAndNames:
    """Tests for the pure identity helpers."""

    @pytest.mark.parametrize(
        ("ip", "expected"),
        [
            ("192.168.1.42", "192.168.1.x"),
            ("10.0.0.5", "10.0.0.x"),
            ("172.16.5.4", "172.16.5.x"),
            ("8.8.8.8", "8.8.x.x"),
            ("203.0.113.7", "203.0.x.x"),
            ("not-an-ip", "not-an-ip"),
            ("1.2.3", "1.2.3"),
        ],
    )
    def test_network_prefix(self, ip: str, expected: str) -> None:
        """Test private addresses keep three octets and public ones two."""
        assert get_network_prefix(ip) == expected

    @pytest.mark.parametrize(
        ("identity", "expected"),
        [
            ("192.168.1.x", "Home Network (192.168.1.x)"),
            ("10.0.0.x", "Office Network (10.0.0.x)"),
            ("172.16.5.x", "Corporate Network (172.16.5.x)"),
            (MOBILE_NETWORK, "Mobile Network"),
            (UNKNOWN_NETWORK, "Unknown Network"),
            ("8.8.x.x", "Public Network (8.8.x.x)"),
        ],
    )
    def test_group_name(self, identity: str, expected: str) -> None:
        """Test display names per identity class."""
        assert generate_group_name(identity) == expected

    def test_fallback_identities(self) -> None:
        """Test the sentinels are recognized."""
        assert is_fallback_identity(MOBILE_NETWORK)
        assert is_fallback_identity(UNKNOWN_NETWORK)
        assert not is_fallback_identity("10.0.0.x")


class TestCandidateParsing:
    """Tests for reading addresses out of ICE candidates."""

    def test_extract_ip(self) -> None:
        """Test the first IPv4 address in a candidate is returned."""
        cand = "candidate:842163049 1 udp 1677729535 192.168.1.42 56143 typ srflx"
        assert extract_ip_from_candidate(cand) == "192.168.1.42"

    def test_extract_ip_absent(self) -> None:
        """Test candidates without IPv4 yield None."""
        assert extract_ip_from_candidate("candidate:1 1 udp 1 abcd.local 5000 typ host") is None
        assert extract_ip_from_candidate("") is None

    def test_sdp_candidates(self) -> None:
        """Test loopback, link-local and IPv6 candidates are skipped."""
        assert candidate_ips_from_sdp(SAMPLE_SDP) == ["192.168.1.42", "203.0.113.7"]

    def test_sdp_without_candidates(self) -> None:
        """Test an SDP without candidate lines yields nothing."""
        assert candidate_ips_from_sdp("v=0\r\nm=application 9 DTLS/SCTP 5000") == []
        assert candidate_ips_from_sdp("") == []


class TestMobileDetection:
    """Tests for mobile classification."""

    @pytest.mark.parametrize(
        ("ua", "expected"),
        [
            (IPHONE_UA, True),
            ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", True),
            ("Opera/9.80 (J2ME/MIDP; Opera Mini/9.80)", True),
            (DESKTOP_UA, False),
            ("", False),
            (None, False),
        ],
    )
    def test_user_agent(self, ua, expected: bool) -> None:
        """Test the user agent pattern."""
        assert is_mobile_user_agent(ua) is expected

    def test_locator_uses_user_agent(self) -> None:
        """Test the locator classifies itself from a user agent."""
        assert NetworkLocator(user_agent=IPHONE_UA).is_mobile is True
        assert NetworkLocator(user_agent=DESKTOP_UA).is_mobile is False

    def test_explicit_override(self) -> None:
        """Test an explicit flag beats the user agent."""
        assert NetworkLocator(user_agent=DESKTOP_UA, is_mobile=True).is_mobile is True


class TestDetect:
    """Tests for the detection procedure."""

    async def test_probe_address_wins(self, monkeypatch) -> None:
        """Test an ICE-derived address is used when available."""
        locator = NetworkLocator(is_mobile=False)

        async def probe():
            return "192.168.1.42"

        monkeypatch.setattr(locator, "probe_local_ip", probe)
        assert await locator.detect() == "192.168.1.x"

    async def test_probe_public_address(self, monkeypatch) -> None:
        """Test a public probe address keeps two octets."""
        locator = NetworkLocator(is_mobile=False)

        async def probe():
            return "203.0.113.7"

        monkeypatch.setattr(locator, "probe_local_ip", probe)
        assert await locator.detect() == "203.0.x.x"

    async def test_probe_timeout_falls_back(self, monkeypatch) -> None:
        """Test a hung probe is abandoned after the timeout."""
        locator = NetworkLocator(is_mobile=False, probe_timeout=0.05)

        async def hung_probe():
            await asyncio.sleep(3600)

        async def lookup(timeout=None):
            raise OSError("offline")

        monkeypatch.setattr(locator, "probe_local_ip", hung_probe)
        monkeypatch.setattr(locator, "lookup_external_ip", lookup)

        assert await asyncio.wait_for(locator.detect(), timeout=2) == UNKNOWN_NETWORK
        assert len(locator._stray) == 1
        for task in list(locator._stray):
            task.cancel()

    async def test_probe_error_falls_back(self, monkeypatch) -> None:
        """Test a failing probe behaves like an empty one."""
        locator = NetworkLocator(is_mobile=False)

        async def broken_probe():
            raise RuntimeError("no ice")

        async def lookup(timeout=None):
            return "8.8.4.4"

        monkeypatch.setattr(locator, "probe_local_ip", broken_probe)
        monkeypatch.setattr(locator, "lookup_external_ip", lookup)
        assert await locator.detect() == "8.8.x.x"

    async def test_mobile_failure_is_mobile_network(self, monkeypatch) -> None:
        """Test mobile devices fall back to the mobile sentinel."""
        locator = NetworkLocator(user_agent=IPHONE_UA, mobile_lookup_timeout=0.5)
        seen = []

        async def lookup(timeout=None):
            seen.append(timeout)
            raise asyncio.TimeoutError()

        monkeypatch.setattr(locator, "probe_local_ip", no_candidates)
        monkeypatch.setattr(locator, "lookup_external_ip", lookup)
        assert await locator.detect() == MOBILE_NETWORK
        assert seen == [0.5]

    async def test_mobile_lookup_success(self, monkeypatch) -> None:
        """Test mobile devices use the public prefix when the lookup works."""
        locator = NetworkLocator(is_mobile=True)

        async def lookup(timeout=None):
            return "100.64.12.9"

        monkeypatch.setattr(locator, "probe_local_ip", no_candidates)
        monkeypatch.setattr(locator, "lookup_external_ip", lookup)
        assert await locator.detect() == "100.64.x.x"

    async def test_desktop_failure_is_unknown(self, monkeypatch) -> None:
        """Test non-mobile devices fall back to the unknown sentinel."""
        locator = NetworkLocator(is_mobile=False)

        async def lookup(timeout=None):
            raise OSError("dns")

        monkeypatch.setattr(locator, "probe_local_ip", no_candidates)
        monkeypatch.setattr(locator, "lookup_external_ip", lookup)
        assert await locator.detect() == UNKNOWN_NETWORK


class TestExternalLookup:
    """Tests for the IP echo lookup against a local HTTP server."""

    @pytest.fixture
    async def echo_server(self):
        state = {"payload": {"ip": "203.0.113.7"}, "status": 200}

        async def handler(request: web.Request) -> web.Response:
            return web.json_response(state["payload"], status=state["status"])

        app = web.Application()
        app.router.add_get("/", handler)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            yield server, state
        finally:
            await server.close()

    async def test_lookup(self, echo_server) -> None:
        """Test the echoed address is returned."""
        server, _ = echo_server
        locator = NetworkLocator(ip_echo_url=str(server.make_url("/")))
        assert await locator.lookup_external_ip() == "203.0.113.7"

    async def test_detect_via_lookup(self, echo_server, monkeypatch) -> None:
        """Test detection reduces the echoed address to a prefix."""
        server, _ = echo_server
        locator = NetworkLocator(ip_echo_url=str(server.make_url("/")), is_mobile=False)
        monkeypatch.setattr(locator, "probe_local_ip", no_candidates)
        assert await locator.detect() == "203.0.x.x"

    async def test_payload_without_ip(self, echo_server, monkeypatch) -> None:
        """Test a payload missing the address counts as a failure."""
        server, state = echo_server
        state["payload"] = {"address": "203.0.113.7"}
        locator = NetworkLocator(ip_echo_url=str(server.make_url("/")), is_mobile=False)

        with pytest.raises(ValueError):
            await locator.lookup_external_ip()

        monkeypatch.setattr(locator, "probe_local_ip", no_candidates)
        assert await locator.detect() == UNKNOWN_NETWORK

    async def test_http_error(self, echo_server, monkeypatch) -> None:
        """Test error statuses fall back to the sentinel."""
        server, state = echo_server
        state["status"] = 503
        locator = NetworkLocator(ip_echo_url=str(server.make_url("/")), is_mobile=False)
        monkeypatch.setattr(locator, "probe_local_ip", no_candidates)
        assert await locator.detect() == UNKNOWN_NETWORK
