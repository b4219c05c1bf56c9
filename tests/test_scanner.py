"""Tests for the range scanner."""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from netwatch.config import Settings
from netwatch.exceptions import AuthError, ConnectError, NotFound, ValidationError
from netwatch.ping import PingResult
from netwatch.scanner import Scanner, expand_cidr


@pytest.fixture
def config() -> Settings:
    return Settings(scan_ports=[8728, 8729], scan_timeout_seconds=1, scan_max_hosts=16, scan_concurrency=4)


@pytest.fixture
def scan_prober():
    prober = Mock()
    prober.router_identity = AsyncMock(side_effect=ConnectError("refused"))
    prober.snmp_system = AsyncMock(side_effect=ConnectError("no answer"))
    return prober


def ping_map(alive):
    async def fake_ping(address, timeout=2.0, token=None):
        return PingResult(alive=address in alive, rtt_ms=1.0 if address in alive else None)

    return fake_ping


# =============================================================================
# expand_cidr
# =============================================================================


class TestExpandCidr:
    """Tests for expand_cidr."""

    def test_usable_hosts(self):
        assert expand_cidr("10.0.0.0/30", 16) == ["10.0.0.1", "10.0.0.2"]

    def test_single_host(self):
        assert expand_cidr("10.0.0.7/32", 16) == ["10.0.0.7"]

    def test_host_bits_are_tolerated(self):
        assert expand_cidr("10.0.0.5/30", 16) == ["10.0.0.5", "10.0.0.6"]

    def test_too_large(self):
        with pytest.raises(ValidationError):
            expand_cidr("10.0.0.0/16", 1024)

    @pytest.mark.parametrize("cidr", ["10.0.0.0/33", "not-a-network", ""])
    def test_invalid(self, cidr):
        with pytest.raises(ValidationError):
            expand_cidr(cidr, 1024)


# =============================================================================
# Scanner
# =============================================================================


class TestScanner:
    """Scanner against a mocked prober and ping."""

    @pytest.mark.asyncio
    async def test_ping_only_hits(self, storage, scan_prober, config):
        scanner = Scanner(scan_prober, storage, config)

        with patch("netwatch.scanner.ping", ping_map({"10.0.0.2"})):
            hits = await scanner.scan("10.0.0.0/29", probe_types=["ping"])

        assert [(h.address, h.probe_type, h.rtt_ms) for h in hits] == [("10.0.0.2", "ping", 1.0)]
        scan_prober.router_identity.assert_not_called()

    @pytest.mark.asyncio
    async def test_router_identified_on_second_port(self, storage, scan_prober, config):
        profile = await storage.create_credential_profile("rtr", "mikrotik", {"username": "monitor"})
        scan_prober.router_identity = AsyncMock(
            side_effect=lambda address, creds, timeout, token: (
                "core-rtr" if address == "10.0.0.1" and creds.api_port == 8729 else _raise(ConnectError("refused"))
            )
        )
        scanner = Scanner(scan_prober, storage, config)

        with patch("netwatch.scanner.ping", ping_map({"10.0.0.1"})):
            hits = await scanner.scan("10.0.0.0/30", [profile.id])

        assert len(hits) == 1
        hit = hits[0]
        assert hit.probe_type == "mikrotik"
        assert hit.device_type == "mikrotik_router"
        assert hit.identity == "core-rtr"
        assert hit.credential_profile_id == profile.id
        ports = {c.args[1].api_port for c in scan_prober.router_identity.call_args_list if c.args[0] == "10.0.0.1"}
        assert ports == {8728, 8729}

    @pytest.mark.asyncio
    async def test_snmp_profile_identifies_silent_host(self, storage, scan_prober, config):
        """A host that drops ping can still be found over SNMP."""
        profile = await storage.create_credential_profile("snmp-ro", "snmp", {"snmp_community": "ro"})
        scan_prober.snmp_system = AsyncMock(return_value={"descr": "Linux", "name": "sw1", "uptime": "1:00:00"})
        scanner = Scanner(scan_prober, storage, config)

        with patch("netwatch.scanner.ping", ping_map(set())):
            hits = await scanner.scan("10.0.0.9/32", [profile.id])

        assert len(hits) == 1
        assert hits[0].alive
        assert hits[0].probe_type == "snmp"
        assert hits[0].device_type == "generic_snmp"
        assert hits[0].identity == "sw1"
        scan_prober.router_identity.assert_not_called()
        assert scan_prober.snmp_system.call_args.args[1].snmp_community == "ro"

    @pytest.mark.asyncio
    async def test_rejected_credentials_fall_back_to_ping(self, storage, scan_prober, config):
        profile = await storage.create_credential_profile("rtr", "mikrotik", {"username": "monitor"})
        scan_prober.router_identity = AsyncMock(side_effect=AuthError("invalid user name or password"))
        scanner = Scanner(scan_prober, storage, config)

        with patch("netwatch.scanner.ping", ping_map({"10.0.0.1"})):
            hits = await scanner.scan("10.0.0.1/32", [profile.id])

        assert hits[0].probe_type == "ping"
        assert hits[0].credential_profile_id is None

    @pytest.mark.asyncio
    async def test_results_sorted_by_address(self, storage, scan_prober, config):
        scanner = Scanner(scan_prober, storage, config)
        alive = {"10.0.0.10", "10.0.0.2", "10.0.0.9"}

        with patch("netwatch.scanner.ping", ping_map(alive)):
            hits = await scanner.scan("10.0.0.0/28", probe_types=["ping"])

        assert [h.address for h in hits] == ["10.0.0.2", "10.0.0.9", "10.0.0.10"]

    @pytest.mark.asyncio
    async def test_unknown_probe_type(self, storage, scan_prober, config):
        with pytest.raises(ValidationError):
            await Scanner(scan_prober, storage, config).scan("10.0.0.0/30", probe_types=["telnet"])

    @pytest.mark.asyncio
    async def test_unknown_profile(self, storage, scan_prober, config):
        with pytest.raises(NotFound):
            await Scanner(scan_prober, storage, config).scan("10.0.0.0/30", ["missing"])


def _raise(exc):
    raise exc
