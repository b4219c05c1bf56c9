"""Tests for the protocol adapters and their parsers."""

import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest
from pysnmp.proto.rfc1902 import OctetString

from netwatch.adapters import (
    HR_PROCESSOR_LOAD,
    HR_STORAGE_FIXED_DISK,
    HR_STORAGE_RAM,
    HR_STORAGE_SIZE,
    HR_STORAGE_TYPE,
    HR_STORAGE_USED,
    IF_DESCR,
    IF_HIGH_SPEED,
    IF_OPER_STATUS,
    IF_PHYS_ADDRESS,
    IF_SPEED,
    SYS_DESCR,
    SYS_NAME,
    SYS_UPTIME,
    DeviceKind,
    Prober,
    carry_over,
    format_speed,
    format_uptime,
    kind_for_type,
    parse_cpu_load,
    parse_if_table,
    parse_interfaces,
    parse_resource,
    parse_storage,
)
from netwatch.exceptions import ConnectError
from netwatch.ping import PingResult
from netwatch.pool import ConnectionPool
from netwatch.routeros import CommandError
from netwatch.schemas import Credentials, Port

CREDS = Credentials(username="admin", password="secret")

RESOURCE = {
    "cpu-load": "12",
    "total-memory": "1000",
    "free-memory": "250",
    "total-hdd-space": "100",
    "free-hdd-space": "50",
    "board-name": "RB4011",
    "version": "7.14",
    "uptime": "3d4h",
}

INTERFACES = [
    {"name": "ether1", "default-name": "ether1", "type": "ether", "running": "true",
     "mac-address": "AA:BB:CC:00:11:22"},
    {"name": "wan", "default-name": "ether2", "type": "ether", "running": "false"},
    {"name": "bridge", "type": "bridge", "running": "true", "comment": "LAN"},
]


# =============================================================================
# Device kinds
# =============================================================================


class TestKindForType:
    """Tests for the device-type dispatch table."""

    @pytest.mark.parametrize("device_type, kind", [
        ("mikrotik_router", DeviceKind.ROUTER_API),
        ("MikroTik_Switch", DeviceKind.ROUTER_API),
        ("mikrotik_ltap", DeviceKind.ROUTER_API),
        ("generic_snmp", DeviceKind.SNMP),
        ("ping", DeviceKind.PING_ONLY),
        ("printer", DeviceKind.SNMP),
        (None, DeviceKind.SNMP),
    ])
    def test_dispatch(self, device_type, kind):
        assert kind_for_type(device_type) is kind


# =============================================================================
# SNMP parsers
# =============================================================================


class TestSnmpParsers:
    """Tests for the SNMP table parsers."""

    def test_format_uptime(self):
        assert format_uptime(94_000) == "1 days, 2:06:40"
        assert format_uptime(3_725) == "1:02:05"

    @pytest.mark.parametrize("bps, expected", [
        (1_000_000_000, "1Gbps"),
        (2_500_000_000, "2.5Gbps"),
        (100_000_000, "100Mbps"),
        (500, "500bps"),
        (0, None),
        (None, None),
    ])
    def test_format_speed(self, bps, expected):
        assert format_speed(bps) == expected

    def test_cpu_load_is_averaged(self):
        assert parse_cpu_load({"1": 10, "2": 31}) == 20.5
        assert parse_cpu_load({}) is None

    def test_storage_sums_by_type(self):
        types = {"1": HR_STORAGE_RAM, "2": HR_STORAGE_RAM, "3": HR_STORAGE_FIXED_DISK, "4": "1.3.6.1.2.1.25.2.1.3"}
        sizes = {"1": 1000, "2": 1000, "3": 400, "4": 999}
        used = {"1": 500, "2": 1000, "3": 100, "4": 999}

        assert parse_storage(types, sizes, used) == {"memory_usage_pct": 75.0, "disk_usage_pct": 25.0}

    def test_storage_without_rows(self):
        assert parse_storage({}, {}, {}) == {"memory_usage_pct": None, "disk_usage_pct": None}

    def test_if_table(self):
        ports = parse_if_table(
            {"10": "lo", "1": "ether1", "2": "ether2"},
            {"1": 1_000_000_000, "2": 0},
            {"1": OctetString(hexValue="aabbcc001122")},
            {"1": 1, "2": 2},
        )

        assert [p.name for p in ports] == ["ether1", "ether2", "lo"]
        assert ports[0].status == "up"
        assert ports[0].speed == "1Gbps"
        assert ports[0].mac_address == "aa:bb:cc:00:11:22"
        assert ports[0].snmp_index == 1
        assert ports[1].status == "down"
        assert ports[1].speed is None
        assert ports[2].status == "unknown"

    def test_if_table_prefers_high_speed(self):
        """ifSpeed saturates at 2^32-1 bit/s; ifHighSpeed (Mbit/s) wins when set."""
        ports = parse_if_table(
            {"1": "sfp1", "2": "ether1"},
            {"1": 4_294_967_295, "2": 100_000_000},
            {},
            {"1": 1, "2": 1},
            {"1": 10_000, "2": 0},
        )

        assert ports[0].speed == "10Gbps"
        assert ports[1].speed == "100Mbps"


# =============================================================================
# RouterOS parsers
# =============================================================================


class TestRouterParsers:
    """Tests for the RouterOS reply parsers."""

    def test_parse_resource(self):
        parsed = parse_resource(RESOURCE)

        assert parsed["cpu_usage_pct"] == 12.0
        assert parsed["memory_usage_pct"] == 75.0
        assert parsed["disk_usage_pct"] == 50.0
        assert parsed["model"] == "RB4011"
        assert parsed["version"] == "RouterOS 7.14"

    def test_parse_resource_with_missing_fields(self):
        parsed = parse_resource({"total-memory": "0"})

        assert parsed["cpu_usage_pct"] is None
        assert parsed["memory_usage_pct"] is None
        assert parsed["version"] is None

    def test_parse_interfaces(self):
        ports = parse_interfaces(INTERFACES + [{"type": "ether"}])

        assert [p.name for p in ports] == ["ether1", "wan", "bridge"]
        assert ports[0].mac_address == "aa:bb:cc:00:11:22"
        assert ports[1].default_name == "ether2"
        assert ports[1].status == "down"
        assert ports[2].description == "LAN"

    def test_carry_over_prefers_default_name(self):
        """A renamed interface keeps its cached index through default_name."""
        previous = [Port(name="ether2", default_name="ether2", snmp_index=2, speed="1Gbps")]
        ports = [Port(name="wan", default_name="ether2")]

        carry_over(ports, previous, keep_speed=True)

        assert ports[0].snmp_index == 2
        assert ports[0].speed == "1Gbps"

    def test_carry_over_detailed_drops_speed(self):
        previous = [Port(name="ether1", snmp_index=1, speed="1Gbps")]
        ports = [Port(name="ether1")]

        carry_over(ports, previous, keep_speed=False)

        assert ports[0].snmp_index == 1
        assert ports[0].speed is None


# =============================================================================
# Router probe
# =============================================================================


class FakeApi:
    """Session stand-in answering from a path -> rows (or exception) map."""

    def __init__(self, replies):
        self.replies = replies
        self.connected = False
        self.commands = []

    @property
    def is_connected(self):
        return self.connected

    async def connect(self, timeout=6.0, token=None):
        self.connected = True

    async def command(self, path, attributes=None, timeout=6.0, token=None):
        self.commands.append((path, attributes))
        reply = self.replies.get(path, [])
        if reply == "hang":
            await asyncio.sleep(10)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def abort(self, reason="closed"):
        self.connected = False


def router_prober(replies, snmp=None):
    api = FakeApi(replies)
    pool = ConnectionPool(enabled=False, session_factory=lambda *args: api)
    return Prober(pool, snmp or Mock()), api


def router_replies(**overrides):
    replies = {
        "/system/identity/print": [{"name": "core"}],
        "/system/resource/print": [RESOURCE],
        "/interface/print": INTERFACES,
        "/interface/ethernet/monitor": [{"rate": "1Gbps"}],
    }
    replies.update(overrides)
    return replies


class TestRouterProbe:
    """Tests for Prober against a fake RouterOS session."""

    @pytest.mark.asyncio
    async def test_quick_probe(self):
        prober, api = router_prober(router_replies())
        previous = [Port(name="ether1", default_name="ether1", speed="100Mbps", snmp_index=5)]

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS, previous_ports=previous)

        assert result.success and not result.degraded
        assert result.data.system_identity == "core"
        assert result.data.memory_usage_pct == 75.0
        assert result.data.ports[0].speed == "100Mbps"
        assert result.data.ports[0].snmp_index == 5
        assert all(path != "/interface/ethernet/monitor" for path, _ in api.commands)

    @pytest.mark.asyncio
    async def test_detailed_probe_monitors_running_ethernet_only(self):
        prober, api = router_prober(router_replies())

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS, detailed=True)

        monitored = [attrs["numbers"] for path, attrs in api.commands if path == "/interface/ethernet/monitor"]
        assert monitored == ["ether1"]
        assert result.data.ports[0].speed == "1Gbps"
        assert result.data.ports[1].speed is None

    @pytest.mark.asyncio
    async def test_partial_failure_is_degraded(self):
        prober, _ = router_prober(router_replies(**{"/system/resource/print": CommandError("no such command")}))

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS)

        assert result.success
        assert result.degraded
        assert result.data.system_identity == "core"
        assert result.data.cpu_usage_pct is None

    @pytest.mark.asyncio
    async def test_all_calls_failing_is_failure(self):
        error = CommandError("not permitted")
        prober, _ = router_prober(router_replies(**{
            "/system/identity/print": error,
            "/system/resource/print": error,
            "/interface/print": error,
        }))

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS)

        assert not result.success
        assert not result.timed_out
        assert "CommandError" in result.error

    @pytest.mark.asyncio
    async def test_connection_loss_is_failure(self):
        prober, _ = router_prober(router_replies(**{"/interface/print": ConnectError("reset")}))

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS)

        assert not result.success
        assert "ConnectError" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_flagged(self):
        prober, _ = router_prober(router_replies(**{"/system/resource/print": "hang"}))

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS, timeout=0.05)

        assert not result.success
        assert result.timed_out

    @pytest.mark.asyncio
    async def test_if_index_resolution(self):
        snmp = Mock()
        snmp.walk_column = AsyncMock(return_value={"1": OctetString("ether1"), "2": OctetString("ether2")})
        prober, _ = router_prober(router_replies(), snmp=snmp)

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS, needs_index_resolution=True)

        indexes = {p.name: p.snmp_index for p in result.data.ports}
        assert indexes == {"ether1": 1, "wan": 2, "bridge": None}

    @pytest.mark.asyncio
    async def test_failed_index_resolution_keeps_probe_successful(self):
        snmp = Mock()
        snmp.walk_column = AsyncMock(side_effect=ConnectError("no snmp"))
        prober, _ = router_prober(router_replies(), snmp=snmp)

        result = await prober.probe(DeviceKind.ROUTER_API, "10.0.0.1", CREDS, needs_index_resolution=True)

        assert result.success
        assert not result.degraded


# =============================================================================
# SNMP and ping probes
# =============================================================================


def snmp_tables(**overrides):
    tables = {
        HR_PROCESSOR_LOAD: {"1": 40},
        HR_STORAGE_TYPE: {"1": HR_STORAGE_RAM},
        HR_STORAGE_SIZE: {"1": 200},
        HR_STORAGE_USED: {"1": 50},
        IF_DESCR: {"1": OctetString("eth0")},
        IF_SPEED: {"1": 100_000_000},
        IF_PHYS_ADDRESS: {},
        IF_OPER_STATUS: {"1": 1},
        IF_HIGH_SPEED: {"1": 100},
    }
    tables.update(overrides)
    return tables


def snmp_mock(tables, system=None):
    snmp = Mock()
    snmp.get = AsyncMock(return_value=system or {
        SYS_DESCR: OctetString("Linux sw1 5.10"),
        SYS_UPTIME: 360_000,
        SYS_NAME: OctetString("sw1"),
    })

    async def walk_column(address, credentials, oid, timeout=None, token=None):
        value = tables[oid]
        if isinstance(value, BaseException):
            raise value
        return value

    snmp.walk_column = walk_column
    return snmp


class TestSnmpProbe:
    """Tests for the SNMP adapter."""

    @pytest.mark.asyncio
    async def test_full_probe(self):
        prober = Prober(ConnectionPool(), snmp_mock(snmp_tables()))

        result = await prober.probe(DeviceKind.SNMP, "10.0.0.2", CREDS)

        assert result.success and not result.degraded
        assert result.data.system_identity == "sw1"
        assert result.data.uptime == "1:00:00"
        assert result.data.cpu_usage_pct == 40.0
        assert result.data.memory_usage_pct == 25.0
        assert result.data.ports[0].name == "eth0"
        assert result.data.ports[0].snmp_index == 1

    @pytest.mark.asyncio
    async def test_failed_walk_is_degraded(self):
        tables = snmp_tables(**{HR_PROCESSOR_LOAD: ConnectError("timeout on walk")})
        prober = Prober(ConnectionPool(), snmp_mock(tables))

        result = await prober.probe(DeviceKind.SNMP, "10.0.0.2", CREDS)

        assert result.success
        assert result.degraded
        assert result.data.cpu_usage_pct is None

    @pytest.mark.asyncio
    async def test_empty_system_group_is_failure(self):
        system = {SYS_DESCR: None, SYS_UPTIME: None, SYS_NAME: None}
        prober = Prober(ConnectionPool(), snmp_mock(snmp_tables(), system=system))

        result = await prober.probe(DeviceKind.SNMP, "10.0.0.2", CREDS)

        assert not result.success
        assert "ProtocolError" in result.error


class TestPingProbe:
    """Tests for the ping adapter and the ping fallback."""

    @pytest.mark.asyncio
    async def test_ping_only_device(self):
        prober = Prober(ConnectionPool(), Mock())
        with patch("netwatch.adapters.ping", AsyncMock(return_value=PingResult(True, 1.5))):
            result = await prober.probe(DeviceKind.PING_ONLY, "10.0.0.3", CREDS)

        assert result.success
        assert not result.ping_only
        assert result.data.ping_rtt_ms == 1.5

    @pytest.mark.asyncio
    async def test_verify_by_ping_marks_ping_only(self):
        prober = Prober(ConnectionPool(), Mock())
        with patch("netwatch.adapters.ping", AsyncMock(return_value=PingResult(True, 0.4))):
            result = await prober.verify_by_ping("10.0.0.3")

        assert result.success
        assert result.ping_only

    @pytest.mark.asyncio
    async def test_verify_by_ping_without_reply(self):
        prober = Prober(ConnectionPool(), Mock())
        with patch("netwatch.adapters.ping", AsyncMock(return_value=PingResult(False))):
            result = await prober.verify_by_ping("10.0.0.3")

        assert not result.success
        assert not result.ping_only
