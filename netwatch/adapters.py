"""
Protocol probe adapters.

`Prober.probe()` is the single entry point the engine uses. It picks the
adapter for the device kind, runs it under a deadline and folds every
failure into a `ProbeResult`, so callers never see an exception:

- ROUTER_API: RouterOS API session from the pool; identity, resources and
  interfaces fetched concurrently on that one session
- SNMP:       system group GET plus hrProcessorLoad / hrStorage / ifTable walks
- PING_ONLY:  one ICMP echo

`degraded` means the device answered but some of the data calls failed;
the state machine turns that into "warning".
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from netwatch.exceptions import ProbeError, ProbeTimeout, ProtocolError, is_connection_loss
from netwatch.latency import summarize
from netwatch.ping import ping, ping_series
from netwatch.pool import ConnectionPool
from netwatch.routeros import RouterOsSession, Row
from netwatch.scheduler import CancelToken, run_with_timeout
from netwatch.schemas import Credentials, DeviceData, LatencyPoint, Port
from netwatch.snmp_client import SnmpClient, as_int, as_mac, as_text

logger = logging.getLogger(__name__)


class DeviceKind(str, Enum):
    ROUTER_API = "router_api"
    SNMP = "snmp"
    PING_ONLY = "ping_only"


# Dashboard device-type string -> adapter. Anything unknown is tried over SNMP.
DEVICE_KINDS: Dict[str, DeviceKind] = {
    "mikrotik_router": DeviceKind.ROUTER_API,
    "mikrotik_switch": DeviceKind.ROUTER_API,
    "mikrotik_wireless": DeviceKind.ROUTER_API,
    "mikrotik_chr": DeviceKind.ROUTER_API,
    "generic_snmp": DeviceKind.SNMP,
    "generic_switch": DeviceKind.SNMP,
    "generic_router": DeviceKind.SNMP,
    "server": DeviceKind.SNMP,
    "ping": DeviceKind.PING_ONLY,
    "ping_only": DeviceKind.PING_ONLY,
    "generic_ping": DeviceKind.PING_ONLY,
}


def kind_for_type(device_type: Optional[str]) -> DeviceKind:
    key = (device_type or "").strip().lower()
    if key in DEVICE_KINDS:
        return DEVICE_KINDS[key]
    if key.startswith("mikrotik_"):
        return DeviceKind.ROUTER_API
    return DeviceKind.SNMP


@dataclass
class ProbeResult:
    success: bool
    data: Optional[DeviceData] = None
    ping_only: bool = False
    degraded: bool = False
    timed_out: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# SNMP OIDs and parsers
# ---------------------------------------------------------------------------

SYS_DESCR = "1.3.6.1.2.1.1.1.0"
SYS_UPTIME = "1.3.6.1.2.1.1.3.0"
SYS_NAME = "1.3.6.1.2.1.1.5.0"

HR_PROCESSOR_LOAD = "1.3.6.1.2.1.25.3.3.1.2"

HR_STORAGE_TYPE = "1.3.6.1.2.1.25.2.3.1.2"
HR_STORAGE_SIZE = "1.3.6.1.2.1.25.2.3.1.5"
HR_STORAGE_USED = "1.3.6.1.2.1.25.2.3.1.6"
HR_STORAGE_RAM = "1.3.6.1.2.1.25.2.1.2"
HR_STORAGE_FIXED_DISK = "1.3.6.1.2.1.25.2.1.4"

IF_DESCR = "1.3.6.1.2.1.2.2.1.2"
IF_SPEED = "1.3.6.1.2.1.2.2.1.5"
IF_PHYS_ADDRESS = "1.3.6.1.2.1.2.2.1.6"
IF_OPER_STATUS = "1.3.6.1.2.1.2.2.1.8"
# ifXTable speed in Mbit/s; ifSpeed saturates at 4294967295 bit/s
IF_HIGH_SPEED = "1.3.6.1.2.1.31.1.1.1.15"


def format_uptime(seconds: float) -> str:
    """94_000 -> '1 days, 2:06:40'; under a day just 'H:MM:SS'."""
    total = int(seconds)
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    if days > 0:
        return f"{days} days, {hours}:{minutes:02d}:{secs:02d}"
    return f"{hours}:{minutes:02d}:{secs:02d}"


def format_speed(bps: Optional[int]) -> Optional[str]:
    """ifSpeed in bit/s -> '1Gbps', '100Mbps'; 0 or unknown -> None."""
    if not bps:
        return None
    for factor, unit in ((1_000_000_000, "Gbps"), (1_000_000, "Mbps"), (1_000, "Kbps")):
        if bps >= factor:
            value = bps / factor
            return f"{value:g}{unit}"
    return f"{bps}bps"


def parse_cpu_load(loads: Dict[str, Any]) -> Optional[float]:
    """Average hrProcessorLoad across CPUs."""
    values = [v for v in (as_int(x) for x in loads.values()) if v is not None]
    if not values:
        return None
    return round(sum(values) / len(values), 1)


def parse_storage(
    types: Dict[str, Any],
    sizes: Dict[str, Any],
    used: Dict[str, Any],
) -> Dict[str, Optional[float]]:
    """
    Memory and disk usage from hrStorageTable.

    Rows are classified by hrStorageType; all RAM rows are summed, as are
    all fixed-disk rows. Units cancel out because size and used share them.
    """
    totals = {HR_STORAGE_RAM: [0, 0], HR_STORAGE_FIXED_DISK: [0, 0]}
    for index, storage_type in types.items():
        kind = str(storage_type)
        if kind not in totals:
            continue
        size = as_int(sizes.get(index))
        in_use = as_int(used.get(index))
        if not size or in_use is None:
            continue
        totals[kind][0] += size
        totals[kind][1] += in_use

    def pct(pair):
        size, in_use = pair
        return round(in_use / size * 100, 1) if size else None

    return {
        "memory_usage_pct": pct(totals[HR_STORAGE_RAM]),
        "disk_usage_pct": pct(totals[HR_STORAGE_FIXED_DISK]),
    }


def parse_if_table(
    descrs: Dict[str, Any],
    speeds: Dict[str, Any],
    macs: Dict[str, Any],
    oper: Dict[str, Any],
    high_speeds: Optional[Dict[str, Any]] = None,
) -> List[Port]:
    high_speeds = high_speeds or {}
    ports = []
    for suffix in sorted(descrs, key=lambda s: int(s) if s.isdigit() else 0):
        name = as_text(descrs[suffix])
        if not name:
            continue
        oper_status = as_int(oper.get(suffix))
        status = "up" if oper_status == 1 else "down" if oper_status == 2 else "unknown"
        mbps = as_int(high_speeds.get(suffix))
        bps = mbps * 1_000_000 if mbps else as_int(speeds.get(suffix))
        ports.append(Port(
            name=name,
            status=status,
            speed=format_speed(bps),
            mac_address=as_mac(macs.get(suffix)),
            snmp_index=int(suffix) if suffix.isdigit() else None,
        ))
    return ports


def match_if_index(descrs: Dict[str, Any], name: str) -> Optional[int]:
    wanted = name.strip().lower()
    for suffix, value in descrs.items():
        text = as_text(value)
        if text is not None and text.lower() == wanted and suffix.isdigit():
            return int(suffix)
    return None


# ---------------------------------------------------------------------------
# RouterOS parsers
# ---------------------------------------------------------------------------


def _usage_pct(total: Optional[str], free: Optional[str]) -> Optional[float]:
    try:
        total_v = int(total)
        free_v = int(free)
    except (TypeError, ValueError):
        return None
    if total_v <= 0:
        return None
    return round((total_v - free_v) / total_v * 100, 1)


def parse_resource(row: Row) -> Dict[str, Any]:
    cpu = row.get("cpu-load")
    return {
        "cpu_usage_pct": float(cpu) if cpu not in (None, "") else None,
        "memory_usage_pct": _usage_pct(row.get("total-memory"), row.get("free-memory")),
        "disk_usage_pct": _usage_pct(row.get("total-hdd-space"), row.get("free-hdd-space")),
        "model": row.get("board-name"),
        "version": f"RouterOS {row['version']}" if row.get("version") else None,
        "uptime": row.get("uptime"),
    }


def parse_interfaces(rows: Sequence[Row]) -> List[Port]:
    ports = []
    for row in rows:
        name = row.get("name")
        if not name:
            continue
        ports.append(Port(
            name=name,
            default_name=row.get("default-name") or None,
            status="up" if row.get("running") == "true" else "down",
            description=row.get("comment") or None,
            mac_address=(row.get("mac-address") or "").lower() or None,
        ))
    return ports


def carry_over(ports: List[Port], previous: Optional[Sequence[Port]], keep_speed: bool) -> None:
    """
    Copy cached fields from the previous snapshot onto fresh ports.

    The match prefers `default_name` so a renamed interface keeps its cache.
    `snmp_index` always carries over; `speed` only on quick probes.
    """
    if not previous:
        return
    for port in ports:
        old = None
        if port.default_name:
            old = next((p for p in previous if p.default_name == port.default_name), None)
        if old is None:
            old = next((p for p in previous if p.name == port.name), None)
        if old is None:
            continue
        if port.snmp_index is None:
            port.snmp_index = old.snmp_index
        if keep_speed and port.speed is None:
            port.speed = old.speed


def _is_ethernet(row: Row) -> bool:
    return row.get("type") == "ether"


# ---------------------------------------------------------------------------
# Prober
# ---------------------------------------------------------------------------


class Prober:
    """Runs protocol probes against one device at a time."""

    def __init__(self, pool: ConnectionPool, snmp: SnmpClient, ping_timeout: float = 2.0):
        self.pool = pool
        self.snmp = snmp
        self.ping_timeout = ping_timeout

    async def probe(
        self,
        kind: DeviceKind,
        address: str,
        credentials: Credentials,
        detailed: bool = False,
        previous_ports: Optional[Sequence[Port]] = None,
        needs_index_resolution: bool = False,
        timeout: float = 6.0,
    ) -> ProbeResult:
        """Probe one device. Never raises (except for task cancellation)."""

        async def work(token: CancelToken) -> ProbeResult:
            if kind is DeviceKind.ROUTER_API:
                return await self._probe_router(
                    address, credentials, detailed, previous_ports, needs_index_resolution, timeout, token
                )
            if kind is DeviceKind.PING_ONLY:
                return await self._probe_ping(address, token)
            return await self._probe_snmp(address, credentials, previous_ports, timeout, token)

        try:
            return await run_with_timeout(work, timeout, label=f"probe {address}")
        except ProbeTimeout as exc:
            return ProbeResult(success=False, timed_out=True, error=str(exc))
        except ProbeError as exc:
            return ProbeResult(success=False, error=f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error probing %s", address)
            return ProbeResult(success=False, error=f"{type(exc).__name__}: {exc}")

    async def verify_by_ping(self, address: str) -> ProbeResult:
        """Ping fallback: success here means "only ping answered"."""
        try:
            result = await ping(address, timeout=self.ping_timeout)
        except ProbeError as exc:
            return ProbeResult(success=False, error=str(exc))
        if result.alive:
            return ProbeResult(success=True, ping_only=True,
                               data=DeviceData(ping_rtt_ms=result.rtt_ms))
        return ProbeResult(success=False, error="No ping reply")

    # -- ping -----------------------------------------------------------------

    async def sample_latency(self, address: str, count: int, timeout: float, now: datetime) -> LatencyPoint:
        """
        One latency burst. A malformed address raises ValidationError;
        unanswered echoes are loss, not errors.
        """
        series = await ping_series(address, count=count, timeout=timeout)
        return summarize(series, now)

    async def _probe_ping(self, address: str, token: CancelToken) -> ProbeResult:
        result = await ping(address, timeout=self.ping_timeout, token=token)
        if not result.alive:
            return ProbeResult(success=False, error="No ping reply")
        return ProbeResult(success=True, data=DeviceData(ping_rtt_ms=result.rtt_ms))

    # -- RouterOS -------------------------------------------------------------

    async def router_identity(self, address: str, credentials: Credentials,
                              timeout: float, token: Optional[CancelToken] = None) -> Optional[str]:
        """Log in and read the identity over a throwaway (never pooled) session."""
        api = RouterOsSession(address, port=credentials.api_port,
                              username=credentials.username, password=credentials.password)
        await api.connect(timeout=timeout, token=token)
        try:
            rows = await api.command("/system/identity/print", timeout=timeout, token=token)
        finally:
            await api.close()
        return rows[0].get("name") if rows else None

    async def _probe_router(
        self,
        address: str,
        credentials: Credentials,
        detailed: bool,
        previous_ports: Optional[Sequence[Port]],
        needs_index_resolution: bool,
        timeout: float,
        token: CancelToken,
    ) -> ProbeResult:
        async with self.pool.session(address, credentials, timeout=timeout, token=token) as api:
            identity, resource, interfaces = await asyncio.gather(
                api.command("/system/identity/print", timeout=timeout, token=token),
                api.command("/system/resource/print", timeout=timeout, token=token),
                api.command("/interface/print", timeout=timeout, token=token),
                return_exceptions=True,
            )
            replies = (identity, resource, interfaces)
            for reply in replies:
                if isinstance(reply, BaseException) and is_connection_loss(reply):
                    raise reply
            failures = [r for r in replies if isinstance(r, BaseException)]
            if len(failures) == len(replies):
                raise failures[0]

            data = DeviceData()
            if not isinstance(identity, BaseException) and identity:
                data.system_identity = identity[0].get("name")
            if not isinstance(resource, BaseException) and resource:
                for field, value in parse_resource(resource[0]).items():
                    setattr(data, field, value)

            rows: List[Row] = [] if isinstance(interfaces, BaseException) else interfaces
            data.ports = parse_interfaces(rows)
            if detailed:
                await self._measure_speeds(api, rows, data.ports, timeout, token)

        carry_over(data.ports, previous_ports, keep_speed=not detailed)
        degraded = bool(failures)
        if needs_index_resolution and data.ports:
            await self._attach_if_indexes(address, credentials, data.ports, timeout, token)

        if degraded:
            logger.info("Partial data from %s: %s", address, "; ".join(str(f) for f in failures))
        return ProbeResult(success=True, data=data, degraded=degraded)

    async def _measure_speeds(self, api: RouterOsSession, rows: Sequence[Row], ports: List[Port],
                              timeout: float, token: CancelToken) -> None:
        """Detailed probes only: ask each running ethernet port for its negotiated rate."""
        targets = [
            port for row, port in zip([r for r in rows if r.get("name")], ports)
            if _is_ethernet(row) and port.status == "up"
        ]
        if not targets:
            return
        replies = await asyncio.gather(
            *[
                api.command("/interface/ethernet/monitor",
                            {"numbers": port.name, "once": ""}, timeout=timeout, token=token)
                for port in targets
            ],
            return_exceptions=True,
        )
        for port, reply in zip(targets, replies):
            if isinstance(reply, BaseException):
                if is_connection_loss(reply):
                    raise reply
                logger.debug("No rate for %s: %s", port.name, reply)
                continue
            if reply and reply[0].get("rate"):
                port.speed = reply[0]["rate"]

    async def _attach_if_indexes(self, address: str, credentials: Credentials, ports: List[Port],
                                 timeout: float, token: CancelToken) -> None:
        try:
            descrs = await self.snmp.walk_column(address, credentials, IF_DESCR, timeout=timeout, token=token)
        except ProbeError as exc:
            logger.info("ifIndex resolution on %s failed: %s", address, exc)
            return
        for port in ports:
            index = match_if_index(descrs, port.name)
            if index is None and port.default_name:
                index = match_if_index(descrs, port.default_name)
            if index is not None:
                port.snmp_index = index

    # -- SNMP -----------------------------------------------------------------

    async def snmp_system(self, address: str, credentials: Credentials,
                          timeout: float, token: Optional[CancelToken] = None) -> Dict[str, Optional[str]]:
        values = await self.snmp.get(address, credentials, [SYS_DESCR, SYS_UPTIME, SYS_NAME],
                                     timeout=timeout, token=token)
        if all(v is None for v in values.values()):
            raise ProtocolError(f"{address} returned no system group values")
        ticks = as_int(values[SYS_UPTIME])
        return {
            "descr": as_text(values[SYS_DESCR]),
            "name": as_text(values[SYS_NAME]),
            "uptime": format_uptime(ticks / 100) if ticks is not None else None,
        }

    async def _probe_snmp(self, address: str, credentials: Credentials,
                          previous_ports: Optional[Sequence[Port]], timeout: float,
                          token: CancelToken) -> ProbeResult:
        system = await self.snmp_system(address, credentials, timeout, token)

        columns = (HR_PROCESSOR_LOAD, HR_STORAGE_TYPE, HR_STORAGE_SIZE, HR_STORAGE_USED,
                   IF_DESCR, IF_SPEED, IF_PHYS_ADDRESS, IF_OPER_STATUS, IF_HIGH_SPEED)
        walked = await asyncio.gather(
            *[self.snmp.walk_column(address, credentials, oid, timeout=timeout, token=token)
              for oid in columns],
            return_exceptions=True,
        )
        failures = [w for w in walked if isinstance(w, BaseException)]
        tables = {oid: ({} if isinstance(w, BaseException) else w) for oid, w in zip(columns, walked)}

        data = DeviceData(
            uptime=system["uptime"],
            model=system["name"],
            version=(system["descr"] or "")[:100] or None,
            system_identity=system["name"],
            cpu_usage_pct=parse_cpu_load(tables[HR_PROCESSOR_LOAD]),
            ports=parse_if_table(tables[IF_DESCR], tables[IF_SPEED],
                                 tables[IF_PHYS_ADDRESS], tables[IF_OPER_STATUS],
                                 tables[IF_HIGH_SPEED]),
        )
        storage = parse_storage(tables[HR_STORAGE_TYPE], tables[HR_STORAGE_SIZE], tables[HR_STORAGE_USED])
        data.memory_usage_pct = storage["memory_usage_pct"]
        data.disk_usage_pct = storage["disk_usage_pct"]
        carry_over(data.ports, previous_ports, keep_speed=True)

        if failures:
            logger.info("Partial SNMP data from %s: %s", address, "; ".join(str(f) for f in failures))
        return ProbeResult(success=True, data=data, degraded=bool(failures))
