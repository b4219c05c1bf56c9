"""
Traffic counter engine.

Reads interface octet counters over SNMP and turns consecutive samples into
rates and link utilization:

- counters come from the 64-bit ifXTable (ifHCInOctets/ifHCOutOctets) when
  the agent has them, else from the 32-bit ifTable
- the ifIndex is taken from the port record, then from the connection's
  cached `monitor_snmp_index`, and only then resolved by walking ifDescr
- a negative delta is a counter wrap and gets 2^32 added exactly once
- pairs with a non-positive or too large time gap, or with an impossible
  rate (above 100 Gbps), are discarded and the baseline moves forward
- accepted samples land in a small per-connection ring buffer
"""

import logging
import math
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, List, Optional, Tuple

from netwatch.exceptions import NotFound, ProtocolError
from netwatch.scheduler import CancelToken
from netwatch.schemas import Credentials, LinkStats, TrafficPoint
from netwatch.snmp_client import SnmpClient, as_int, as_text

logger = logging.getLogger(__name__)

# ifXTable (64-bit) and ifTable (32-bit) octet counters
IF_HC_IN_OCTETS = "1.3.6.1.2.1.31.1.1.1.6"
IF_HC_OUT_OCTETS = "1.3.6.1.2.1.31.1.1.1.10"
IF_IN_OCTETS = "1.3.6.1.2.1.2.2.1.10"
IF_OUT_OCTETS = "1.3.6.1.2.1.2.2.1.16"

IF_DESCR = "1.3.6.1.2.1.2.2.1.2"
IF_NAME = "1.3.6.1.2.1.31.1.1.1.1"

COUNTER32_WRAP = 2 ** 32
MAX_SAMPLE_GAP_SECONDS = 300
# 100 Gbps in bytes per second
MAX_BYTES_PER_SEC = 12.5e9
DEFAULT_LINK_BPS = 1_000_000_000

_SPEED_RE = re.compile(r"^\s*([\d.]+)\s*([KMG]?)", re.IGNORECASE)
_SPEED_UNITS = {"": 1, "K": 1_000, "M": 1_000_000, "G": 1_000_000_000}


@dataclass
class CounterSample:
    in_octets: int
    out_octets: int
    snmp_index: int
    is_64bit: bool
    index_resolved: bool = False


# ---------------------------------------------------------------------------
# Pure math
# ---------------------------------------------------------------------------


def counter_delta(current: int, previous: int) -> Optional[int]:
    """Octets between two readings; None when even one wrap cannot explain it."""
    delta = current - previous
    if delta < 0:
        delta += COUNTER32_WRAP
    if delta < 0:
        return None
    return delta


def parse_link_speed(link_speed: Optional[str]) -> int:
    """'10G' -> 10_000_000_000, '100M' -> 100_000_000; unknown -> 1 Gbps."""
    if not link_speed:
        return DEFAULT_LINK_BPS
    match = _SPEED_RE.match(link_speed)
    if not match:
        return DEFAULT_LINK_BPS
    try:
        value = float(match.group(1))
    except ValueError:
        return DEFAULT_LINK_BPS
    bps = int(value * _SPEED_UNITS[match.group(2).upper()])
    return bps if bps > 0 else DEFAULT_LINK_BPS


def utilization_pct(in_bytes_per_sec: float, out_bytes_per_sec: float, link_speed: Optional[str]) -> int:
    """Average of both directions against link capacity, capped at 100."""
    capacity_bytes = parse_link_speed(link_speed) / 8
    pct = (in_bytes_per_sec + out_bytes_per_sec) / (2 * capacity_bytes) * 100
    # Halves round up, not to even
    return min(100, int(math.floor(pct + 0.5)))


def mark_stale_if_needed(stats: LinkStats, now: datetime, stale_after_seconds: float) -> LinkStats:
    """Zero the rates once the last accepted sample is too old."""
    if stats.last_sample_at is not None and now - stats.last_sample_at <= timedelta(seconds=stale_after_seconds):
        return stats
    return stats.model_copy(update={
        "in_bytes_per_sec": 0.0,
        "out_bytes_per_sec": 0.0,
        "in_bits_per_sec": 0.0,
        "out_bits_per_sec": 0.0,
        "utilization_pct": 0,
        "is_stale": True,
    })


def apply_sample(
    stats: Optional[LinkStats],
    in_octets: int,
    out_octets: int,
    now: datetime,
    link_speed: Optional[str],
    flip_direction: bool = False,
    stale_after_seconds: float = 60,
) -> Tuple[LinkStats, Optional[TrafficPoint]]:
    """
    Fold one counter reading into `stats`.

    Returns the new stats and, when the pair was accepted, the history point.
    A rejected pair leaves the rates alone but rebases the baseline.
    """
    stats = stats or LinkStats()
    rebased = stats.model_copy(update={
        "previous_in_octets": in_octets,
        "previous_out_octets": out_octets,
        "previous_sample_at": now,
    })

    if stats.previous_sample_at is None or stats.previous_in_octets is None or stats.previous_out_octets is None:
        return mark_stale_if_needed(rebased, now, stale_after_seconds), None

    elapsed = (now - stats.previous_sample_at).total_seconds()
    if elapsed <= 0 or elapsed > MAX_SAMPLE_GAP_SECONDS:
        logger.debug("Discarding counter pair with %.1fs gap", elapsed)
        return mark_stale_if_needed(rebased, now, stale_after_seconds), None

    delta_in = counter_delta(in_octets, stats.previous_in_octets)
    delta_out = counter_delta(out_octets, stats.previous_out_octets)
    if delta_in is None or delta_out is None:
        return mark_stale_if_needed(rebased, now, stale_after_seconds), None

    in_rate = delta_in / elapsed
    out_rate = delta_out / elapsed
    if in_rate > MAX_BYTES_PER_SEC or out_rate > MAX_BYTES_PER_SEC:
        logger.warning(
            "Discarding impossible traffic rate (in=%.0f B/s, out=%.0f B/s)", in_rate, out_rate
        )
        return mark_stale_if_needed(rebased, now, stale_after_seconds), None

    if flip_direction:
        in_rate, out_rate = out_rate, in_rate

    pct = utilization_pct(in_rate, out_rate, link_speed)
    updated = rebased.model_copy(update={
        "in_bytes_per_sec": in_rate,
        "out_bytes_per_sec": out_rate,
        "in_bits_per_sec": in_rate * 8,
        "out_bits_per_sec": out_rate * 8,
        "utilization_pct": pct,
        "last_sample_at": now,
        "is_stale": False,
    })
    point = TrafficPoint(
        timestamp=now,
        in_bits_per_sec=in_rate * 8,
        out_bits_per_sec=out_rate * 8,
        utilization_pct=pct,
    )
    return updated, point


# ---------------------------------------------------------------------------
# History ring buffer
# ---------------------------------------------------------------------------


class TrafficHistory:
    """Last `capacity` accepted points per connection, in memory only."""

    def __init__(self, capacity: int = 30):
        self.capacity = capacity
        self._points: Dict[str, Deque[TrafficPoint]] = {}

    def push(self, connection_id: str, point: TrafficPoint) -> None:
        buf = self._points.get(connection_id)
        if buf is None:
            buf = self._points[connection_id] = deque(maxlen=self.capacity)
        buf.append(point)

    def get(self, connection_id: str) -> List[TrafficPoint]:
        return list(self._points.get(connection_id, ()))

    def forget(self, connection_id: str) -> None:
        self._points.pop(connection_id, None)

    def prune(self, keep_ids) -> None:
        """Drop buffers of connections that are no longer monitored."""
        keep = set(keep_ids)
        for connection_id in [cid for cid in self._points if cid not in keep]:
            del self._points[connection_id]


# ---------------------------------------------------------------------------
# Counter reads
# ---------------------------------------------------------------------------


async def resolve_if_index(
    snmp: SnmpClient,
    address: str,
    port_name: str,
    credentials: Credentials,
    timeout: Optional[float] = None,
    token: Optional[CancelToken] = None,
) -> int:
    """
    Find the ifIndex whose ifDescr (or ifName) equals `port_name`.

    Exact, case-insensitive match only; a near miss would silently graph the
    wrong interface.
    """
    wanted = port_name.strip().lower()
    for base in (IF_DESCR, IF_NAME):
        column = await snmp.walk_column(address, credentials, base, timeout=timeout, token=token)
        for suffix, value in column.items():
            name = as_text(value)
            if name is not None and name.lower() == wanted and suffix.isdigit():
                return int(suffix)
    raise NotFound(f"No interface named {port_name!r} on {address}")


async def read_counters(
    snmp: SnmpClient,
    address: str,
    port_name: str,
    credentials: Credentials,
    cached_index: Optional[int] = None,
    timeout: Optional[float] = None,
    token: Optional[CancelToken] = None,
) -> CounterSample:
    """Read in/out octets for one interface, HC counters first."""
    resolved = False
    index = cached_index
    if index is None:
        index = await resolve_if_index(snmp, address, port_name, credentials, timeout=timeout, token=token)
        resolved = True

    if credentials.snmp_version != "1":
        hc_in = f"{IF_HC_IN_OCTETS}.{index}"
        hc_out = f"{IF_HC_OUT_OCTETS}.{index}"
        values = await snmp.get(address, credentials, [hc_in, hc_out], timeout=timeout, token=token)
        in_octets, out_octets = as_int(values[hc_in]), as_int(values[hc_out])
        if in_octets is not None and out_octets is not None:
            return CounterSample(in_octets, out_octets, index, is_64bit=True, index_resolved=resolved)

    lo_in = f"{IF_IN_OCTETS}.{index}"
    lo_out = f"{IF_OUT_OCTETS}.{index}"
    values = await snmp.get(address, credentials, [lo_in, lo_out], timeout=timeout, token=token)
    in_octets, out_octets = as_int(values[lo_in]), as_int(values[lo_out])
    if in_octets is None or out_octets is None:
        raise ProtocolError(f"No octet counters for ifIndex {index} on {address}")
    return CounterSample(in_octets, out_octets, index, is_64bit=False, index_resolved=resolved)
