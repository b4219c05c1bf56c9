"""
Latency sampling for ping-monitored devices.

Every `latency_interval_seconds` the engine sends a burst of echoes to each
device with latency monitoring on and folds the replies into one
`LatencyPoint`:

- loss is the share of echoes without a reply
- mdev is the population standard deviation of the RTTs (needs two replies)
- percentiles interpolate linearly between the two nearest ranks

A burst with no reply at all is still a point (100 % loss, no RTT figures),
so outages show up in the history instead of leaving a gap.
"""

import math
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, List, Optional, Sequence

from netwatch.ping import PingSeries
from netwatch.schemas import LatencyPoint

PERCENTILES = (10, 25, 50, 75, 90, 95)


def percentile(values: Sequence[float], p: float) -> Optional[float]:
    """Linear-interpolated percentile; None for an empty sample."""
    if not values:
        return None
    ordered = sorted(values)
    rank = p / 100 * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return ordered[lower]
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def mdev(values: Sequence[float], mean: float) -> Optional[float]:
    if len(values) < 2:
        return None
    return math.sqrt(sum((v - mean) ** 2 for v in values) / len(values))


def summarize(series: PingSeries, now: datetime) -> LatencyPoint:
    rtts = series.rtts_ms
    sent = series.sent
    received = min(series.received, sent)
    loss_pct = (sent - received) / sent * 100 if sent > 0 else 100.0

    fields = {
        "timestamp": now,
        "sent": sent,
        "received": received,
        "loss_pct": loss_pct,
    }
    if rtts:
        avg = sum(rtts) / len(rtts)
        fields.update(rtt_min=min(rtts), rtt_avg=avg, rtt_max=max(rtts), rtt_mdev=mdev(rtts, avg))
        for p in PERCENTILES:
            fields[f"rtt_p{p}"] = percentile(rtts, p)
    return LatencyPoint(**fields)


class LatencyHistory:
    """Last `capacity` latency points per device, in memory only."""

    def __init__(self, capacity: int = 120):
        self.capacity = capacity
        self._points: Dict[str, Deque[LatencyPoint]] = {}

    def push(self, device_id: str, point: LatencyPoint) -> None:
        buf = self._points.setdefault(device_id, deque(maxlen=self.capacity))
        buf.append(point)

    def get(self, device_id: str) -> List[LatencyPoint]:
        return list(self._points.get(device_id, ()))

    def latest(self, device_id: str) -> Optional[LatencyPoint]:
        buf = self._points.get(device_id)
        return buf[-1] if buf else None

    def prune(self, keep_ids: Iterable[str]) -> None:
        keep = set(keep_ids)
        for device_id in [d for d in self._points if d not in keep]:
            del self._points[device_id]
