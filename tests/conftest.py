"""Pytest configuration and shared fixtures.

Storage tests run against a private in-memory SQLite database per test, so
nothing touches the `netwatch.db` file the settings point at.
"""

from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from netwatch.adapters import ProbeResult
from netwatch.database import create_all, make_engine, make_sessionmaker
from netwatch.latency import summarize
from netwatch.ping import PingSeries, validate_address
from netwatch.pool import ConnectionPool
from netwatch.schemas import DeviceData, LatencyPoint
from netwatch.storage import Storage


@pytest_asyncio.fixture
async def storage():
    """Storage bound to a fresh in-memory database."""
    engine = make_engine("sqlite+aiosqlite://")
    await create_all(engine)
    try:
        yield Storage(make_sessionmaker(engine))
    finally:
        await engine.dispose()


class FakeSnmp:
    """Stands in for SnmpClient where tests never reach the network."""

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeProber:
    """
    Scripted prober.

    `results[ip]` is a list of ProbeResults handed out in order (the last one
    repeats); `ping_alive[ip]` answers the ping fallback.
    `latency_rtts[ip]` is the reply list one latency burst sees.
    """

    def __init__(self) -> None:
        self.pool = ConnectionPool(enabled=False)
        self.snmp = FakeSnmp()
        self.results: Dict[str, List[ProbeResult]] = {}
        self.ping_alive: Dict[str, bool] = {}
        self.calls: List[dict] = []
        self.ping_calls: List[str] = []
        self.latency_rtts: Dict[str, List[float]] = {}
        self.latency_calls: List[str] = []

    async def probe(self, kind, address, credentials, detailed=False, previous_ports=None,
                    needs_index_resolution=False, timeout=6.0) -> ProbeResult:
        self.calls.append({
            "kind": kind,
            "address": address,
            "detailed": detailed,
            "needs_index_resolution": needs_index_resolution,
            "timeout": timeout,
        })
        queue = self.results.get(address) or [ProbeResult(success=False, error="unscripted")]
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    async def verify_by_ping(self, address: str) -> ProbeResult:
        self.ping_calls.append(address)
        alive = self.ping_alive.get(address, False)
        return ProbeResult(success=alive, ping_only=alive)

    async def sample_latency(self, address: str, count: int, timeout: float, now) -> LatencyPoint:
        self.latency_calls.append(address)
        validate_address(address)
        rtts = self.latency_rtts.get(address, [])[:count]
        return summarize(PingSeries(sent=count, rtts_ms=list(rtts)), now)

    def calls_for(self, address: str) -> List[dict]:
        return [c for c in self.calls if c["address"] == address]


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


def ok(data=None, degraded: bool = False) -> ProbeResult:
    return ProbeResult(success=True, data=data or DeviceData(uptime="1:00:00"), degraded=degraded)


def failed(timed_out: bool = False, error: Optional[str] = "refused") -> ProbeResult:
    return ProbeResult(success=False, timed_out=timed_out, error=error)
