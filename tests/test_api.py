"""
API tests.

The engine dependency is overridden with a mock, and the client is used
without a `with` block so the lifespan (tables, probing loops) never runs.
"""

from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from netwatch.api import app, get_engine
from netwatch.exceptions import NotFound, ValidationError
from netwatch.scanner import ScanHit
from netwatch.schemas import DeviceOut, LatencyPoint, ProbeNowOut, TrafficPoint

T0 = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture
def engine():
    engine = Mock()
    engine.storage = Mock()
    engine.storage.get_connection = AsyncMock()
    engine.storage.get_device = AsyncMock()
    engine.probe_now = AsyncMock()
    engine.scan = AsyncMock(return_value=[])
    engine.traffic_history = Mock(return_value=[])
    engine.latency_history = Mock(return_value=[])
    engine.status = Mock(return_value={
        "running": True,
        "device_cycles": 4,
        "traffic_cycles": 12,
        "last_cycle_duration_seconds": 1.5,
        "last_cycle_success_rate": 75.0,
        "pool": {"enabled": True, "total_connections": 2, "active_connections": 2, "in_use": 0},
    })
    return engine


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# =============================================================================
# Health and status
# =============================================================================


class TestStatusEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_engine_status(self, client):
        response = client.get("/engine/status")

        assert response.status_code == 200
        body = response.json()
        assert body["device_cycles"] == 4
        assert body["pool"]["total_connections"] == 2


# =============================================================================
# Probe now
# =============================================================================


class TestProbeEndpoint:
    """Tests for POST /devices/{id}/probe."""

    def test_probe_now(self, client, engine):
        engine.probe_now.return_value = ProbeNowOut(
            success=True,
            old_status="offline",
            new_status="online",
            device=DeviceOut(id="d1", name="core", type="mikrotik_router", status="online", last_seen=T0),
        )

        response = client.post("/devices/d1/probe")

        assert response.status_code == 200
        body = response.json()
        assert body["new_status"] == "online"
        assert body["device"]["id"] == "d1"
        engine.probe_now.assert_awaited_once_with("d1")

    def test_unknown_device_is_404(self, client, engine):
        engine.probe_now.side_effect = NotFound("Device d9 not found")

        response = client.post("/devices/d9/probe")

        assert response.status_code == 404
        assert response.json() == {"detail": "Device d9 not found"}

    def test_device_without_address_is_422(self, client, engine):
        engine.probe_now.side_effect = ValidationError("Device core has no IP address")

        response = client.post("/devices/d1/probe")

        assert response.status_code == 422


# =============================================================================
# Traffic and scan
# =============================================================================


class TestTrafficEndpoint:
    def test_history(self, client, engine):
        engine.traffic_history.return_value = [
            TrafficPoint(timestamp=T0, in_bits_per_sec=8000.0, out_bits_per_sec=1600.0, utilization_pct=0)
        ]

        response = client.get("/connections/c1/traffic")

        assert response.status_code == 200
        assert response.json()[0]["in_bits_per_sec"] == 8000.0
        engine.traffic_history.assert_called_once_with("c1")

    def test_unknown_connection_is_404(self, client, engine):
        engine.storage.get_connection.side_effect = NotFound("Connection c9 not found")

        response = client.get("/connections/c9/traffic")

        assert response.status_code == 404


class TestLatencyEndpoint:
    def test_history(self, client, engine):
        engine.latency_history.return_value = [
            LatencyPoint(timestamp=T0, sent=20, received=0, loss_pct=100.0),
        ]

        response = client.get("/devices/d1/latency")

        assert response.status_code == 200
        body = response.json()
        assert body[0]["loss_pct"] == 100.0
        assert body[0]["rtt_avg"] is None
        engine.latency_history.assert_called_once_with("d1")

    def test_unknown_device_is_404(self, client, engine):
        engine.storage.get_device.side_effect = NotFound("Device d9 not found")

        response = client.get("/devices/d9/latency")

        assert response.status_code == 404


class TestScanEndpoint:
    def test_scan(self, client, engine):
        engine.scan.return_value = [
            ScanHit(address="10.0.0.1", alive=True, probe_type="mikrotik",
                    device_type="mikrotik_router", identity="core-rtr", credential_profile_id="p1"),
        ]

        response = client.post("/scan", json={"cidr": "10.0.0.0/30", "credential_profile_ids": ["p1"]})

        assert response.status_code == 200
        assert response.json()[0]["identity"] == "core-rtr"
        engine.scan.assert_awaited_once_with("10.0.0.0/30", ["p1"], ["mikrotik", "snmp", "ping"])

    def test_rejected_probe_type(self, client):
        response = client.post("/scan", json={"cidr": "10.0.0.0/30", "probe_types": ["telnet"]})

        assert response.status_code == 422

    def test_oversized_range(self, client, engine):
        engine.scan.side_effect = ValidationError("10.0.0.0/8 has 16777214 hosts, more than the limit of 1024")

        response = client.post("/scan", json={"cidr": "10.0.0.0/8"})

        assert response.status_code == 422
        assert "limit" in response.json()["detail"]
