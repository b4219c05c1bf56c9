"""
Pydantic models ("schemas").

Two groups live here:

- value objects stored inside JSON columns (`Credentials`, `Port`,
  `DeviceData`, `LinkStats`) so the engine never pokes at raw dicts;
- API response/request models, kept separate from the ORM models so the API
  layer does not expose SQLAlchemy internals.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Credentials(BaseModel):
    """
    Resolved device credentials (profile or inline).

    Router API fields and SNMP fields share one record because a router
    also needs SNMP for ifIndex resolution and traffic counters.
    """

    model_config = ConfigDict(extra="ignore")

    username: str = "admin"
    password: str = ""
    api_port: int = 8728

    snmp_version: Literal["1", "2c", "3"] = "2c"
    snmp_port: int = 161
    snmp_community: str = "public"
    snmp_username: str = "snmpuser"
    snmp_auth_protocol: Literal["MD5", "SHA"] = "SHA"
    snmp_auth_key: str = ""
    snmp_priv_protocol: Literal["DES", "AES"] = "AES"
    snmp_priv_key: str = ""


class Port(BaseModel):
    """One device interface as last seen by a probe."""

    name: str
    default_name: Optional[str] = None
    status: Literal["up", "down", "unknown"] = "unknown"
    speed: Optional[str] = None
    description: Optional[str] = None
    mac_address: Optional[str] = None
    snmp_index: Optional[int] = None

    def matches(self, name: Optional[str]) -> bool:
        """Name-or-default_name match; survives operator renames."""
        if not name:
            return False
        return name == self.name or (self.default_name is not None and name == self.default_name)


class DeviceData(BaseModel):
    """Snapshot of the last successful probe."""

    model_config = ConfigDict(extra="ignore")

    uptime: Optional[str] = None
    model: Optional[str] = None
    version: Optional[str] = None
    system_identity: Optional[str] = None
    cpu_usage_pct: Optional[float] = None
    memory_usage_pct: Optional[float] = None
    disk_usage_pct: Optional[float] = None
    ping_rtt_ms: Optional[float] = None
    ports: List[Port] = Field(default_factory=list)

    def find_port(self, name: Optional[str]) -> Optional[Port]:
        for port in self.ports:
            if port.matches(name):
                return port
        return None


class LinkStats(BaseModel):
    """Derived traffic rates for a monitored connection."""

    model_config = ConfigDict(extra="ignore")

    in_bytes_per_sec: float = 0.0
    out_bytes_per_sec: float = 0.0
    in_bits_per_sec: float = 0.0
    out_bits_per_sec: float = 0.0
    utilization_pct: int = 0
    last_sample_at: Optional[datetime] = None
    previous_in_octets: Optional[int] = None
    previous_out_octets: Optional[int] = None
    previous_sample_at: Optional[datetime] = None
    is_stale: bool = False


class TrafficPoint(BaseModel):
    """One entry of the in-memory traffic history ring buffer."""

    timestamp: datetime
    in_bits_per_sec: float
    out_bits_per_sec: float
    utilization_pct: int


class LatencyPoint(BaseModel):
    """One latency burst: loss and RTT statistics in milliseconds."""

    timestamp: datetime
    sent: int
    received: int
    loss_pct: float
    rtt_min: Optional[float] = None
    rtt_avg: Optional[float] = None
    rtt_max: Optional[float] = None
    rtt_mdev: Optional[float] = None
    rtt_p10: Optional[float] = None
    rtt_p25: Optional[float] = None
    rtt_p50: Optional[float] = None
    rtt_p75: Optional[float] = None
    rtt_p90: Optional[float] = None
    rtt_p95: Optional[float] = None


# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------


class DeviceOut(BaseModel):
    """Device fields owned by the probing engine."""

    id: str
    name: str
    type: str
    ip_address: Optional[str] = None
    status: str
    status_changed_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    failure_count: int = 0
    device_data: Optional[DeviceData] = None

    model_config = ConfigDict(from_attributes=True)


class ProbeNowOut(BaseModel):
    """Result of a manual "probe now"."""

    success: bool
    timed_out: bool = False
    error: Optional[str] = None
    old_status: str
    new_status: str
    device: DeviceOut


class PoolStatsOut(BaseModel):
    enabled: bool
    total_connections: int
    active_connections: int
    in_use: int


class EngineStatusOut(BaseModel):
    running: bool
    device_cycles: int
    traffic_cycles: int
    latency_cycles: int = 0
    last_cycle_duration_seconds: Optional[float] = None
    last_cycle_success_rate: Optional[float] = None
    pool: PoolStatsOut


class ScanRequest(BaseModel):
    """Range scan request: CIDR plus credential profiles to try."""

    cidr: str
    credential_profile_ids: List[str] = Field(default_factory=list)
    probe_types: List[Literal["mikrotik", "snmp", "ping"]] = Field(
        default_factory=lambda: ["mikrotik", "snmp", "ping"]
    )


class ScanHitOut(BaseModel):
    address: str
    alive: bool
    rtt_ms: Optional[float] = None
    probe_type: Optional[str] = None
    device_type: Optional[str] = None
    identity: Optional[str] = None
    description: Optional[str] = None
    credential_profile_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
