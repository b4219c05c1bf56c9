"""
Configuration for the netwatch probing engine.

Settings come from environment variables, with a local `.env` file in the
project root as fallback (pydantic-settings).

These are *bootstrap* values. The runtime knobs operators change from the
dashboard (polling interval, default timeout, ...) live in the `settings`
table and override the defaults below at the start of every probe cycle.
"""

from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Environment variables (with defaults):

    - DATABASE_URL:                  SQLAlchemy async URL (default: SQLite file "netwatch.db")
    - LOG_LEVEL:                     Root log level (default: INFO)
    - START_ENGINE:                  Start the probing loops with the API process (default: 1)
    - POLLING_INTERVAL_SECONDS:      Device probe cadence (default: 30)
    - DEFAULT_PROBE_TIMEOUT_SECONDS: Per-device probe timeout (default: 6)
    - DEFAULT_OFFLINE_THRESHOLD:     Failed cycles before offline (default: 1)
    - CONCURRENT_PROBES:             Device probes in flight (default: 80)
    - PING_FALLBACK_ENABLED:         Ping before declaring offline (default: 1)
    - POOL_ENABLED:                  Persistent router API sessions (default: 0)
    - TRAFFIC_INTERVAL_SECONDS:      Traffic counter cadence (default: 10)
    - LATENCY_INTERVAL_SECONDS:      Latency burst cadence (default: 30)
    - LATENCY_PROBE_COUNT:           Echoes per latency burst (default: 20)
    - SCAN_PORTS:                    Comma-separated router API ports tried by scans
    """

    database_url: str = "sqlite+aiosqlite:///./netwatch.db"
    log_level: str = "INFO"

    start_engine: bool = True

    # Runtime defaults (overridable from the settings table)
    polling_interval_seconds: int = 30
    default_probe_timeout_seconds: int = 6
    default_offline_threshold: int = 1
    concurrent_probes: int = 80
    ping_fallback_enabled: bool = True
    pool_enabled: bool = False

    # Fixed engine tuning
    detailed_cycle_every: int = 10
    manual_probe_timeout_seconds: int = 15
    ping_timeout_seconds: float = 2.0

    traffic_interval_seconds: int = 10
    traffic_concurrency: int = 20
    traffic_timeout_seconds: int = 5
    traffic_history_points: int = 30
    link_stale_after_seconds: int = 60

    latency_interval_seconds: int = 30
    latency_probe_count: int = 20
    latency_timeout_seconds: float = 1.0
    latency_concurrency: int = 20
    latency_history_points: int = 120

    scan_concurrency: int = 50
    scan_max_hosts: int = 1024
    scan_timeout_seconds: int = 4

    # SCAN_PORTS is a plain list ("8728,8729"), not JSON
    scan_ports: Annotated[List[int], NoDecode] = Field(default_factory=lambda: [8728])

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("scan_ports", mode="before")
    @classmethod
    def split_scan_ports(cls, v):
        """SCAN_PORTS="8728, 8729" or a single port number."""
        if isinstance(v, (int, str)):
            v = str(v).split(",")
        return [int(str(port).strip()) for port in v if str(port).strip()]

    @field_validator("scan_ports")
    @classmethod
    def check_scan_ports(cls, ports: List[int]) -> List[int]:
        if not ports:
            raise ValueError("SCAN_PORTS needs at least one router API port")
        invalid = [p for p in ports if not 0 < p < 65536]
        if invalid:
            raise ValueError(f"SCAN_PORTS has invalid TCP ports: {invalid}")
        # Order is the order scans try them in
        return list(dict.fromkeys(ports))


# Single global settings object
settings = Settings()
