"""
SQLAlchemy ORM models.

The CRUD side of the dashboard owns these tables; the probing engine only
reads them and writes back the fields it is responsible for:

- Device:            status, status_changed_at, last_seen, failure_count, device_data
- Connection:        monitor_snmp_index, link_stats
- Setting:           read at the start of every cycle
- EventLog:          one row per status transition
- CredentialProfile: read-only, resolved into `schemas.Credentials`
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from netwatch.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so we never store it)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class CredentialProfile(Base):
    """Named, reusable credential set (router API login and/or SNMP)."""

    __tablename__ = "credential_profiles"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(128), nullable=False)
    type = Column(String(32), nullable=False, default="snmp")  # mikrotik, snmp
    credentials = Column(JSON, nullable=False, default=dict)


class Device(Base):
    """
    A monitored target.

    `type` is the dashboard's device-type string (e.g. "mikrotik_router");
    `adapters.kind_for_type` maps it to the protocol adapter.
    """

    __tablename__ = "devices"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(128), nullable=False)
    type = Column(String(64), nullable=False)
    ip_address = Column(String(255), nullable=True)

    status = Column(String(16), nullable=False, default="unknown")
    status_changed_at = Column(DateTime, nullable=True)
    last_seen = Column(DateTime, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)

    # Per-device overrides; NULL means "use the global default"
    probe_timeout = Column(Integer, nullable=True)
    offline_threshold = Column(Integer, nullable=True)

    # Last successful probe snapshot (schemas.DeviceData as a dict)
    device_data = Column(JSON, nullable=True)

    credential_profile_id = Column(
        String(36), ForeignKey("credential_profiles.id", ondelete="SET NULL"), nullable=True
    )
    custom_credentials = Column(JSON, nullable=True)

    # Burst-ping latency sampling on its own loop
    latency_monitoring = Column(Boolean, nullable=False, default=False)

    use_on_duty = Column(Boolean, nullable=False, default=False)
    muted_until = Column(DateTime, nullable=True)

    def is_muted(self, now: datetime) -> bool:
        return self.muted_until is not None and self.muted_until > now


# Changing any of these points the monitor at a different (device, port) pair
MONITOR_IDENTITY_FIELDS = ("monitor_interface", "source_port", "target_port")


class Connection(Base):
    """A link between two device ports, optionally traffic-monitored."""

    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=new_id)

    source_device_id = Column(String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    target_device_id = Column(String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    source_port = Column(String(128), nullable=True)
    target_port = Column(String(128), nullable=True)

    link_speed = Column(String(16), nullable=True, default="1G")

    # None ("none"), "source" or "target"
    monitor_interface = Column(String(16), nullable=True)
    monitor_snmp_index = Column(Integer, nullable=True)
    flip_traffic_direction = Column(Boolean, nullable=False, default=False)

    # schemas.LinkStats as a dict
    link_stats = Column(JSON, nullable=True)

    def apply_changes(self, changes: dict) -> None:
        """
        Apply field updates, keeping the cached monitor index honest.

        The cached ifIndex belongs to one (device, port) pair, so it is
        cleared whenever the monitored end or either port name changes.
        """
        changes = dict(changes)
        if changes.get("monitor_interface") == "none":
            changes["monitor_interface"] = None

        identity_changed = any(
            field in changes and changes[field] != getattr(self, field)
            for field in MONITOR_IDENTITY_FIELDS
        )

        for field, value in changes.items():
            setattr(self, field, value)

        if identity_changed:
            self.monitor_snmp_index = None

    def monitored_end(self):
        """Return (device_id, port_name) of the monitored end, or None."""
        if self.monitor_interface == "source":
            return self.source_device_id, self.source_port
        if self.monitor_interface == "target":
            return self.target_device_id, self.target_port
        return None


class Setting(Base):
    """Small key/value runtime setting (stored as text)."""

    __tablename__ = "settings"

    key = Column(String(64), primary_key=True)
    value = Column(String(255), nullable=False)


class EventLog(Base):
    """Status-change and engine log entries shown on the dashboard's log page."""

    __tablename__ = "logs"

    id = Column(String(36), primary_key=True, default=new_id)
    timestamp = Column(DateTime, index=True, default=utcnow, nullable=False)
    device_id = Column(String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=True)
    event_type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False, default="info")
    message = Column(Text, nullable=False)
    old_status = Column(String(16), nullable=True)
    new_status = Column(String(16), nullable=True)
    # `metadata` is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
