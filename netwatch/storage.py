"""
Storage collaborator for the probing engine.

Every method opens its own short-lived AsyncSession, so the device loop and
the traffic loop never share a session and a slow cycle never holds a
transaction open across network I/O.

Runtime settings
----------------
The `settings` table holds string values keyed by name. `load_engine_settings`
reads them once per cycle into an immutable `EngineSettings`, falling back to
the bootstrap values from `netwatch.config` for missing or malformed rows.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from netwatch.config import settings as app_settings
from netwatch.database import SessionLocal
from netwatch.exceptions import NotFound
from netwatch.models import Connection, CredentialProfile, Device, EventLog, Setting, utcnow
from netwatch.schemas import Credentials
from netwatch.status import STATUSES

logger = logging.getLogger(__name__)

# Fields the engine is allowed to write on a device
ENGINE_DEVICE_FIELDS = {"status", "status_changed_at", "last_seen", "failure_count", "device_data"}


@dataclass(frozen=True)
class EngineSettings:
    """Snapshot of the runtime knobs, taken at the start of a cycle."""

    polling_interval: int = 30
    default_probe_timeout: int = 6
    default_offline_threshold: int = 1
    concurrent_probes: int = 80
    ping_fallback_enabled: bool = True
    pool_enabled: bool = False

    @classmethod
    def defaults(cls) -> "EngineSettings":
        return cls(
            polling_interval=app_settings.polling_interval_seconds,
            default_probe_timeout=app_settings.default_probe_timeout_seconds,
            default_offline_threshold=app_settings.default_offline_threshold,
            concurrent_probes=app_settings.concurrent_probes,
            ping_fallback_enabled=app_settings.ping_fallback_enabled,
            pool_enabled=app_settings.pool_enabled,
        )


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_int(key: str, raw: Optional[str], default: int, minimum: int = 1) -> int:
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer setting %s=%r", key, raw)
        return default
    if value < minimum:
        logger.warning("Ignoring out-of-range setting %s=%r", key, raw)
        return default
    return value


def _parse_bool(key: str, raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    logger.warning("Ignoring non-boolean setting %s=%r", key, raw)
    return default


def parse_engine_settings(raw: Dict[str, str], defaults: Optional[EngineSettings] = None) -> EngineSettings:
    defaults = defaults or EngineSettings.defaults()
    return EngineSettings(
        polling_interval=_parse_int("polling_interval", raw.get("polling_interval"), defaults.polling_interval),
        default_probe_timeout=_parse_int(
            "default_probe_timeout", raw.get("default_probe_timeout"), defaults.default_probe_timeout
        ),
        default_offline_threshold=_parse_int(
            "default_offline_threshold", raw.get("default_offline_threshold"), defaults.default_offline_threshold
        ),
        concurrent_probes=_parse_int("concurrent_probes", raw.get("concurrent_probes"), defaults.concurrent_probes),
        ping_fallback_enabled=_parse_bool(
            "ping_fallback_enabled", raw.get("ping_fallback_enabled"), defaults.ping_fallback_enabled
        ),
        pool_enabled=_parse_bool("pool_enabled", raw.get("pool_enabled"), defaults.pool_enabled),
    )


class Storage:
    def __init__(self, sessionmaker: async_sessionmaker = SessionLocal):
        self._sessionmaker = sessionmaker

    # -- devices -------------------------------------------------------------

    async def get_all_devices(self) -> List[Device]:
        async with self._sessionmaker() as db:
            result = await db.execute(select(Device))
            return list(result.scalars().all())

    async def get_device(self, device_id: str) -> Device:
        async with self._sessionmaker() as db:
            device = await db.get(Device, device_id)
            if device is None:
                raise NotFound(f"Device {device_id} not found")
            return device

    async def update_device(self, device_id: str, **fields: Any) -> Device:
        """Write engine-owned fields; raises NotFound if the device is gone."""
        unknown = set(fields) - ENGINE_DEVICE_FIELDS
        if unknown:
            raise ValueError(f"Engine may not write device fields {sorted(unknown)}")
        if "status" in fields and fields["status"] not in STATUSES:
            raise ValueError(f"Unknown device status {fields['status']!r}")
        async with self._sessionmaker() as db:
            device = await db.get(Device, device_id)
            if device is None:
                raise NotFound(f"Device {device_id} not found")
            for field, value in fields.items():
                setattr(device, field, value)
            await db.commit()
            return device

    async def create_device(self, **fields: Any) -> Device:
        async with self._sessionmaker() as db:
            device = Device(**fields)
            db.add(device)
            await db.commit()
            await db.refresh(device)
            return device

    async def delete_device(self, device_id: str) -> None:
        async with self._sessionmaker() as db:
            await db.execute(delete(Device).where(Device.id == device_id))
            await db.commit()

    # -- credentials ---------------------------------------------------------

    async def create_credential_profile(self, name: str, type: str, credentials: Dict[str, Any]) -> CredentialProfile:
        async with self._sessionmaker() as db:
            profile = CredentialProfile(name=name, type=type, credentials=credentials)
            db.add(profile)
            await db.commit()
            await db.refresh(profile)
            return profile

    async def get_credential_profile(self, profile_id: str) -> CredentialProfile:
        async with self._sessionmaker() as db:
            profile = await db.get(CredentialProfile, profile_id)
            if profile is None:
                raise NotFound(f"Credential profile {profile_id} not found")
            return profile

    async def resolve_credentials(self, device: Device) -> Credentials:
        """
        Credentials for `device`: its profile when it has one that still
        exists, otherwise its inline credentials, otherwise defaults.
        """
        if device.credential_profile_id:
            async with self._sessionmaker() as db:
                profile = await db.get(CredentialProfile, device.credential_profile_id)
            if profile is not None:
                return Credentials.model_validate(profile.credentials or {})
            logger.warning("Device %s references missing credential profile %s",
                           device.id, device.credential_profile_id)
        return Credentials.model_validate(device.custom_credentials or {})

    # -- connections ---------------------------------------------------------

    async def get_monitored_connections(self) -> List[Connection]:
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(Connection).where(Connection.monitor_interface.in_(("source", "target")))
            )
            return list(result.scalars().all())

    async def get_connection(self, connection_id: str) -> Connection:
        async with self._sessionmaker() as db:
            connection = await db.get(Connection, connection_id)
            if connection is None:
                raise NotFound(f"Connection {connection_id} not found")
            return connection

    async def create_connection(self, **fields: Any) -> Connection:
        async with self._sessionmaker() as db:
            if fields.get("monitor_interface") == "none":
                fields["monitor_interface"] = None
            connection = Connection(**fields)
            db.add(connection)
            await db.commit()
            await db.refresh(connection)
            return connection

    async def update_connection(
        self,
        connection_id: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Connection:
        """
        Apply `changes` through `Connection.apply_changes` (index invalidation).

        `expected` holds the monitor identity the caller resolved an index
        for; if the row was re-pointed since, a resolved `monitor_snmp_index`
        in `changes` belongs to the old port and is dropped.
        """
        async with self._sessionmaker() as db:
            connection = await db.get(Connection, connection_id)
            if connection is None:
                raise NotFound(f"Connection {connection_id} not found")
            if expected and "monitor_snmp_index" in changes and any(
                getattr(connection, field) != value for field, value in expected.items()
            ):
                changes = {k: v for k, v in changes.items() if k != "monitor_snmp_index"}
            connection.apply_changes(changes)
            await db.commit()
            return connection

    # -- settings ------------------------------------------------------------

    async def get_setting(self, key: str) -> Optional[str]:
        async with self._sessionmaker() as db:
            row = await db.get(Setting, key)
            return row.value if row is not None else None

    async def set_setting(self, key: str, value: Any) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        async with self._sessionmaker() as db:
            row = await db.get(Setting, key)
            if row is None:
                db.add(Setting(key=key, value=str(value)))
            else:
                row.value = str(value)
            await db.commit()

    async def load_engine_settings(self) -> EngineSettings:
        async with self._sessionmaker() as db:
            result = await db.execute(select(Setting))
            raw = {row.key: row.value for row in result.scalars().all()}
        return parse_engine_settings(raw)

    # -- logs ----------------------------------------------------------------

    async def add_log(
        self,
        event_type: str,
        message: str,
        severity: str = "info",
        device_id: Optional[str] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> EventLog:
        async with self._sessionmaker() as db:
            entry = EventLog(
                timestamp=utcnow(),
                device_id=device_id,
                event_type=event_type,
                severity=severity,
                message=message,
                old_status=old_status,
                new_status=new_status,
                details=details,
            )
            db.add(entry)
            await db.commit()
            return entry

    async def get_logs(self, device_id: Optional[str] = None, limit: int = 100) -> List[EventLog]:
        async with self._sessionmaker() as db:
            query = select(EventLog).order_by(EventLog.timestamp.desc()).limit(limit)
            if device_id is not None:
                query = query.where(EventLog.device_id == device_id)
            result = await db.execute(query)
            return list(result.scalars().all())
