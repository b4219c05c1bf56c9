"""
Probing engine.

Three self-pacing loops run side by side on one event loop:

- device loop (every `polling_interval` seconds): re-verify devices that
  have not been seen for a while, then probe every device with an address,
  `concurrent_probes` at a time, and push each outcome through the status
  state machine
- traffic loop (every `traffic_interval_seconds`): read octet counters for
  every monitored connection and update link rates and history
- latency loop (every `latency_interval_seconds`): send a burst of echoes
  to every device with latency monitoring on and keep the loss and RTT
  statistics in a ring buffer

Probe cycles
------------
Every `detailed_cycle_every`-th device cycle is *detailed*: RouterOS devices
measure per-port link speed. Quick cycles reuse cached speeds, but a port
that went down -> up escalates that one device to a detailed probe. A probe
that times out is retried once before it counts as a failure.

The engine is the only writer of device status fields; everything else it
learns about devices comes from `Storage` at the start of each cycle.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set

from netwatch.adapters import DeviceKind, Prober, ProbeResult, kind_for_type
from netwatch.config import Settings, settings as app_settings
from netwatch.events import EventBus, StatusChangeEvent
from netwatch.exceptions import NotFound, ProbeError, ValidationError
from netwatch.latency import LatencyHistory
from netwatch.models import Connection, Device, utcnow
from netwatch.pool import ConnectionPool
from netwatch.scanner import Scanner
from netwatch.scheduler import PacedLoop, run_bounded, run_with_timeout
from netwatch.schemas import DeviceData, DeviceOut, LatencyPoint, LinkStats, Port, ProbeNowOut, TrafficPoint
from netwatch.snmp_client import SnmpClient
from netwatch.status import (
    OutcomeKind,
    StatusUpdate,
    apply_outcome,
    effective_threshold,
    needs_ping_verification,
    reaches_threshold,
    severity_for,
    should_notify,
)
from netwatch.storage import EngineSettings, Storage
from netwatch.traffic import TrafficHistory, apply_sample, mark_stale_if_needed, read_counters

logger = logging.getLogger(__name__)

# Above this share of failed probes the problem is likely on the engine side
MASS_FAILURE_RATIO = 0.5


@dataclass
class DeviceOutcome:
    device_id: str
    result: ProbeResult
    update: Optional[StatusUpdate] = None
    dropped: bool = False


@dataclass
class CycleReport:
    number: int
    detailed: bool
    total: int = 0
    success: int = 0
    timeout: int = 0
    error: int = 0
    dropped: int = 0
    duration: float = 0.0

    @property
    def success_rate(self) -> float:
        return (self.success / self.total * 100) if self.total else 0.0

    @property
    def failure_ratio(self) -> float:
        return ((self.timeout + self.error) / self.total) if self.total else 0.0


def link_came_up(previous: Sequence[Port], current: Sequence[Port]) -> Optional[Port]:
    """First port that was down in `previous` and is up now, if any."""
    by_name = {p.name: p for p in previous}
    for port in current:
        old = by_name.get(port.name)
        if old is not None and old.status == "down" and port.status == "up":
            return port
    return None


def _snapshot(device: Device) -> Optional[DeviceData]:
    if not device.device_data:
        return None
    return DeviceData.model_validate(device.device_data)


class ProbingEngine:
    def __init__(
        self,
        storage: Storage,
        prober: Optional[Prober] = None,
        events: Optional[EventBus] = None,
        config: Settings = app_settings,
        now: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.config = config
        self.events = events or EventBus()
        self._now = now

        if prober is None:
            pool = ConnectionPool(enabled=config.pool_enabled)
            prober = Prober(pool, SnmpClient(), ping_timeout=config.ping_timeout_seconds)
        self.prober = prober
        self.pool = prober.pool
        self.snmp = prober.snmp

        self.history = TrafficHistory(capacity=config.traffic_history_points)
        self.latency = LatencyHistory(capacity=config.latency_history_points)
        self.engine_settings = EngineSettings.defaults()
        self.last_report: Optional[CycleReport] = None
        self.device_cycles = 0

        self.device_loop = PacedLoop(
            "device-probe", self.run_device_cycle, lambda: self.engine_settings.polling_interval
        )
        self.traffic_loop = PacedLoop(
            "traffic", self.run_traffic_cycle, lambda: self.config.traffic_interval_seconds
        )
        self.latency_loop = PacedLoop(
            "latency", self.run_latency_cycle, lambda: self.config.latency_interval_seconds
        )

    # -- lifecycle -----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.device_loop.running or self.traffic_loop.running or self.latency_loop.running

    def start(self) -> None:
        logger.info(
            "[probing] Starting engine (%ss interval, %s concurrent, detailed every %s cycles)",
            self.engine_settings.polling_interval,
            self.engine_settings.concurrent_probes,
            self.config.detailed_cycle_every,
        )
        self.pool.start()
        self.device_loop.start()
        self.traffic_loop.start()
        self.latency_loop.start()

    async def stop(self) -> None:
        await self.device_loop.wait_stopped()
        await self.traffic_loop.wait_stopped()
        await self.latency_loop.wait_stopped()
        await self.pool.stop()
        await self.events.drain()
        self.snmp.close()
        logger.info("[probing] Engine stopped")

    def status(self) -> dict:
        report = self.last_report
        return {
            "running": self.running,
            "device_cycles": self.device_cycles,
            "traffic_cycles": self.traffic_loop.cycles,
            "latency_cycles": self.latency_loop.cycles,
            "last_cycle_duration_seconds": report.duration if report else None,
            "last_cycle_success_rate": report.success_rate if report else None,
            "pool": self.pool.stats(),
        }

    # -- settings ------------------------------------------------------------

    async def refresh_settings(self) -> EngineSettings:
        self.engine_settings = await self.storage.load_engine_settings()
        self.pool.set_enabled(self.engine_settings.pool_enabled)
        return self.engine_settings

    # -- device cycle --------------------------------------------------------

    async def run_device_cycle(self) -> CycleReport:
        cfg = await self.refresh_settings()
        self.device_cycles += 1
        number = self.device_cycles
        detailed = number % max(1, self.config.detailed_cycle_every) == 0
        started = time.monotonic()

        devices = [d for d in await self.storage.get_all_devices() if d.ip_address]
        needs_index = await self._devices_needing_index(devices)
        ping_cache: Dict[str, bool] = {}

        logger.info("[probing] Starting probe cycle #%d for %d devices%s",
                    number, len(devices), " (DETAILED)" if detailed else "")

        if cfg.ping_fallback_enabled:
            await self._verify_unseen_devices(devices, cfg, ping_cache)

        async def worker(device: Device) -> DeviceOutcome:
            return await self._probe_device(
                device, cfg, detailed=detailed,
                needs_index_resolution=device.id in needs_index,
                ping_cache=ping_cache,
            )

        outcomes = await run_bounded(devices, cfg.concurrent_probes, worker, label="probing")

        report = CycleReport(number=number, detailed=detailed, total=len(devices))
        for outcome in outcomes:
            if outcome.dropped:
                report.dropped += 1
            elif outcome.result.success:
                report.success += 1
            elif outcome.result.timed_out:
                report.timeout += 1
            else:
                report.error += 1
        # Workers that raised never produced an outcome
        report.error += len(devices) - len(outcomes)
        report.duration = time.monotonic() - started
        self.last_report = report

        logger.info(
            "[probing] Completed cycle #%d in %.1fs: %d devices, %d success (%.1f%%), %d timeout, %d error",
            number, report.duration, report.total, report.success, report.success_rate,
            report.timeout, report.error,
        )
        if report.total and report.failure_ratio > MASS_FAILURE_RATIO:
            logger.warning(
                "[probing] Mass failure in cycle #%d: %d of %d devices failed; check the engine's own connectivity",
                number, report.timeout + report.error, report.total,
            )
        return report

    async def _devices_needing_index(self, devices: Sequence[Device]) -> Set[str]:
        """Router devices whose monitored port has no ifIndex cached anywhere yet."""
        by_id = {d.id: d for d in devices}
        needed: Set[str] = set()
        for connection in await self.storage.get_monitored_connections():
            end = connection.monitored_end()
            if end is None or connection.monitor_snmp_index is not None:
                continue
            device_id, port_name = end
            device = by_id.get(device_id)
            if device is None or kind_for_type(device.type) is not DeviceKind.ROUTER_API:
                continue
            snapshot = _snapshot(device)
            port = snapshot.find_port(port_name) if snapshot else None
            if port is None or port.snmp_index is None:
                needed.add(device_id)
        return needed

    async def _ping_once(self, device: Device, ping_cache: Dict[str, bool]) -> bool:
        """Ping a device at most once per cycle."""
        if device.id not in ping_cache:
            result = await self.prober.verify_by_ping(device.ip_address)
            ping_cache[device.id] = result.success
        return ping_cache[device.id]

    async def _verify_unseen_devices(self, devices: Sequence[Device], cfg: EngineSettings,
                                     ping_cache: Dict[str, bool]) -> None:
        """
        Devices that claim to be reachable but were not seen for two polling
        intervals are pinged before the cycle; only a failed ping marks them
        offline, a successful one leaves them to the regular probe.
        """
        now = self._now()
        candidates = [
            d for d in devices
            if needs_ping_verification(d.status, d.last_seen, cfg.polling_interval, now)
        ]
        if not candidates:
            return

        async def verify(device: Device) -> None:
            if await self._ping_once(device, ping_cache):
                return
            threshold = effective_threshold(device.offline_threshold, cfg.default_offline_threshold)
            update = apply_outcome(device.status, device.failure_count, device.last_seen,
                                   OutcomeKind.UNREACHABLE, threshold, self._now())
            try:
                await self._persist(device, update, data=None)
            except NotFound:
                return
            device.status = update.status
            device.failure_count = update.failure_count

        logger.info("[probing] Re-verifying %d unseen devices by ping", len(candidates))
        await run_bounded(candidates, cfg.concurrent_probes, verify, label="ping-verify")

    async def _probe_with_retry(self, kind: DeviceKind, device: Device, credentials, detailed: bool,
                                previous_ports: Sequence[Port], needs_index_resolution: bool,
                                timeout: float) -> ProbeResult:
        result = await self.prober.probe(
            kind, device.ip_address, credentials, detailed=detailed,
            previous_ports=previous_ports, needs_index_resolution=needs_index_resolution,
            timeout=timeout,
        )
        if result.timed_out:
            logger.warning("[probing] Timeout probing %s (%s), retrying once", device.name, device.ip_address)
            result = await self.prober.probe(
                kind, device.ip_address, credentials, detailed=detailed,
                previous_ports=previous_ports, needs_index_resolution=needs_index_resolution,
                timeout=timeout,
            )
        return result

    async def _probe_device(
        self,
        device: Device,
        cfg: EngineSettings,
        detailed: bool,
        needs_index_resolution: bool,
        ping_cache: Dict[str, bool],
        timeout: Optional[float] = None,
    ) -> DeviceOutcome:
        kind = kind_for_type(device.type)
        credentials = await self.storage.resolve_credentials(device)
        snapshot = _snapshot(device)
        previous_ports = snapshot.ports if snapshot else []
        timeout = timeout or device.probe_timeout or cfg.default_probe_timeout

        result = await self._probe_with_retry(kind, device, credentials, detailed,
                                              previous_ports, needs_index_resolution, timeout)

        if (
            result.success and not detailed and kind is DeviceKind.ROUTER_API
            and previous_ports and result.data is not None
        ):
            port = link_came_up(previous_ports, result.data.ports)
            if port is not None:
                logger.info("[probing] Link state change on %s port %s: down -> up, running detailed probe",
                            device.name, port.name)
                escalated = await self._probe_with_retry(kind, device, credentials, True,
                                                         previous_ports, needs_index_resolution, timeout)
                if escalated.success:
                    result = escalated

        try:
            update = await self._apply_result(device, kind, result, cfg, ping_cache)
        except NotFound:
            logger.debug("[probing] %s was deleted mid-cycle, dropping result", device.id)
            return DeviceOutcome(device.id, result, dropped=True)
        return DeviceOutcome(device.id, result, update)

    async def _apply_result(self, device: Device, kind: DeviceKind, result: ProbeResult,
                            cfg: EngineSettings, ping_cache: Dict[str, bool]) -> StatusUpdate:
        threshold = effective_threshold(device.offline_threshold, cfg.default_offline_threshold)

        if result.success:
            outcome = OutcomeKind.DEGRADED if result.degraded else OutcomeKind.SUCCESS
        else:
            outcome = OutcomeKind.FAILED
            if (
                cfg.ping_fallback_enabled
                and kind is not DeviceKind.PING_ONLY
                and reaches_threshold(device.failure_count, threshold)
                and await self._ping_once(device, ping_cache)
            ):
                outcome = OutcomeKind.PING_ONLY
            logger.info("[probing] %s (%s) probe failed: %s", device.name, device.ip_address, result.error)

        update = apply_outcome(device.status, device.failure_count, device.last_seen,
                               outcome, threshold, self._now())
        await self._persist(device, update, data=result.data if result.success else None)
        return update

    async def _persist(self, device: Device, update: StatusUpdate, data: Optional[DeviceData]) -> None:
        now = self._now()
        fields = {
            "status": update.status,
            "failure_count": update.failure_count,
            "last_seen": update.last_seen,
        }
        if update.changed:
            fields["status_changed_at"] = now
        if data is not None:
            fields["device_data"] = data.model_dump(mode="json")
        await self.storage.update_device(device.id, **fields)
        if update.changed:
            await self._record_transition(device, update, now)

    async def _record_transition(self, device: Device, update: StatusUpdate, now: datetime) -> None:
        old, new = update.old_status, update.status
        logger.info("[probing] %s (%s): %s -> %s", device.name, device.ip_address, old, new)
        await self.storage.add_log(
            "status_change",
            f"{device.name} changed from {old} to {new}",
            severity=severity_for(new),
            device_id=device.id,
            old_status=old,
            new_status=new,
            details={"ip_address": device.ip_address, "failure_count": update.failure_count},
        )

        if not should_notify(old, new):
            return
        if device.is_muted(now):
            logger.info("[probing] %s is muted until %s, not notifying", device.name, device.muted_until)
            return
        self.events.publish(StatusChangeEvent(
            device_id=device.id,
            old_status=old,
            new_status=new,
            timestamp=now,
            device_name=device.name,
            use_on_duty=bool(device.use_on_duty),
        ))

    # -- manual probe --------------------------------------------------------

    async def probe_now(self, device_id: str) -> ProbeNowOut:
        """
        Probe one device right away: detailed, resolving ifIndexes, with a
        longer timeout than the cycle uses. Raises NotFound for unknown ids.
        """
        device = await self.storage.get_device(device_id)
        if not device.ip_address:
            raise ValidationError(f"Device {device.name} has no IP address")
        cfg = await self.refresh_settings()
        timeout = max(device.probe_timeout or cfg.default_probe_timeout,
                      self.config.manual_probe_timeout_seconds)
        old_status = device.status or "unknown"

        outcome = await self._probe_device(
            device, cfg, detailed=True, needs_index_resolution=True, ping_cache={}, timeout=timeout,
        )
        if outcome.dropped:
            raise NotFound(f"Device {device_id} not found")

        fresh = await self.storage.get_device(device_id)
        return ProbeNowOut(
            success=outcome.result.success,
            timed_out=outcome.result.timed_out,
            error=outcome.result.error,
            old_status=old_status,
            new_status=fresh.status,
            device=DeviceOut.model_validate(fresh),
        )

    # -- traffic -------------------------------------------------------------

    def traffic_history(self, connection_id: str) -> List[TrafficPoint]:
        return self.history.get(connection_id)

    async def run_traffic_cycle(self) -> int:
        connections = await self.storage.get_monitored_connections()
        self.history.prune(c.id for c in connections)
        if not connections:
            return 0
        devices = {d.id: d for d in await self.storage.get_all_devices()}

        async def worker(connection: Connection) -> bool:
            return await self._sample_connection(connection, devices)

        results = await run_bounded(connections, self.config.traffic_concurrency, worker, label="traffic")
        sampled = sum(1 for ok in results if ok)
        logger.debug("[traffic] Sampled %d of %d monitored connections", sampled, len(connections))
        return sampled

    async def _sample_connection(self, connection: Connection, devices: Dict[str, Device]) -> bool:
        end = connection.monitored_end()
        if end is None:
            return False
        device_id, port_name = end
        device = devices.get(device_id)
        if device is None or not device.ip_address or not port_name:
            return False

        snapshot = _snapshot(device)
        port = snapshot.find_port(port_name) if snapshot else None
        if port is not None and port.snmp_index is not None:
            cached_index = port.snmp_index
        else:
            cached_index = connection.monitor_snmp_index

        stats = LinkStats.model_validate(connection.link_stats) if connection.link_stats else None
        credentials = await self.storage.resolve_credentials(device)
        timeout = self.config.traffic_timeout_seconds

        try:
            sample = await run_with_timeout(
                lambda token: read_counters(self.snmp, device.ip_address, port_name, credentials,
                                            cached_index=cached_index, timeout=timeout, token=token),
                timeout * 3,
                label=f"traffic {device.ip_address}:{port_name}",
            )
        except ProbeError as exc:
            logger.debug("[traffic] No counters for %s %s: %s", device.name, port_name, exc)
            sample = None

        now = self._now()
        changes = {}
        accepted = False
        if sample is None:
            if stats is not None:
                stale = mark_stale_if_needed(stats, now, self.config.link_stale_after_seconds)
                if stale != stats:
                    changes["link_stats"] = stale.model_dump(mode="json")
        else:
            new_stats, point = apply_sample(
                stats, sample.in_octets, sample.out_octets, now,
                connection.link_speed, bool(connection.flip_traffic_direction),
                self.config.link_stale_after_seconds,
            )
            changes["link_stats"] = new_stats.model_dump(mode="json")
            if point is not None:
                self.history.push(connection.id, point)
                accepted = True
            if sample.index_resolved:
                changes["monitor_snmp_index"] = sample.snmp_index

        if not changes:
            return accepted
        try:
            await self.storage.update_connection(
                connection.id, changes,
                expected={"monitor_interface": connection.monitor_interface,
                          "source_port": connection.source_port,
                          "target_port": connection.target_port},
            )
        except NotFound:
            self.history.forget(connection.id)
        return accepted

    # -- latency -------------------------------------------------------------

    def latency_history(self, device_id: str) -> List[LatencyPoint]:
        return self.latency.get(device_id)

    async def run_latency_cycle(self) -> int:
        devices = [d for d in await self.storage.get_all_devices()
                   if d.latency_monitoring and d.ip_address]
        self.latency.prune(d.id for d in devices)
        if not devices:
            return 0

        async def worker(device: Device) -> bool:
            try:
                point = await self.prober.sample_latency(
                    device.ip_address,
                    count=self.config.latency_probe_count,
                    timeout=self.config.latency_timeout_seconds,
                    now=self._now(),
                )
            except ValidationError as exc:
                logger.warning("[latency] Skipping %s: %s", device.name, exc)
                return False
            self.latency.push(device.id, point)
            if point.received == 0:
                logger.info("[latency] %s (%s): 100%% loss", device.name, device.ip_address)
            return True

        results = await run_bounded(devices, self.config.latency_concurrency, worker, label="latency")
        sampled = sum(1 for ok in results if ok)
        logger.debug("[latency] Sampled %d of %d devices", sampled, len(devices))
        return sampled

    # -- range scan ----------------------------------------------------------

    async def scan(self, cidr: str, credential_profile_ids: Sequence[str] = (),
                   probe_types: Sequence[str] = ("mikrotik", "snmp", "ping")):
        scanner = Scanner(self.prober, self.storage, self.config)
        return await scanner.scan(cidr, credential_profile_ids, probe_types)
