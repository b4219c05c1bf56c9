"""
Network range scanner.

Expands a CIDR block and checks every host on the bounded-concurrency queue:

1. ping (when requested) to learn whether anything answers at all
2. RouterOS API login with each candidate credential profile, on each
   configured API port
3. SNMP system group with each candidate credential profile

The first protocol that identifies a host wins. Hosts that neither answer
ping nor identify themselves are left out of the result.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from netwatch.adapters import Prober
from netwatch.config import Settings
from netwatch.exceptions import ProbeError, ValidationError
from netwatch.models import CredentialProfile
from netwatch.ping import ping
from netwatch.scheduler import run_bounded, run_with_timeout
from netwatch.schemas import Credentials
from netwatch.storage import Storage

logger = logging.getLogger(__name__)

PROBE_TYPES = ("mikrotik", "snmp", "ping")


@dataclass
class ScanHit:
    address: str
    alive: bool
    rtt_ms: Optional[float] = None
    probe_type: Optional[str] = None
    device_type: Optional[str] = None
    identity: Optional[str] = None
    description: Optional[str] = None
    credential_profile_id: Optional[str] = None


def expand_cidr(cidr: str, max_hosts: int) -> List[str]:
    """Usable host addresses of `cidr`; refuses ranges above `max_hosts`."""
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as exc:
        raise ValidationError(f"Invalid CIDR {cidr!r}: {exc}") from exc
    size = network.num_addresses if network.num_addresses <= 2 else network.num_addresses - 2
    if size > max_hosts:
        raise ValidationError(f"{cidr} has {size} hosts, more than the limit of {max_hosts}")
    if network.num_addresses == 1:
        return [str(network.network_address)]
    return [str(host) for host in network.hosts()]


class Scanner:
    def __init__(self, prober: Prober, storage: Storage, config: Settings):
        self.prober = prober
        self.storage = storage
        self.config = config

    async def scan(
        self,
        cidr: str,
        credential_profile_ids: Sequence[str] = (),
        probe_types: Sequence[str] = PROBE_TYPES,
    ) -> List[ScanHit]:
        unknown = set(probe_types) - set(PROBE_TYPES)
        if unknown:
            raise ValidationError(f"Unknown probe types: {sorted(unknown)}")
        hosts = expand_cidr(cidr, self.config.scan_max_hosts)
        profiles = [await self.storage.get_credential_profile(pid) for pid in credential_profile_ids]

        logger.info("[scan] Scanning %s (%d hosts, probes: %s, %d credential profiles)",
                    cidr, len(hosts), ", ".join(probe_types), len(profiles))

        async def worker(address: str) -> Optional[ScanHit]:
            return await self.scan_host(address, profiles, probe_types)

        results = await run_bounded(hosts, self.config.scan_concurrency, worker, label="scan")
        hits = [hit for hit in results if hit is not None]
        hits.sort(key=lambda h: ipaddress.ip_address(h.address))
        logger.info("[scan] %s: %d of %d hosts responded", cidr, len(hits), len(hosts))
        return hits

    async def scan_host(
        self,
        address: str,
        profiles: Sequence[CredentialProfile],
        probe_types: Sequence[str],
    ) -> Optional[ScanHit]:
        hit = ScanHit(address=address, alive=False)

        if "ping" in probe_types:
            result = await ping(address, timeout=self.config.ping_timeout_seconds)
            hit.alive = result.alive
            hit.rtt_ms = result.rtt_ms
            if result.alive:
                hit.probe_type = "ping"
                hit.device_type = "ping"

        if "mikrotik" in probe_types and await self._try_router(hit, profiles):
            return hit
        if "snmp" in probe_types and await self._try_snmp(hit, profiles):
            return hit
        return hit if hit.alive else None

    async def _try_router(self, hit: ScanHit, profiles: Sequence[CredentialProfile]) -> bool:
        timeout = self.config.scan_timeout_seconds
        for profile in profiles:
            if profile.type not in ("mikrotik", "router"):
                continue
            base = Credentials.model_validate(profile.credentials or {})
            for port in self.config.scan_ports:
                credentials = base.model_copy(update={"api_port": port})
                try:
                    identity = await run_with_timeout(
                        lambda token: self.prober.router_identity(hit.address, credentials, timeout, token),
                        timeout,
                        label=f"scan {hit.address}:{port}",
                    )
                except ProbeError as exc:
                    logger.debug("[scan] %s:%s not a router for profile %s: %s",
                                 hit.address, port, profile.name, exc)
                    continue
                hit.alive = True
                hit.probe_type = "mikrotik"
                hit.device_type = "mikrotik_router"
                hit.identity = identity
                hit.credential_profile_id = profile.id
                return True
        return False

    async def _try_snmp(self, hit: ScanHit, profiles: Sequence[CredentialProfile]) -> bool:
        timeout = self.config.scan_timeout_seconds
        candidates = [p for p in profiles if p.type == "snmp"]
        for profile in candidates:
            credentials = Credentials.model_validate(profile.credentials or {})
            try:
                system = await run_with_timeout(
                    lambda token: self.prober.snmp_system(hit.address, credentials, timeout, token),
                    timeout * 2,
                    label=f"scan snmp {hit.address}",
                )
            except ProbeError as exc:
                logger.debug("[scan] %s no SNMP answer for profile %s: %s", hit.address, profile.name, exc)
                continue
            hit.alive = True
            hit.probe_type = "snmp"
            hit.device_type = "generic_snmp"
            hit.identity = system["name"]
            hit.description = system["descr"]
            hit.credential_profile_id = profile.id
            return True
        return False
