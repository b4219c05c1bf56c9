"""
SNMP client abstraction.

Thin async wrapper around pysnmp's v3arch asyncio API:

- `build_auth()` turns `Credentials` into CommunityData (v1/v2c) or
  UsmUserData (v3)
- `SnmpClient.get()` fetches scalar OIDs
- `SnmpClient.walk()` walks a table one row at a time (GETBULK with
  max-repetitions 1 on v2c/v3, GETNEXT on v1) for broad device compatibility

Errors are mapped onto the probe taxonomy: no response -> ProbeTimeout,
USM rejections -> AuthError, other transport problems -> ConnectError,
error-status replies -> ProtocolError. Running off the end of the MIB view
(endOfMibView, or noSuchName on v1) is a normal end of walk.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    UsmUserData,
    bulk_cmd,
    get_cmd,
    next_cmd,
    usmAesCfb128Protocol,
    usmDESPrivProtocol,
    usmHMACMD5AuthProtocol,
    usmHMACSHAAuthProtocol,
)
from pysnmp.proto import errind
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from netwatch.exceptions import AuthError, ConnectError, ProbeTimeout, ProtocolError
from netwatch.scheduler import CancelToken
from netwatch.schemas import Credentials

logger = logging.getLogger(__name__)

AuthData = Union[CommunityData, UsmUserData]
VarBind = Tuple[str, Any]

# SNMPv1 error-status 2: the v1 way of saying "end of MIB" on GETNEXT
NO_SUCH_NAME = 2

# ErrorIndication classes that mean "the agent rejected our USM credentials"
_AUTH_INDICATIONS = {
    "UnknownUserName",
    "UnknownSecurityName",
    "WrongDigest",
    "WrongDigests",
    "DecryptionError",
    "UnsupportedSecurityLevel",
    "AuthenticationFailure",
    "AuthenticationError",
}

_AUTH_PROTOCOLS = {
    "MD5": usmHMACMD5AuthProtocol,
    "SHA": usmHMACSHAAuthProtocol,
}

_PRIV_PROTOCOLS = {
    "DES": usmDESPrivProtocol,
    "AES": usmAesCfb128Protocol,
}


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def is_missing(value: Any) -> bool:
    """True for noSuchObject / noSuchInstance / endOfMibView placeholders."""
    return isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView))


def as_int(value: Any) -> Optional[int]:
    if value is None or is_missing(value):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def as_text(value: Any) -> Optional[str]:
    if value is None or is_missing(value):
        return None
    if hasattr(value, "asOctets"):
        return value.asOctets().decode("utf-8", errors="replace").strip("\x00").strip()
    return str(value)


def as_mac(value: Any) -> Optional[str]:
    """Format an ifPhysAddress OctetString as aa:bb:cc:dd:ee:ff."""
    if value is None or is_missing(value) or not hasattr(value, "asOctets"):
        return None
    raw = value.asOctets()
    if not raw:
        return None
    return ":".join(f"{b:02x}" for b in raw)


def oid_suffix(oid: str, base: str) -> str:
    """'1.3.6.1.2.1.2.2.1.2.7', '1.3.6.1.2.1.2.2.1.2' -> '7'."""
    return oid[len(base) + 1:] if oid.startswith(base + ".") else ""


def build_auth(credentials: Credentials) -> AuthData:
    """CommunityData for v1/v2c, UsmUserData (authPriv) for v3."""
    if credentials.snmp_version == "3":
        return UsmUserData(
            credentials.snmp_username,
            authKey=credentials.snmp_auth_key,
            privKey=credentials.snmp_priv_key,
            authProtocol=_AUTH_PROTOCOLS[credentials.snmp_auth_protocol],
            privProtocol=_PRIV_PROTOCOLS[credentials.snmp_priv_protocol],
        )
    mp_model = 0 if credentials.snmp_version == "1" else 1
    return CommunityData(credentials.snmp_community, mpModel=mp_model)


def _raise_for_indication(host: str, error_indication: Any) -> None:
    if isinstance(error_indication, errind.RequestTimedOut):
        raise ProbeTimeout(f"No SNMP response from {host}")
    if type(error_indication).__name__ in _AUTH_INDICATIONS:
        raise AuthError(f"SNMP authentication failed for {host}: {error_indication}")
    raise ConnectError(f"SNMP error for {host}: {error_indication}")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SnmpClient:
    """
    Shared SNMP engine plus request helpers.

    One client (one SnmpEngine) serves every device; per-request state lives
    in the transport target and auth data.
    """

    def __init__(self, timeout: float = 2.0, retries: int = 1, max_walk_rows: int = 5000):
        self.timeout = timeout
        self.retries = retries
        self.max_walk_rows = max_walk_rows
        self._engine: Optional[SnmpEngine] = None

    @property
    def engine(self) -> SnmpEngine:
        # Created lazily: SnmpEngine() loads MIB machinery and is not free
        if self._engine is None:
            self._engine = SnmpEngine()
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            try:
                self._engine.close_dispatcher()
            except Exception:
                logger.debug("Error closing SNMP dispatcher", exc_info=True)
            self._engine = None

    async def _target(self, host: str, port: int, timeout: Optional[float]) -> UdpTransportTarget:
        try:
            return await UdpTransportTarget.create(
                (host, port), timeout=timeout or self.timeout, retries=self.retries
            )
        except Exception as exc:
            raise ConnectError(f"Cannot resolve SNMP target {host}: {exc}") from exc

    def _deadline(self, timeout: Optional[float]) -> float:
        return (timeout or self.timeout) * (self.retries + 1) + 1.0

    async def get(
        self,
        host: str,
        credentials: Credentials,
        oids: Sequence[str],
        timeout: Optional[float] = None,
        token: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """
        GET several scalar OIDs in one request.

        Returns {oid: value}; OIDs the agent does not have map to None.
        """
        if token is not None:
            token.raise_if_cancelled()
        target = await self._target(host, credentials.snmp_port, timeout)
        try:
            error_indication, error_status, error_index, var_binds = await asyncio.wait_for(
                get_cmd(
                    self.engine,
                    build_auth(credentials),
                    target,
                    ContextData(),
                    *[ObjectType(ObjectIdentity(oid)) for oid in oids],
                ),
                timeout=self._deadline(timeout),
            )
        except asyncio.TimeoutError:
            raise ProbeTimeout(f"SNMP GET to {host} timed out") from None

        if error_indication:
            _raise_for_indication(host, error_indication)
        if error_status:
            if int(error_status) == NO_SUCH_NAME and credentials.snmp_version == "1":
                # v1 fails the whole PDU for one unknown OID
                return {oid: None for oid in oids}
            raise ProtocolError(
                f"SNMP GET to {host} failed: {error_status.prettyPrint()} at index {error_index}"
            )

        values: Dict[str, Any] = {oid: None for oid in oids}
        for oid, (name, value) in zip(oids, var_binds):
            values[oid] = None if is_missing(value) else value
        return values

    async def _next(self, host: str, credentials: Credentials, target: UdpTransportTarget,
                    oid: str, timeout: Optional[float]):
        if credentials.snmp_version == "1":
            request = next_cmd(
                self.engine, build_auth(credentials), target, ContextData(),
                ObjectType(ObjectIdentity(oid)),
                lexicographicMode=False,
            )
        else:
            request = bulk_cmd(
                self.engine, build_auth(credentials), target, ContextData(),
                0, 1,
                ObjectType(ObjectIdentity(oid)),
                lexicographicMode=False,
            )
        try:
            return await asyncio.wait_for(request, timeout=self._deadline(timeout))
        except asyncio.TimeoutError:
            raise ProbeTimeout(f"SNMP walk on {host} timed out") from None

    async def walk(
        self,
        host: str,
        credentials: Credentials,
        base_oid: str,
        timeout: Optional[float] = None,
        token: Optional[CancelToken] = None,
    ) -> List[VarBind]:
        """
        Walk every OID under `base_oid`, one row per request.

        Ends cleanly on endOfMibView, on v1 noSuchName, or when the agent
        returns an OID outside the table.
        """
        target = await self._target(host, credentials.snmp_port, timeout)
        rows: List[VarBind] = []
        current = base_oid
        prefix = base_oid + "."

        while len(rows) < self.max_walk_rows:
            if token is not None:
                token.raise_if_cancelled()

            error_indication, error_status, error_index, var_binds = await self._next(
                host, credentials, target, current, timeout
            )

            if error_indication:
                _raise_for_indication(host, error_indication)
            if error_status:
                if int(error_status) == NO_SUCH_NAME:
                    break
                raise ProtocolError(f"SNMP walk on {host} failed: {error_status.prettyPrint()}")
            if not var_binds:
                break

            name, value = var_binds[0]
            oid = str(name)
            if isinstance(value, EndOfMibView) or not oid.startswith(prefix):
                break
            if oid == current:
                raise ProtocolError(f"SNMP agent {host} returned a non-increasing OID {oid}")

            rows.append((oid, value))
            current = oid
        else:
            logger.warning("SNMP walk of %s on %s truncated at %d rows", base_oid, host, self.max_walk_rows)

        return rows

    async def walk_column(
        self,
        host: str,
        credentials: Credentials,
        base_oid: str,
        timeout: Optional[float] = None,
        token: Optional[CancelToken] = None,
    ) -> Dict[str, Any]:
        """Walk a table column and key the values by OID suffix (usually ifIndex)."""
        rows = await self.walk(host, credentials, base_oid, timeout=timeout, token=token)
        return {oid_suffix(oid, base_oid): value for oid, value in rows}
