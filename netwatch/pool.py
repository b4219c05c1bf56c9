"""
Connection pool for RouterOS API sessions.

The API handshake (TCP + login) is the most expensive part of a router probe,
so when pooling is enabled one authenticated session per
(address, api_port, username) is kept open between cycles.

Rules:

- A pooled session is never used by two probes at once. `in_use` is claimed
  without any `await` between the check and the claim, which is all the
  locking a single-threaded event loop needs.
- A caller that finds the session busy polls for a bounded time, then gets a
  temporary unpooled session instead of waiting indefinitely.
- An idle pooled session is health-checked with a cheap command before reuse.
- Only connection loss (reset, refused, timeout, closed socket) marks a
  session disconnected; a failed command does not.
- After `max_error_count` consecutive connect failures the key is in
  cooldown and acquisitions fail fast.
- A background sweep closes sessions idle longer than `max_idle_seconds`.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from netwatch.exceptions import ConnectError, ProbeError, is_connection_loss
from netwatch.routeros import RouterOsSession
from netwatch.scheduler import CancelToken
from netwatch.schemas import Credentials

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, int, str]
SessionFactory = Callable[[str, int, str, str], RouterOsSession]

LIVENESS_COMMAND = "/system/identity/print"


@dataclass
class PooledConnection:
    """Bookkeeping for one pooled session."""

    session: RouterOsSession
    address: str
    port: int
    username: str
    last_used: float
    last_error: float = 0.0
    error_count: int = 0
    is_connected: bool = False
    is_connecting: bool = False
    in_use: bool = False

    @property
    def busy(self) -> bool:
        return self.in_use or self.is_connecting


@dataclass
class Lease:
    """A session handed out by `acquire`; give it back with `release`."""

    session: RouterOsSession
    from_pool: bool
    key: PoolKey
    released: bool = field(default=False, repr=False)


def _default_factory(address: str, port: int, username: str, password: str) -> RouterOsSession:
    return RouterOsSession(address, port=port, username=username, password=password)


class ConnectionPool:
    def __init__(
        self,
        enabled: bool = False,
        max_idle_seconds: float = 120.0,
        sweep_interval_seconds: float = 30.0,
        max_error_count: int = 3,
        cooldown_seconds: float = 60.0,
        busy_wait_seconds: float = 2.0,
        busy_poll_seconds: float = 0.1,
        liveness_timeout_seconds: float = 3.0,
        session_factory: SessionFactory = _default_factory,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._enabled = enabled
        self.max_idle_seconds = max_idle_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.max_error_count = max_error_count
        self.cooldown_seconds = cooldown_seconds
        self.busy_wait_seconds = busy_wait_seconds
        self.busy_poll_seconds = busy_poll_seconds
        self.liveness_timeout_seconds = liveness_timeout_seconds
        self._factory = session_factory
        self._clock = clock

        self._entries: Dict[PoolKey, PooledConnection] = {}
        self._sweeper: Optional[asyncio.Task] = None

    # -- configuration ------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        was_enabled = self._enabled
        self._enabled = enabled
        if was_enabled and not enabled:
            logger.info("[pool] Persistent connections disabled, closing all connections")
            self.close_all()
        elif not was_enabled and enabled:
            logger.info("[pool] Persistent connections enabled")

    @staticmethod
    def key_for(address: str, credentials: Credentials) -> PoolKey:
        return (address, credentials.api_port, credentials.username)

    def entry(self, address: str, credentials: Credentials) -> Optional[PooledConnection]:
        return self._entries.get(self.key_for(address, credentials))

    # -- acquire / release ---------------------------------------------------

    async def _open(self, address: str, credentials: Credentials, timeout: float,
                    token: Optional[CancelToken]) -> RouterOsSession:
        session = self._factory(address, credentials.api_port, credentials.username, credentials.password)
        await session.connect(timeout=timeout, token=token)
        return session

    def _in_cooldown(self, pooled: PooledConnection, now: float) -> bool:
        return (
            pooled.error_count >= self.max_error_count
            and now - pooled.last_error < self.cooldown_seconds
        )

    async def acquire(
        self,
        address: str,
        credentials: Credentials,
        timeout: float = 6.0,
        token: Optional[CancelToken] = None,
    ) -> Lease:
        """Hand out a session for `address`, pooled when possible."""
        key = self.key_for(address, credentials)

        if not self._enabled:
            session = await self._open(address, credentials, timeout, token)
            return Lease(session, from_pool=False, key=key)

        pooled = self._entries.get(key)
        previous_errors = 0
        previous_error_at = 0.0

        if pooled is not None:
            if self._in_cooldown(pooled, self._clock()):
                raise ConnectError(
                    f"Connection to {address} in cooldown after {pooled.error_count} errors"
                )

            if pooled.busy:
                waited = 0.0
                while pooled.busy and waited < self.busy_wait_seconds:
                    if token is not None:
                        token.raise_if_cancelled()
                    await asyncio.sleep(self.busy_poll_seconds)
                    waited += self.busy_poll_seconds
                # The entry may have been swept or replaced while we slept
                current = self._entries.get(key)
                if current is None or current.busy:
                    logger.info("[pool] Connection to %s in use, creating temporary connection", address)
                    session = await self._open(address, credentials, timeout, token)
                    return Lease(session, from_pool=False, key=key)
                pooled = current

            # Claim before the first await so nobody else can take it
            pooled.in_use = True
            pooled.last_used = self._clock()

            if pooled.is_connected and pooled.session.is_connected:
                try:
                    await pooled.session.command(
                        LIVENESS_COMMAND, timeout=self.liveness_timeout_seconds, token=token
                    )
                    return Lease(pooled.session, from_pool=True, key=key)
                except ProbeError as exc:
                    logger.info("[pool] Connection to %s stale (%s), reconnecting", address, exc)
                except BaseException:
                    pooled.in_use = False
                    raise

            pooled.is_connected = False
            pooled.session.abort("replaced")
            previous_errors = pooled.error_count
            previous_error_at = pooled.last_error

        session = self._factory(address, credentials.api_port, credentials.username, credentials.password)
        fresh = PooledConnection(
            session=session,
            address=address,
            port=credentials.api_port,
            username=credentials.username,
            last_used=self._clock(),
            last_error=previous_error_at,
            error_count=previous_errors,
            is_connecting=True,
            in_use=True,
        )
        self._entries[key] = fresh

        try:
            logger.debug("[pool] Connecting to %s:%s", address, credentials.api_port)
            await session.connect(timeout=timeout, token=token)
        except BaseException as exc:
            fresh.is_connecting = False
            fresh.is_connected = False
            fresh.in_use = False
            if isinstance(exc, ProbeError):
                fresh.error_count += 1
                fresh.last_error = self._clock()
                logger.warning("[pool] Failed to connect to %s:%s: %s", address, credentials.api_port, exc)
                if fresh.error_count >= self.max_error_count:
                    logger.warning("[pool] Too many errors for %s, cooling down for %.0fs",
                                   address, self.cooldown_seconds)
            raise

        fresh.is_connecting = False
        fresh.is_connected = True
        fresh.error_count = 0
        logger.info("[pool] Connected to %s:%s (persistent)", address, credentials.api_port)
        return Lease(session, from_pool=True, key=key)

    def release(self, lease: Lease, was_successful: bool, error: Optional[BaseException] = None) -> None:
        """
        Return a lease.

        Must stay synchronous: it runs from cancel-token callbacks and from
        `finally` blocks of cancelled probes. Safe to call more than once.
        """
        if lease.released:
            return
        lease.released = True

        if not lease.from_pool or not self._enabled:
            lease.session.abort("released")
            return

        pooled = self._entries.get(lease.key)
        if pooled is None or pooled.session is not lease.session:
            lease.session.abort("orphaned")
            return

        pooled.in_use = False
        pooled.last_used = self._clock()

        lost = (error is not None and is_connection_loss(error)) or not lease.session.is_connected
        if lost:
            pooled.is_connected = False
            pooled.error_count += 1
            pooled.last_error = self._clock()
            lease.session.abort("connection lost")
            logger.warning("[pool] Connection to %s lost: %s", pooled.address, error)
        elif was_successful:
            pooled.error_count = 0

    @asynccontextmanager
    async def session(
        self,
        address: str,
        credentials: Credentials,
        timeout: float = 6.0,
        token: Optional[CancelToken] = None,
    ) -> AsyncIterator[RouterOsSession]:
        """`async with pool.session(...) as api:` acquires, then always releases."""
        lease = await self.acquire(address, credentials, timeout=timeout, token=token)

        def _release_on_cancel() -> None:
            self.release(lease, False, ConnectError("cancelled"))

        if token is not None:
            token.on_cancel(_release_on_cancel)
        try:
            yield lease.session
        except BaseException as exc:
            if isinstance(exc, asyncio.CancelledError):
                self.release(lease, False, ConnectError("cancelled"))
            else:
                self.release(lease, False, exc)
            raise
        else:
            self.release(lease, True)
        finally:
            if token is not None:
                token.remove_callback(_release_on_cancel)

    # -- maintenance ---------------------------------------------------------

    def sweep(self) -> int:
        """Close sessions idle past the threshold; return how many were removed."""
        now = self._clock()
        stale = [
            key for key, pooled in self._entries.items()
            if not pooled.busy
            and now - pooled.last_used > self.max_idle_seconds
            and not self._in_cooldown(pooled, now)
        ]
        for key in stale:
            pooled = self._entries.pop(key)
            logger.info("[pool] Closing idle connection to %s", pooled.address)
            pooled.session.abort("idle")
        return len(stale)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="pool-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.close_all()

    def close_all(self) -> None:
        if self._entries:
            logger.info("[pool] Closing all %d connections", len(self._entries))
        for pooled in self._entries.values():
            pooled.is_connected = False
            pooled.session.abort("pool closed")
        self._entries.clear()

    def stats(self) -> Dict[str, object]:
        return {
            "enabled": self._enabled,
            "total_connections": len(self._entries),
            "active_connections": sum(1 for p in self._entries.values() if p.is_connected),
            "in_use": sum(1 for p in self._entries.values() if p.in_use),
        }
