"""
Scheduling primitives.

- CancelToken:       explicit cancellation signal handed to every I/O call
- run_with_timeout:  race a unit of work against a deadline, cancelling it
- run_bounded:       bounded-concurrency work queue
- PacedLoop:         self-pacing periodic driver (cycles never overlap)

Everything here is single-threaded asyncio; "concurrency" means overlapping
network waits, not parallel CPU work.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from netwatch.exceptions import ProbeTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class CancelToken:
    """
    Cooperative cancellation signal.

    I/O helpers call `raise_if_cancelled()` at each suspension point and the
    connection pool registers callbacks so a lease is released the moment a
    deadline fires.
    """

    def __init__(self) -> None:
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._reason is not None:
            return
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run `callback` on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise ProbeTimeout(self._reason)


async def run_with_timeout(
    work: Callable[[CancelToken], Awaitable[T]],
    timeout: float,
    label: str = "operation",
) -> T:
    """
    Run `work(token)` with a deadline.

    On expiry the work task is cancelled (so `finally` blocks release pooled
    sessions right away), the token is tripped, and ProbeTimeout is raised.
    """
    token = CancelToken()
    try:
        return await asyncio.wait_for(work(token), timeout=timeout)
    except asyncio.TimeoutError:
        token.cancel(f"{label} timed out after {timeout:g}s")
        raise ProbeTimeout(token.reason) from None


async def run_bounded(
    items: Iterable[T],
    limit: int,
    worker: Callable[[T], Awaitable[R]],
    label: str = "queue",
) -> List[R]:
    """
    Run `worker` over `items` with at most `limit` calls in flight.

    Whenever an active task completes the loop tops the active set back up.
    A worker that raises is logged and contributes no result; it never
    aborts the rest of the batch. Results come back in completion order.
    """
    limit = max(1, int(limit))
    pending = iter(items)
    active = set()
    results: List[R] = []
    exhausted = False

    try:
        while True:
            while not exhausted and len(active) < limit:
                try:
                    item = next(pending)
                except StopIteration:
                    exhausted = True
                    break
                active.add(asyncio.ensure_future(worker(item)))

            if not active:
                break

            done, active = await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    logger.error("[%s] worker failed: %s", label, exc, exc_info=exc)
                    continue
                results.append(task.result())
    finally:
        for task in active:
            task.cancel()
        if active:
            await asyncio.gather(*active, return_exceptions=True)

    return results


def next_delay(interval: float, elapsed: float) -> float:
    """Wait before the next cycle: zero once a cycle has overrun its interval."""
    return max(0.0, interval - elapsed)


class PacedLoop:
    """
    Self-pacing periodic driver.

    Unlike a fixed-rate timer, the next cycle is scheduled only after the
    current one finishes, `next_delay(interval, elapsed)` later. A cycle that
    overruns starts the next one immediately; cycles never overlap.

    `on_cycle(elapsed, delay)` is called after every cycle.
    """

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[object]],
        interval: Callable[[], float],
        clock: Callable[[], float] = time.monotonic,
        on_cycle: Optional[Callable[[float, float], None]] = None,
    ):
        self.name = name
        self._cycle = cycle
        self._interval = interval
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._on_cycle = on_cycle
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    def stop(self) -> None:
        self._stop.set()

    async def wait_stopped(self) -> None:
        self.stop()
        if self._task is not None:
            try:
                await self._task
            finally:
                self._task = None

    async def run(self) -> None:
        logger.info("[%s] loop started", self.name)
        while not self._stop.is_set():
            started = self._clock()
            try:
                await self._cycle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] cycle failed", self.name)
            self.cycles += 1

            elapsed = self._clock() - started
            delay = next_delay(self._interval(), elapsed)
            logger.debug("[%s] cycle %d took %.2fs, next in %.2fs", self.name, self.cycles, elapsed, delay)
            if self._on_cycle is not None:
                self._on_cycle(elapsed, delay)

            if delay == 0:
                logger.warning(
                    "[%s] cycle took %.1fs (interval %.1fs), starting next cycle immediately",
                    self.name, elapsed, self._interval(),
                )
                continue
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("[%s] loop stopped", self.name)
