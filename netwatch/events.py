"""
Status-change events.

The engine publishes a `StatusChangeEvent` for every notifiable transition.
Delivery (mail, webhook, on-duty routing) belongs to subscribers; the bus
only makes sure a slow or failing subscriber can never stall a probe cycle:

- async subscribers are scheduled as background tasks and not awaited
- sync subscribers are called inline and must return quickly
- subscriber errors are logged, never raised back into the engine

Usage:

    bus = EventBus()
    bus.subscribe(send_webhook)      # async def send_webhook(event): ...
    bus.publish(StatusChangeEvent(...))
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChangeEvent:
    device_id: str
    old_status: str
    new_status: str
    timestamp: datetime
    device_name: str = ""
    use_on_duty: bool = False

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "timestamp": self.timestamp.isoformat(),
            "use_on_duty": self.use_on_duty,
        }


Subscriber = Callable[[StatusChangeEvent], Any]


@dataclass
class EventBus:
    _subscribers: List[Subscriber] = field(default_factory=list)
    _tasks: Set[asyncio.Task] = field(default_factory=set)

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    def publish(self, event: StatusChangeEvent) -> None:
        """Fan out `event`; returns immediately."""
        for callback in list(self._subscribers):
            try:
                result = callback(event)
            except Exception:
                logger.exception("Status-change subscriber %r failed", callback)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Status-change subscriber failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight async deliveries (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
