"""
Device status state machine.

Pure functions only: given the current status fields and one probe outcome,
compute the next status fields. The engine persists the result and decides
on events; nothing in here touches the network, the database or the clock.

    SUCCESS    protocol probe returned full data      -> online
    DEGRADED   protocol probe returned partial data   -> warning
    PING_ONLY  protocol probe failed, ping answered   -> stale   (at threshold)
    FAILED     protocol probe and ping both failed    -> offline (at threshold)
    UNREACHABLE  pre-cycle ping re-verification failed -> offline (immediately)

Below the offline threshold a failure only bumps `failure_count` and the
current status is held (hysteresis).
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

ONLINE = "online"
WARNING = "warning"
STALE = "stale"
OFFLINE = "offline"
UNKNOWN = "unknown"

STATUSES = (ONLINE, WARNING, STALE, OFFLINE, UNKNOWN)
REACHABLE = (ONLINE, WARNING, STALE)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    PING_ONLY = "ping_only"
    FAILED = "failed"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class StatusUpdate:
    """Next values for the engine-owned status fields."""

    old_status: str
    status: str
    failure_count: int
    last_seen: Optional[datetime]

    @property
    def changed(self) -> bool:
        return self.status != self.old_status


def effective_threshold(device_threshold: Optional[int], default_threshold: int) -> int:
    """Per-device override when set, never below one failure."""
    value = device_threshold if device_threshold is not None else default_threshold
    return max(1, int(value))


def apply_outcome(
    status: Optional[str],
    failure_count: Optional[int],
    last_seen: Optional[datetime],
    outcome: OutcomeKind,
    threshold: int,
    now: datetime,
) -> StatusUpdate:
    """Compute the next status fields for one probe outcome."""
    old = status or UNKNOWN
    failures = failure_count or 0

    if outcome is OutcomeKind.SUCCESS:
        return StatusUpdate(old, ONLINE, 0, now)
    if outcome is OutcomeKind.DEGRADED:
        return StatusUpdate(old, WARNING, 0, now)
    if outcome is OutcomeKind.UNREACHABLE:
        return StatusUpdate(old, OFFLINE, max(failures, threshold), last_seen)

    failures += 1
    if failures < threshold:
        return StatusUpdate(old, old, failures, last_seen)
    if outcome is OutcomeKind.PING_ONLY:
        return StatusUpdate(old, STALE, failures, last_seen)
    return StatusUpdate(old, OFFLINE, failures, last_seen)


def reaches_threshold(failure_count: Optional[int], threshold: int) -> bool:
    """Would one more failure cross the offline threshold?"""
    return (failure_count or 0) + 1 >= threshold


def needs_ping_verification(
    status: Optional[str],
    last_seen: Optional[datetime],
    polling_interval_seconds: float,
    now: datetime,
) -> bool:
    """
    A device that claims to be reachable but has not been seen for two
    polling intervals gets re-verified by ping before the cycle.
    """
    if status not in REACHABLE or last_seen is None:
        return False
    return now - last_seen > timedelta(seconds=2 * polling_interval_seconds)


def should_notify(old_status: str, new_status: str) -> bool:
    """
    Notification rules:

    - no change, no notification;
    - entering stale never notifies (the device still answers ping);
    - leaving stale back to online/warning does not notify either, since
      the matching "went stale" was never announced;
    - stale -> offline does notify.
    """
    if old_status == new_status:
        return False
    if new_status == STALE:
        return False
    if old_status == STALE and new_status in (ONLINE, WARNING):
        return False
    return True


def severity_for(status: str) -> str:
    """Log severity for a transition into `status`."""
    if status == OFFLINE:
        return "error"
    if status in (WARNING, STALE):
        return "warning"
    return "info"
