"""
Error taxonomy for probing.

Adapters raise these internally; the adapter boundary (`adapters.probe`)
turns every one of them into a failed `ProbeResult`. Only `ProbeTimeout`
survives as a flag, because the scheduler retries timed-out probes once.
"""


class ProbeError(Exception):
    """Base class for everything that can go wrong while talking to a device."""


class ConnectError(ProbeError):
    """Network-level failure: refused, reset, unreachable, socket closed."""


class AuthError(ProbeError):
    """The device answered but rejected our credentials."""


class ProtocolError(ProbeError):
    """Malformed, partial or error response from the device."""


class ProbeTimeout(ProbeError):
    """The probe did not finish within its deadline."""


class NotFound(ProbeError):
    """The record disappeared (typically a device deleted mid-cycle)."""


class ValidationError(ProbeError):
    """Input rejected before any I/O, e.g. a malformed address."""


def is_connection_loss(exc: BaseException) -> bool:
    """True when `exc` means the session itself is gone, not just one command."""
    return isinstance(exc, (ConnectError, ProbeTimeout))
