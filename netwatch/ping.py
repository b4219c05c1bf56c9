"""
ICMP checks via the system `ping` binary.

- `ping()`: one echo, used for reachability (ping-only devices, the
  fallback before declaring a device offline, range scans)
- `ping_series()`: a burst of echoes in one process, used for latency
  sampling; returns every round-trip time it saw

The address is validated first and the command is built as an argument
vector for `asyncio.create_subprocess_exec`, so no shell ever sees it.
"""

import asyncio
import ipaddress
import logging
import platform
import re
from dataclasses import dataclass, field
from typing import List, Optional

from netwatch.exceptions import ValidationError
from netwatch.scheduler import CancelToken

logger = logging.getLogger(__name__)

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)
_RTT_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)

# Smallest echo spacing iputils allows without root
SERIES_SPACING_SECONDS = 0.2


@dataclass
class PingResult:
    alive: bool
    rtt_ms: Optional[float] = None


@dataclass
class PingSeries:
    sent: int
    rtts_ms: List[float] = field(default_factory=list)

    @property
    def received(self) -> int:
        return len(self.rtts_ms)


def validate_address(address: str) -> str:
    """Return the normalized address, or raise ValidationError."""
    candidate = (address or "").strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        pass
    if _HOSTNAME_RE.match(candidate):
        return candidate
    raise ValidationError(f"Invalid address: {address!r}")


def build_command(address: str, timeout: float, system: Optional[str] = None, count: int = 1) -> List[str]:
    """`count` echo requests with a bounded reply wait, per-platform flags."""
    system = system or platform.system()
    count = str(max(1, int(count)))
    if system == "Windows":
        return ["ping", "-n", count, "-w", str(max(1, int(timeout * 1000))), address]
    if system == "Darwin":
        # macOS -W is in milliseconds
        return ["ping", "-c", count, "-W", str(max(1, int(timeout * 1000))), address]
    cmd = ["ping", "-c", count, "-W", str(max(1, int(round(timeout))))]
    if count != "1":
        cmd += ["-i", str(SERIES_SPACING_SECONDS)]
    return cmd + [address]


def parse_rtt(output: str) -> Optional[float]:
    match = _RTT_RE.search(output)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def parse_rtts(output: str, limit: Optional[int] = None) -> List[float]:
    """Every reply time in `output`, in order; duplicates past `limit` dropped."""
    rtts = []
    for raw in _RTT_RE.findall(output):
        try:
            rtts.append(float(raw))
        except ValueError:
            continue
    return rtts[:limit] if limit is not None else rtts


async def _run(argv: List[str], target: str) -> Optional[asyncio.subprocess.Process]:
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning("Cannot run ping for %s: %s", target, exc)
        return None


async def _communicate(proc: asyncio.subprocess.Process, deadline: float) -> Optional[bytes]:
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=deadline)
    except asyncio.TimeoutError:
        _kill(proc)
        return None
    except asyncio.CancelledError:
        _kill(proc)
        raise
    return stdout


async def ping(
    address: str,
    timeout: float = 2.0,
    token: Optional[CancelToken] = None,
) -> PingResult:
    """
    Ping `address` once.

    Raises ValidationError for a malformed address; every other failure
    (unreachable, timeout, missing binary) is just `alive=False`.
    """
    target = validate_address(address)
    if token is not None:
        token.raise_if_cancelled()

    proc = await _run(build_command(target, timeout), target)
    if proc is None:
        return PingResult(alive=False)
    stdout = await _communicate(proc, timeout + 1)
    if stdout is None or proc.returncode != 0:
        return PingResult(alive=False)
    return PingResult(alive=True, rtt_ms=parse_rtt(stdout.decode(errors="replace")))


async def ping_series(
    address: str,
    count: int = 20,
    timeout: float = 1.0,
) -> PingSeries:
    """
    Send `count` echoes to `address` in one ping process.

    Unanswered echoes are simply missing from `rtts_ms`; a missing binary
    or a hung process counts as every echo lost.
    """
    target = validate_address(address)
    count = max(1, int(count))
    deadline = count * (SERIES_SPACING_SECONDS + timeout) + 2

    proc = await _run(build_command(target, timeout, count=count), target)
    if proc is None:
        return PingSeries(sent=count)
    stdout = await _communicate(proc, deadline)
    if stdout is None:
        logger.warning("Ping series to %s did not finish in %.0fs", target, deadline)
        return PingSeries(sent=count)
    # ping exits non-zero when nothing answered; the output still says so
    return PingSeries(sent=count, rtts_ms=parse_rtts(stdout.decode(errors="replace"), limit=count))


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
