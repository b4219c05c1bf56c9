"""
Asyncio client for the MikroTik RouterOS API (TCP 8728).

Wire format
-----------
A *sentence* is a sequence of length-prefixed *words* terminated by an empty
word. Lengths use a variable-size prefix:

    < 0x80          1 byte
    < 0x4000        2 bytes, high bits 10
    < 0x200000      3 bytes, high bits 110
    < 0x10000000    4 bytes, high bits 1110
    otherwise       0xF0 followed by 4 bytes

Replies start with `!re` (one row), `!done` (end of reply), `!trap` (command
error, followed by `!done`), `!empty` (RouterOS 7.18+, no rows) or `!fatal`
(the router is closing the session).

Every command carries a `.tag` so several commands can be in flight on one
session; a single reader task routes replies to per-command futures. Each
call therefore gets its own result or its own exception; a dropped socket
fails every pending call with ConnectError and marks the session closed.
"""

import asyncio
import hashlib
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from netwatch.exceptions import AuthError, ConnectError, ProbeTimeout, ProtocolError
from netwatch.scheduler import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8728

Sentence = List[str]
Row = Dict[str, str]


class CommandError(ProtocolError):
    """The router answered `!trap` for one command; the session is fine."""


# ---------------------------------------------------------------------------
# Word / sentence codec
# ---------------------------------------------------------------------------


def encode_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def encode_word(word: str) -> bytes:
    data = word.encode("utf-8")
    return encode_length(len(data)) + data


def encode_sentence(words: Iterable[str]) -> bytes:
    return b"".join(encode_word(w) for w in words) + b"\x00"


async def read_length(reader: asyncio.StreamReader) -> int:
    first = (await reader.readexactly(1))[0]
    if first & 0x80 == 0x00:
        return first
    if first & 0xC0 == 0x80:
        rest = await reader.readexactly(1)
        return ((first & 0x3F) << 8) | rest[0]
    if first & 0xE0 == 0xC0:
        rest = await reader.readexactly(2)
        return ((first & 0x1F) << 16) | int.from_bytes(rest, "big")
    if first & 0xF0 == 0xE0:
        rest = await reader.readexactly(3)
        return ((first & 0x0F) << 24) | int.from_bytes(rest, "big")
    if first == 0xF0:
        return int.from_bytes(await reader.readexactly(4), "big")
    raise ProtocolError(f"Invalid RouterOS length prefix 0x{first:02x}")


async def read_sentence(reader: asyncio.StreamReader) -> Sentence:
    words: Sentence = []
    while True:
        length = await read_length(reader)
        if length == 0:
            return words
        raw = await reader.readexactly(length)
        words.append(raw.decode("utf-8", errors="replace"))


def parse_attributes(words: Iterable[str]) -> Tuple[Row, Optional[str]]:
    """Split `=key=value` attribute words; return (attrs, tag)."""
    attrs: Row = {}
    tag = None
    for word in words:
        if word.startswith(".tag="):
            tag = word[5:]
        elif word.startswith("="):
            key, _, value = word[1:].partition("=")
            attrs[key] = value
    return attrs, tag


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class _PendingCommand:
    __slots__ = ("rows", "trap", "future")

    def __init__(self, future: asyncio.Future):
        self.rows: List[Row] = []
        self.trap: Optional[str] = None
        self.future = future


class RouterOsSession:
    """
    One authenticated API session.

    Usage:

        session = RouterOsSession("192.0.2.1", username="admin", password="x")
        await session.connect(timeout=6)
        rows = await session.command("/system/resource/print", timeout=5)
        await session.close()
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        username: str = "admin",
        password: str = "",
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, _PendingCommand] = {}
        self._next_tag = 0
        self._connected = False
        self.close_reason: Optional[str] = None

    def __repr__(self) -> str:
        state = "connected" if self._connected else "closed"
        return f"<RouterOsSession {self.username}@{self.host}:{self.port} {state}>"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -- lifecycle ----------------------------------------------------------

    async def connect(self, timeout: float = 6.0, token: Optional[CancelToken] = None) -> None:
        """Open the TCP connection and log in."""
        if token is not None:
            token.raise_if_cancelled()
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise ProbeTimeout(f"Connect to {self.host}:{self.port} timed out") from None
        except OSError as exc:
            raise ConnectError(f"Cannot connect to {self.host}:{self.port}: {exc}") from exc

        try:
            await asyncio.wait_for(self._login(), timeout=timeout)
        except asyncio.TimeoutError:
            self.abort("login timed out")
            raise ProbeTimeout(f"Login to {self.host} timed out") from None
        except (asyncio.IncompleteReadError, OSError) as exc:
            self.abort(str(exc))
            raise ConnectError(f"Connection to {self.host} lost during login") from exc
        except BaseException:
            self.abort("login failed")
            raise

        self._connected = True
        self.close_reason = None
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _login(self) -> None:
        reply = await self._login_exchange(
            ["/login", f"=name={self.username}", f"=password={self.password}"]
        )
        attrs, _ = parse_attributes(reply[1:])
        if "ret" in attrs:
            # Pre-6.43 MD5 challenge/response
            challenge = bytes.fromhex(attrs["ret"])
            digest = hashlib.md5(b"\x00" + self.password.encode("utf-8") + challenge).hexdigest()
            await self._login_exchange(
                ["/login", f"=name={self.username}", f"=response=00{digest}"]
            )

    async def _login_exchange(self, words: Sentence) -> Sentence:
        self._writer.write(encode_sentence(words))
        await self._writer.drain()
        trap = None
        while True:
            reply = await read_sentence(self._reader)
            if not reply:
                continue
            kind = reply[0]
            if kind == "!trap":
                attrs, _ = parse_attributes(reply[1:])
                trap = attrs.get("message", "login failed")
            elif kind == "!fatal":
                raise ConnectError(" ".join(reply[1:]) or "fatal during login")
            elif kind == "!done":
                if trap is not None:
                    raise AuthError(f"Login to {self.host} rejected: {trap}")
                return reply

    def abort(self, reason: str = "closed") -> None:
        """Close the socket now and fail every pending command."""
        self._connected = False
        if self.close_reason is None:
            self.close_reason = reason
        if self._writer is not None:
            try:
                self._writer.close()
            except Exception:
                logger.debug("Error while closing socket to %s", self.host, exc_info=True)
        self._fail_pending(ConnectError(f"Session to {self.host} closed: {self.close_reason}"))
        if self._reader_task is not None and not self._reader_task.done():
            current = asyncio.current_task()
            if self._reader_task is not current:
                self._reader_task.cancel()

    async def close(self) -> None:
        self.abort("closed by client")
        if self._writer is not None:
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                logger.debug("Socket to %s closed uncleanly", self.host, exc_info=True)
        self._writer = None
        self._reader = None

    # -- commands -----------------------------------------------------------

    async def command(
        self,
        path: str,
        attributes: Optional[Dict[str, str]] = None,
        timeout: float = 6.0,
        token: Optional[CancelToken] = None,
    ) -> List[Row]:
        """
        Run one API command and return its `!re` rows.

        Raises CommandError on `!trap`, ConnectError if the session drops,
        ProbeTimeout if no `!done` arrives in time (the command is then
        cancelled on the router with `/cancel`).
        """
        if token is not None:
            token.raise_if_cancelled()
        if not self._connected:
            raise ConnectError(f"Session to {self.host} is not connected")

        self._next_tag += 1
        tag = str(self._next_tag)
        words = [path] + [f"={k}={v}" for k, v in (attributes or {}).items()] + [f".tag={tag}"]

        pending = _PendingCommand(asyncio.get_running_loop().create_future())
        self._pending[tag] = pending
        try:
            self._writer.write(encode_sentence(words))
            await self._writer.drain()
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout=timeout)
        except asyncio.TimeoutError:
            self._cancel_remote(tag)
            raise ProbeTimeout(f"{path} on {self.host} timed out after {timeout:g}s") from None
        except asyncio.CancelledError:
            self._cancel_remote(tag)
            raise
        except (ConnectionError, OSError) as exc:
            self.abort(str(exc))
            raise ConnectError(f"Write to {self.host} failed: {exc}") from exc
        finally:
            self._pending.pop(tag, None)
            if not pending.future.done():
                pending.future.cancel()

    def _cancel_remote(self, tag: str) -> None:
        if not self._connected or self._writer is None:
            return
        try:
            self._writer.write(encode_sentence(["/cancel", f"=tag={tag}"]))
        except Exception:
            logger.debug("Could not send /cancel to %s", self.host, exc_info=True)

    # -- reader -------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                reply = await read_sentence(self._reader)
                if reply:
                    self._dispatch(reply)
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError:
            self.abort("connection closed by router")
        except (ConnectionError, OSError) as exc:
            self.abort(str(exc) or type(exc).__name__)
        except ProtocolError as exc:
            self.abort(f"protocol error: {exc}")

    def _dispatch(self, reply: Sentence) -> None:
        kind = reply[0]
        attrs, tag = parse_attributes(reply[1:])

        if kind == "!fatal":
            self.abort(" ".join(w for w in reply[1:] if not w.startswith(".tag=")) or "fatal")
            return

        pending = self._pending.get(tag) if tag is not None else None
        if pending is None:
            # Late reply for a cancelled or timed-out command
            return

        if kind == "!re":
            pending.rows.append(attrs)
        elif kind == "!trap":
            pending.trap = attrs.get("message", "command failed")
        elif kind in ("!done", "!empty"):
            if pending.future.done():
                return
            if pending.trap is not None:
                pending.future.set_exception(CommandError(pending.trap))
            else:
                pending.future.set_result(pending.rows)
        else:
            logger.debug("Ignoring unexpected reply %r from %s", kind, self.host)

    def _fail_pending(self, exc: Exception) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(exc)
        self._pending.clear()
