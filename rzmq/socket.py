"""Messages, socket types, options, events and the public socket handle."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from rzmq.errors import ZmqError

# Socket option identifiers.
SNDHWM = 23
RCVHWM = 24
RCVTIMEO = 27
SNDTIMEO = 28
SUBSCRIBE = 6
UNSUBSCRIBE = 7

DEFAULT_MONITOR_CAPACITY = 100

# Monitor event kinds.
ACCEPTED = "accepted"
ACCEPT_FAILED = "accept_failed"
CONNECTED = "connected"
CONNECT_DELAYED = "connect_delayed"
CONNECT_RETRIED = "connect_retried"
CONNECT_FAILED = "connect_failed"

EVENT_KINDS = frozenset(
    {ACCEPTED, ACCEPT_FAILED, CONNECTED, CONNECT_DELAYED, CONNECT_RETRIED, CONNECT_FAILED}
)


class MsgFlags(enum.IntFlag):
    """Per-frame flags."""

    MORE = 1
    COMMAND = 2


@dataclass
class Msg:
    """A single message frame."""

    data: bytes = b""
    flags: MsgFlags = MsgFlags(0)

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        self.flags = MsgFlags(self.flags)

    def is_more(self) -> bool:
        """True when more frames of the same logical message follow."""
        return MsgFlags.MORE in self.flags

    def __len__(self) -> int:
        return len(self.data)


class SocketType(enum.Enum):
    """The messaging pattern of a socket."""

    PUB = "PUB"
    SUB = "SUB"
    REQ = "REQ"
    REP = "REP"
    DEALER = "DEALER"
    ROUTER = "ROUTER"
    PUSH = "PUSH"
    PULL = "PULL"


@dataclass
class SocketOptions:
    """Socket settings; durations are in seconds, ``None`` means unset."""

    sndhwm: int = 1000
    rcvhwm: int = 1000
    sndtimeo: Optional[float] = None
    rcvtimeo: Optional[float] = None
    tcp_nodelay: bool = True
    tcp_keepalive_idle: Optional[float] = None
    tcp_keepalive_interval: Optional[float] = None
    tcp_keepalive_count: Optional[int] = None
    reconnect_ivl: Optional[float] = 0.1
    reconnect_ivl_max: Optional[float] = None


@dataclass(frozen=True)
class SocketEvent:
    """An event reported on a socket's monitor queue."""

    kind: str
    endpoint: str
    peer_addr: Optional[str] = None
    error_msg: Optional[str] = None
    interval: Optional[float] = None

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"unknown socket event kind: {self.kind!r}")


@dataclass
class ConnSuccess:
    """A transport established a connection to or from ``endpoint``."""

    endpoint: str
    target_endpoint_uri: str
    reader: Any = None
    writer: Any = None


@dataclass
class ConnFailed:
    """A transport gave up connecting to ``endpoint``."""

    endpoint: str
    error: ZmqError


@dataclass
class CleanupComplete:
    """A transport actor finished and released its resources."""

    handle: int
    endpoint_uri: Optional[str] = None


@dataclass
class ReportError:
    """A transport actor stopped because of ``error``."""

    handle: int
    endpoint_uri: str
    error: ZmqError = field(default_factory=ZmqError)


class _SocketImpl(Protocol):
    async def bind(self, endpoint: str) -> None: ...
    async def connect(self, endpoint: str) -> None: ...
    async def disconnect(self, endpoint: str) -> None: ...
    async def unbind(self, endpoint: str) -> None: ...
    async def send(self, msg: Msg) -> None: ...
    async def recv(self) -> Msg: ...
    async def set_option(self, option: int, value: bytes) -> None: ...
    async def get_option(self, option: int) -> bytes: ...
    async def close(self) -> None: ...
    async def attach_monitor(self, queue: "asyncio.Queue[SocketEvent]") -> None: ...


class Socket:
    """Public handle that forwards every operation to a socket implementation."""

    def __init__(self, inner: _SocketImpl) -> None:
        self._inner = inner

    async def bind(self, endpoint: str) -> None:
        """Listen on a local endpoint."""
        await self._inner.bind(endpoint)

    async def connect(self, endpoint: str) -> None:
        """Connect to a remote endpoint."""
        await self._inner.connect(endpoint)

    async def disconnect(self, endpoint: str) -> None:
        """Disconnect from an endpoint."""
        await self._inner.disconnect(endpoint)

    async def unbind(self, endpoint: str) -> None:
        """Stop listening on an endpoint."""
        await self._inner.unbind(endpoint)

    async def send(self, msg: Union[Msg, bytes, bytearray, memoryview]) -> None:
        """Send one frame; raw bytes are wrapped in a frame without flags."""
        if not isinstance(msg, Msg):
            msg = Msg(bytes(msg))
        await self._inner.send(msg)

    async def recv(self) -> Msg:
        """Receive one frame."""
        return await self._inner.recv()

    async def set_option(self, option: int, value: bytes) -> None:
        """Set a socket option from its raw byte value."""
        await self._inner.set_option(option, bytes(value))

    async def get_option(self, option: int) -> bytes:
        """Read a socket option as raw bytes."""
        return bytes(await self._inner.get_option(option))

    async def close(self) -> None:
        """Start graceful shutdown of the socket."""
        await self._inner.close()

    async def monitor(self, capacity: int) -> "asyncio.Queue[SocketEvent]":
        """Return a bounded queue that receives this socket's events."""
        queue: asyncio.Queue[SocketEvent] = asyncio.Queue(maxsize=max(capacity, 1))
        await self._inner.attach_monitor(queue)
        return queue

    async def monitor_default(self) -> "asyncio.Queue[SocketEvent]":
        """Return a monitor queue of the default capacity."""
        return await self.monitor(DEFAULT_MONITOR_CAPACITY)

    def __repr__(self) -> str:
        return f"<Socket {type(self._inner).__name__}>"