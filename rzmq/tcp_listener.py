"""TCP transport: socket tuning and a listener that reports accepted connections."""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass
from typing import Any, Optional

from rzmq.errors import InternalError, InvalidEndpoint, InvalidState, ZmqError, from_os_error
from rzmq.socket import (
    ACCEPT_FAILED,
    ACCEPTED,
    CleanupComplete,
    ConnSuccess,
    ReportError,
    SocketEvent,
    SocketOptions,
)

logger = logging.getLogger(__name__)

_ACCEPT_RETRY_DELAY = 0.1
_BACKLOG = 128
_SCHEME = "tcp://"


@dataclass(frozen=True)
class TcpTransportConfig:
    """TCP-level settings applied to every connection; durations in seconds."""

    tcp_nodelay: bool = True
    keepalive_time: Optional[float] = None
    keepalive_interval: Optional[float] = None
    keepalive_count: Optional[int] = None

    @classmethod
    def from_options(cls, options: SocketOptions) -> "TcpTransportConfig":
        """Take the TCP settings out of a socket's options."""
        return cls(
            tcp_nodelay=options.tcp_nodelay,
            keepalive_time=options.tcp_keepalive_idle,
            keepalive_interval=options.tcp_keepalive_interval,
            keepalive_count=options.tcp_keepalive_count,
        )

    @property
    def wants_keepalive(self) -> bool:
        return (
            self.keepalive_time is not None
            or self.keepalive_interval is not None
            or self.keepalive_count is not None
        )


def apply_tcp_socket_options(sock: socket.socket, config: TcpTransportConfig) -> None:
    """Apply nodelay and keepalive settings to a TCP socket; raises OSError."""
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(config.tcp_nodelay))
    if not config.wants_keepalive:
        return
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    if config.keepalive_time is not None:
        idle_option = getattr(socket, "TCP_KEEPIDLE", None) or getattr(
            socket, "TCP_KEEPALIVE", None
        )
        if idle_option is not None:
            sock.setsockopt(socket.IPPROTO_TCP, idle_option, int(config.keepalive_time))
    if config.keepalive_interval is not None and hasattr(socket, "TCP_KEEPINTVL"):
        sock.setsockopt(
            socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, int(config.keepalive_interval)
        )
    if config.keepalive_count is not None and hasattr(socket, "TCP_KEEPCNT"):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, config.keepalive_count)
    logger.debug("Applied TCP keepalive settings: %s", config)


def is_fatal(error: OSError) -> bool:
    """True for accept errors after which the listener must stop."""
    if isinstance(error, BrokenPipeError):
        return True
    return error.errno in (errno.EINVAL, errno.EPIPE)


def _emit(monitor: Optional["asyncio.Queue[SocketEvent]"], event: SocketEvent) -> None:
    if monitor is None:
        return
    try:
        monitor.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("Monitor queue full, dropping %s event", event.kind)


def _format_address(address: Any) -> str:
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _split_bind_address(endpoint_uri: str) -> tuple[str, int]:
    if not endpoint_uri.startswith(_SCHEME):
        raise InvalidEndpoint(endpoint_uri)
    host, sep, port_text = endpoint_uri[len(_SCHEME):].rpartition(":")
    if not sep or not host or not (port_text.isascii() and port_text.isdigit()):
        raise InvalidEndpoint(endpoint_uri)
    port = int(port_text)
    if port > 0xFFFF:
        raise InvalidEndpoint(endpoint_uri)
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port


class TcpListener:
    """Listens on a TCP address and reports accepted connections.

    ``core_mailbox`` is any object with an awaitable ``put``; it receives
    ``ConnSuccess``, ``ReportError`` and ``CleanupComplete`` notifications.
    """

    def __init__(
        self,
        handle: int,
        endpoint_uri: str,
        core_mailbox: Any,
        options: Optional[SocketOptions] = None,
        monitor: Optional["asyncio.Queue[SocketEvent]"] = None,
    ) -> None:
        self.handle = handle
        self.endpoint_uri = endpoint_uri
        self.options = options if options is not None else SocketOptions()
        self.config = TcpTransportConfig.from_options(self.options)
        self._core_mailbox = core_mailbox
        self._monitor = monitor
        self._sock: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        """True while the accept loop is active."""
        return self._task is not None and not self._task.done()

    @property
    def local_address(self) -> Optional[tuple[str, int]]:
        """The bound ``(host, port)``, or ``None`` when not listening."""
        if self._sock is None:
            return None
        name = self._sock.getsockname()
        return name[0], name[1]

    async def start(self) -> None:
        """Bind the address and start accepting connections."""
        if self._task is not None or self._stopped:
            raise InvalidState("TCP listener already started")
        host, port = _split_bind_address(self.endpoint_uri)
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )
        except OSError as exc:
            raise from_os_error(exc, self.endpoint_uri) from exc
        if not infos:
            raise InvalidEndpoint(self.endpoint_uri)
        family, sock_type, proto, _, address = infos[0]

        sock = socket.socket(family, sock_type, proto)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setblocking(False)
            sock.bind(address)
            sock.listen(_BACKLOG)
        except OSError as exc:
            sock.close()
            raise from_os_error(exc, self.endpoint_uri) from exc
        self._sock = sock
        logger.info(
            "TCP listener %d bound at %s (%s)", self.handle, self.local_address, self.endpoint_uri
        )
        self._task = loop.create_task(self._accept_loop(sock))

    async def stop(self) -> None:
        """Stop accepting, close the socket and report cleanup once."""
        if self._task is None or self._stopped:
            return
        self._stopped = True
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        await self._notify(CleanupComplete(self.handle, self.endpoint_uri))

    async def __aenter__(self) -> "TcpListener":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _notify(self, command: Any) -> bool:
        try:
            await self._core_mailbox.put(command)
        except Exception as exc:
            logger.warning("TCP listener %d: failed to notify core: %s", self.handle, exc)
            return False
        return True

    async def _accept_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        loop_error: Optional[ZmqError] = None

        while True:
            try:
                conn, address = await loop.sock_accept(sock)
            except OSError as exc:
                logger.error("Error accepting TCP connection on %s: %s", self.endpoint_uri, exc)
                _emit(
                    self._monitor,
                    SocketEvent(ACCEPT_FAILED, self.endpoint_uri, error_msg=str(exc)),
                )
                if is_fatal(exc):
                    loop_error = from_os_error(exc, self.endpoint_uri)
                    break
                await asyncio.sleep(_ACCEPT_RETRY_DELAY)
                continue

            peer = _format_address(address)
            logger.info("Accepted TCP connection from %s", peer)
            _emit(self._monitor, SocketEvent(ACCEPTED, self.endpoint_uri, peer_addr=peer))

            try:
                apply_tcp_socket_options(conn, self.config)
            except OSError as exc:
                logger.error("Failed to apply socket options for %s: %s", peer, exc)
                _emit(
                    self._monitor,
                    SocketEvent(
                        ACCEPT_FAILED,
                        self.endpoint_uri,
                        error_msg=f"Failed to apply socket options: {exc}",
                    ),
                )
                conn.close()
                continue

            try:
                reader, writer = await asyncio.open_connection(sock=conn)
            except OSError as exc:
                logger.error("Failed to set up stream for %s: %s", peer, exc)
                conn.close()
                continue

            success = ConnSuccess(f"tcp://{peer}", self.endpoint_uri, reader, writer)
            try:
                await self._core_mailbox.put(success)
            except Exception as exc:
                logger.error("Failed to send ConnSuccess to core: %s", exc)
                writer.close()
                loop_error = InternalError("Core mailbox closed")
                break

        logger.debug("TCP accept loop for %s finished", self.endpoint_uri)
        if loop_error is not None:
            await self._notify(ReportError(self.handle, self.endpoint_uri, loop_error))