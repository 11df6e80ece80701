"""TCP transport: a connecter that retries with back-off until it succeeds."""

from __future__ import annotations

import asyncio
import errno
import logging
from typing import Any, Optional

from rzmq.errors import InvalidEndpoint, from_os_error
from rzmq.socket import (
    CONNECT_DELAYED,
    CONNECT_FAILED,
    CONNECT_RETRIED,
    CONNECTED,
    CleanupComplete,
    ConnFailed,
    ConnSuccess,
    SocketEvent,
    SocketOptions,
)
from rzmq.tcp_listener import TcpTransportConfig, apply_tcp_socket_options

logger = logging.getLogger(__name__)

_SCHEME = "tcp://"

_FATAL_CONNECT_ERRNOS = frozenset({errno.EADDRNOTAVAIL, errno.EADDRINUSE, errno.EINVAL})


def is_fatal_connect_error(error: OSError) -> bool:
    """True for connect errors after which no further attempts are made."""
    if isinstance(error, PermissionError):
        return True
    return error.errno in _FATAL_CONNECT_ERRNOS or error.errno in (errno.EACCES, errno.EPERM)


def _emit(monitor: Optional["asyncio.Queue[SocketEvent]"], event: SocketEvent) -> None:
    if monitor is None:
        return
    try:
        monitor.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("Monitor queue full, dropping %s event", event.kind)


def _split_target(target: str) -> tuple[str, int]:
    """Split ``host:port``; a malformed address raises OSError(EINVAL)."""
    host, sep, port_text = target.rpartition(":")
    if not sep or not host or not (port_text.isascii() and port_text.isdigit()):
        raise OSError(errno.EINVAL, f"invalid socket address: {target}")
    port = int(port_text)
    if port > 0xFFFF:
        raise OSError(errno.EINVAL, f"invalid port: {target}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, port


def _format_peer(writer: asyncio.StreamWriter) -> str:
    address = writer.get_extra_info("peername")
    if not address:
        return "unknown"
    host, port = address[0], address[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class TcpConnecter:
    """Connects to a TCP endpoint, retrying on failure per the socket's options.

    ``core_mailbox`` is any object with an awaitable ``put``; it receives
    ``ConnSuccess``, ``ConnFailed`` and ``CleanupComplete`` notifications.
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

    def start(self) -> "asyncio.Task[None]":
        """Run the connect loop as a background task."""
        return asyncio.get_running_loop().create_task(self.run())

    async def _notify(self, command: Any) -> bool:
        try:
            await self._core_mailbox.put(command)
        except Exception as exc:
            logger.warning("TCP connecter %d: failed to notify core: %s", self.handle, exc)
            return False
        return True

    def _next_delay(self, delay: float) -> float:
        max_delay = self.options.reconnect_ivl_max
        if max_delay:
            return min(delay * 2, max_delay)
        return delay

    async def run(self) -> None:
        """Attempt to connect until success, a fatal error or retries are disabled."""
        uri = self.endpoint_uri
        if not uri.startswith(_SCHEME):
            logger.error("TCP connecter %d: invalid endpoint %s", self.handle, uri)
            error = InvalidEndpoint(uri)
            _emit(self._monitor, SocketEvent(CONNECT_FAILED, uri, error_msg=str(error)))
            await self._notify(ConnFailed(uri, error))
            await self._notify(CleanupComplete(self.handle, uri))
            return
        target = uri[len(_SCHEME):]

        delay = self.options.reconnect_ivl or 0.0
        attempt = 0
        logger.info("TCP connecter %d started for %s", self.handle, uri)

        while True:
            if attempt > 0:
                if delay == 0:
                    logger.info("Reconnect disabled, stopping connecter for %s", uri)
                    break
                _emit(self._monitor, SocketEvent(CONNECT_RETRIED, uri, interval=delay))
                await asyncio.sleep(delay)
            attempt += 1

            try:
                host, port = _split_target(target)
                reader, writer = await asyncio.open_connection(host, port)
            except OSError as exc:
                logger.warning("TCP connect attempt #%d to %s failed: %s", attempt, uri, exc)
                if attempt == 1:
                    _emit(self._monitor, SocketEvent(CONNECT_DELAYED, uri, error_msg=str(exc)))
                delay = self._next_delay(delay)
                if delay == 0 or is_fatal_connect_error(exc):
                    logger.error("Stopping connection attempts to %s", uri)
                    _emit(self._monitor, SocketEvent(CONNECT_FAILED, uri, error_msg=str(exc)))
                    await self._notify(ConnFailed(uri, from_os_error(exc, uri)))
                    break
                continue

            peer = _format_peer(writer)
            logger.info("TCP connect to %s succeeded (attempt %d)", peer, attempt)
            _emit(self._monitor, SocketEvent(CONNECTED, uri, peer_addr=peer))

            sock = writer.get_extra_info("socket")
            try:
                if sock is not None:
                    apply_tcp_socket_options(sock, self.config)
            except OSError as exc:
                logger.error("Failed to apply socket options for %s, retrying: %s", peer, exc)
                writer.close()
                delay = self._next_delay(delay)
                continue

            success = ConnSuccess(f"tcp://{peer}", uri, reader, writer)
            if not await self._notify(success):
                writer.close()
            break

        logger.info("TCP connecter %d finished", self.handle)
        await self._notify(CleanupComplete(self.handle, uri))