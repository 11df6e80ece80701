"""Unix-domain socket transport: a listener and a one-shot connecter."""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import socket
from pathlib import Path
from typing import Any, Optional, Union

from rzmq.errors import InternalError, InvalidState, ZmqError, from_os_error
from rzmq.socket import (
    ACCEPT_FAILED,
    ACCEPTED,
    CONNECT_FAILED,
    CONNECTED,
    CleanupComplete,
    ConnFailed,
    ConnSuccess,
    ReportError,
    SocketEvent,
)

logger = logging.getLogger(__name__)

_ACCEPT_RETRY_DELAY = 0.1
_BACKLOG = 128


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


def _peer_name(writer: asyncio.StreamWriter) -> str:
    sock = writer.get_extra_info("socket")
    fd = sock.fileno() if sock is not None else -1
    return f"ipc-peer-fd-{fd}"


def _remove_socket_file(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Failed to remove IPC socket file %s: %s", path, exc)
    else:
        logger.debug("Removed IPC socket file %s", path)


class IpcListener:
    """Listens on a Unix-domain socket path and reports accepted connections.

    ``core_mailbox`` is any object with an awaitable ``put``; it receives
    ``ConnSuccess``, ``ReportError`` and ``CleanupComplete`` notifications.
    """

    def __init__(
        self,
        handle: int,
        endpoint_uri: str,
        path: Union[str, Path],
        core_mailbox: Any,
        monitor: Optional["asyncio.Queue[SocketEvent]"] = None,
    ) -> None:
        self.handle = handle
        self.endpoint_uri = endpoint_uri
        self.path = Path(path)
        self._core_mailbox = core_mailbox
        self._monitor = monitor
        self._sock: Optional[socket.socket] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        """True while the accept loop is active."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Bind the socket path, replacing a stale file, and start accepting."""
        if self._task is not None or self._stopped:
            raise InvalidState("IPC listener already started")

        _remove_socket_file(self.path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.setblocking(False)
            sock.bind(str(self.path))
            sock.listen(_BACKLOG)
        except OSError as exc:
            sock.close()
            raise from_os_error(exc, self.endpoint_uri) from exc
        self._sock = sock
        logger.info("IPC listener bound at %s (%s)", self.path, self.endpoint_uri)
        self._task = asyncio.get_running_loop().create_task(self._accept_loop(sock))

    async def stop(self) -> None:
        """Stop accepting, remove the socket file and report cleanup once."""
        if self._task is None or self._stopped:
            return
        self._stopped = True
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        _remove_socket_file(self.path)
        await self._notify(CleanupComplete(self.handle, self.endpoint_uri))

    async def __aenter__(self) -> "IpcListener":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _notify(self, command: Any) -> bool:
        try:
            await self._core_mailbox.put(command)
        except Exception as exc:
            logger.warning("IPC listener %d: failed to notify core: %s", self.handle, exc)
            return False
        return True

    async def _accept_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        loop_error: Optional[ZmqError] = None

        while True:
            try:
                conn, _ = await loop.sock_accept(sock)
            except OSError as exc:
                logger.error("Error accepting IPC connection on %s: %s", self.endpoint_uri, exc)
                _emit(self._monitor, SocketEvent(ACCEPT_FAILED, self.endpoint_uri, error_msg=str(exc)))
                if is_fatal(exc):
                    loop_error = from_os_error(exc, self.endpoint_uri)
                    break
                await asyncio.sleep(_ACCEPT_RETRY_DELAY)
                continue

            peer = f"ipc-peer-fd-{conn.fileno()}"
            logger.info("Accepted IPC connection %s on %s", peer, self.path)
            _emit(self._monitor, SocketEvent(ACCEPTED, self.endpoint_uri, peer_addr=peer))

            try:
                reader, writer = await asyncio.open_unix_connection(sock=conn)
            except OSError as exc:
                logger.error("Failed to set up stream for %s: %s", peer, exc)
                conn.close()
                _emit(
                    self._monitor,
                    SocketEvent(
                        ACCEPT_FAILED,
                        self.endpoint_uri,
                        error_msg="Failed to attach engine to session",
                    ),
                )
                continue

            success = ConnSuccess(f"ipc://{peer}", self.endpoint_uri, reader, writer)
            try:
                await self._core_mailbox.put(success)
            except Exception as exc:
                logger.error("Failed to send ConnSuccess to core: %s", exc)
                writer.close()
                loop_error = InternalError("Core mailbox closed")
                break

        logger.debug("IPC accept loop for %s finished", self.endpoint_uri)
        if loop_error is not None:
            await self._notify(ReportError(self.handle, self.endpoint_uri, loop_error))


class IpcConnecter:
    """Makes one connection attempt to a Unix-domain socket path."""

    def __init__(
        self,
        handle: int,
        endpoint_uri: str,
        path: Union[str, Path],
        core_mailbox: Any,
        monitor: Optional["asyncio.Queue[SocketEvent]"] = None,
    ) -> None:
        self.handle = handle
        self.endpoint_uri = endpoint_uri
        self.path = Path(path)
        self._core_mailbox = core_mailbox
        self._monitor = monitor

    def start(self) -> "asyncio.Task[None]":
        """Run the connection attempt as a background task."""
        return asyncio.get_running_loop().create_task(self.run())

    async def _notify(self, command: Any) -> bool:
        try:
            await self._core_mailbox.put(command)
        except Exception as exc:
            logger.warning("IPC connecter %d: failed to notify core: %s", self.handle, exc)
            return False
        return True

    async def run(self) -> None:
        """Connect once, report the outcome and then report cleanup."""
        logger.info("IPC connecter %d connecting to %s", self.handle, self.path)
        try:
            reader, writer = await asyncio.open_unix_connection(str(self.path))
        except OSError as exc:
            logger.error("IPC connect to %s failed: %s", self.path, exc)
            error = from_os_error(exc, self.endpoint_uri)
            _emit(self._monitor, SocketEvent(CONNECT_FAILED, self.endpoint_uri, error_msg=str(error)))
            await self._notify(ConnFailed(self.endpoint_uri, error))
        else:
            peer = _peer_name(writer)
            logger.info("IPC connect to %s succeeded (%s)", self.path, peer)
            _emit(self._monitor, SocketEvent(CONNECTED, self.endpoint_uri, peer_addr=peer))
            success = ConnSuccess(f"ipc://{peer}", self.endpoint_uri, reader, writer)
            if not await self._notify(success):
                writer.close()

        await self._notify(CleanupComplete(self.handle, self.endpoint_uri))