"""In-process transport: sockets in one event loop joined by queue pipes."""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Dict, MutableMapping, Optional

from rzmq.errors import (
    AddrInUse,
    ConnectionClosed,
    ConnectionRefused,
    InternalError,
    ZmqError,
)
from rzmq.socket import Msg, SocketOptions

logger = logging.getLogger(__name__)

_MIN_INPROC_HWM = 1000


@dataclass(frozen=True)
class InprocBinding:
    """What a bound name resolves to: the binding peer."""

    binder: "InprocPeer"


class InprocRegistry:
    """Registry of bound inproc names and a source of unique handles."""

    def __init__(self) -> None:
        self._bindings: Dict[str, InprocBinding] = {}
        self._handles = itertools.count(1)

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    def next_handle(self) -> int:
        return next(self._handles)

    def register(self, name: str, binding: InprocBinding) -> None:
        """Bind ``name``; raise AddrInUse if it is already bound."""
        if name in self._bindings:
            raise AddrInUse(f"inproc://{name}")
        self._bindings[name] = binding

    def unregister(self, name: str) -> None:
        self._bindings.pop(name, None)

    def lookup(self, name: str) -> Optional[InprocBinding]:
        return self._bindings.get(name)


@dataclass(frozen=True)
class _InprocConnection:
    binder: "InprocPeer"
    endpoint_uri: str
    write_id: int
    read_id: int


class InprocPeer:
    """A socket's transport side: its pipes, reader tasks and endpoints.

    ``logic`` is the socket pattern object; it receives ``pipe_attached``,
    ``pipe_detached`` and ``handle_pipe_message`` calls.
    """

    def __init__(
        self,
        registry: InprocRegistry,
        logic: Any,
        options: Optional[SocketOptions] = None,
        pipe_senders: Optional[MutableMapping[int, Any]] = None,
    ) -> None:
        self.registry = registry
        self.logic = logic
        self.options = options if options is not None else SocketOptions()
        self.pipe_senders: MutableMapping[int, Any] = (
            pipe_senders if pipe_senders is not None else {}
        )
        self.endpoints: Dict[str, _InprocConnection] = {}
        self.bound_names: set[str] = set()
        self.closed = False
        self._readers: Dict[int, asyncio.Task] = {}
        self._read_to_write: Dict[int, int] = {}

    def _add_pipe(
        self, write_id: int, read_id: int, tx: "asyncio.Queue[Msg]", rx: "asyncio.Queue[Msg]"
    ) -> None:
        self.pipe_senders[write_id] = tx
        self._read_to_write[read_id] = write_id
        self._readers[read_id] = asyncio.get_running_loop().create_task(
            self._run_reader(read_id, rx)
        )

    async def _run_reader(self, read_id: int, rx: "asyncio.Queue[Msg]") -> None:
        while True:
            msg = await rx.get()
            try:
                await self.logic.handle_pipe_message(read_id, msg)
            except ConnectionClosed:
                logger.debug("Pipe %d reader stopping: receive queue closed", read_id)
                return
            except ZmqError as exc:
                logger.warning("Pipe %d reader: message handling failed: %s", read_id, exc)

    def _remove_pipe_state(self, write_id: Optional[int], read_id: int) -> bool:
        removed = False
        if write_id is not None and self.pipe_senders.pop(write_id, None) is not None:
            removed = True
        self._read_to_write.pop(read_id, None)
        task = self._readers.pop(read_id, None)
        if task is not None:
            task.cancel()
            removed = True
        return removed

    async def _accept_connection(
        self,
        connector_uri: str,
        pipe_tx: "asyncio.Queue[Msg]",
        pipe_rx: "asyncio.Queue[Msg]",
        write_id: int,
        read_id: int,
    ) -> None:
        if self.closed:
            raise ConnectionRefused("Binder disappeared")
        self._add_pipe(write_id, read_id, pipe_tx, pipe_rx)
        await self.logic.pipe_attached(read_id, write_id, None)
        logger.debug("Inproc binder accepted %s", connector_uri)

    async def _pipe_closed(self, read_id: int) -> None:
        write_id = self._read_to_write.get(read_id)
        if self._remove_pipe_state(write_id, read_id):
            await self.logic.pipe_detached(read_id)

    async def close(self) -> None:
        """Stop all reader tasks and release bound names."""
        self.closed = True
        for name in self.bound_names:
            if self.registry.lookup(name) == InprocBinding(self):
                self.registry.unregister(name)
        self.bound_names.clear()
        tasks = list(self._readers.values())
        self._readers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def bind_inproc(name: str, peer: InprocPeer) -> None:
    """Register ``peer`` as the binder of ``name``."""
    peer.registry.register(name, InprocBinding(peer))
    peer.bound_names.add(name)


async def connect_inproc(name: str, peer: InprocPeer) -> None:
    """Connect ``peer`` to the socket bound at ``name``."""
    uri = f"inproc://{name}"
    binding = peer.registry.lookup(name)
    if binding is None:
        logger.warning("Inproc lookup failed: %s is not bound", name)
        raise ConnectionRefused(uri)

    hwm = max(peer.options.rcvhwm, peer.options.sndhwm, _MIN_INPROC_HWM)
    write_id = peer.registry.next_handle()
    read_id = peer.registry.next_handle()
    to_binder: asyncio.Queue[Msg] = asyncio.Queue(hwm)
    to_connector: asyncio.Queue[Msg] = asyncio.Queue(hwm)

    peer._add_pipe(write_id, read_id, to_binder, to_connector)
    peer.endpoints[uri] = _InprocConnection(binding.binder, uri, write_id, read_id)

    def _cleanup() -> None:
        peer.endpoints.pop(uri, None)
        peer._remove_pipe_state(write_id, read_id)

    try:
        await binding.binder._accept_connection(uri, to_connector, to_binder, read_id, write_id)
    except ZmqError as exc:
        logger.warning("Inproc connection to %s rejected: %s", name, exc)
        _cleanup()
        raise
    except Exception as exc:
        _cleanup()
        raise InternalError("Binder failed during inproc connect") from exc

    await peer.logic.pipe_attached(read_id, write_id, None)
    logger.info("Inproc connection to %s established", name)


def unbind_inproc(name: str, registry: InprocRegistry) -> None:
    """Remove the binding of ``name``."""
    registry.unregister(name)


async def disconnect_inproc(endpoint: str, peer: InprocPeer) -> None:
    """Close the connection ``peer`` holds to ``endpoint``, telling the binder."""
    connection = peer.endpoints.pop(endpoint, None)
    if connection is None:
        logger.debug("Inproc endpoint %s not found for disconnect", endpoint)
        return

    # The binder reads from the connector's write pipe.
    if not connection.binder.closed:
        await connection.binder._pipe_closed(connection.write_id)

    if peer._remove_pipe_state(connection.write_id, connection.read_id):
        await peer.logic.pipe_detached(connection.read_id)
    else:
        logger.warning("Inproc disconnect: pipe state for %s already removed", endpoint)