"""ROUTER socket pattern: identity-addressed sending and identity-prefixed receiving."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, MutableMapping, Optional, Protocol

from rzmq.errors import (
    ConnectionClosed,
    HostUnreachable,
    InternalError,
    InvalidMessage,
    ResourceLimitReached,
    UnsupportedOption,
    ZmqTimeout,
)
from rzmq.socket import Msg, MsgFlags, SocketOptions

logger = logging.getLogger(__name__)

_PLACEHOLDER_ID_WIDTH = 8


class _Pipe(Protocol):
    async def put(self, item: Msg) -> None: ...

    def put_nowait(self, item: Msg) -> None: ...


class FairQueue:
    """Bounded queue of incoming frames shared by all attached pipes."""

    def __init__(self, capacity: int) -> None:
        self._capacity = max(capacity, 1)
        self._items: Deque[Msg] = deque()
        self._cond = asyncio.Condition()
        self._closed = False
        self._pipes: set[int] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pipes(self) -> frozenset[int]:
        """Read ids of the pipes currently feeding this queue."""
        return frozenset(self._pipes)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    async def push_message(self, msg: Msg) -> None:
        """Append a frame, waiting while the queue is full."""
        async with self._cond:
            await self._cond.wait_for(
                lambda: self._closed or len(self._items) < self._capacity
            )
            if self._closed:
                raise ConnectionClosed("Receive queue closed")
            self._items.append(msg)
            self._cond.notify_all()

    async def pop_message(self) -> Optional[Msg]:
        """Take the next frame; ``None`` once the queue is closed and drained."""
        async with self._cond:
            await self._cond.wait_for(lambda: bool(self._items) or self._closed)
            if self._items:
                msg = self._items.popleft()
                self._cond.notify_all()
                return msg
            return None

    def pipe_attached(self, pipe_id: int) -> None:
        self._pipes.add(pipe_id)

    def pipe_detached(self, pipe_id: int) -> None:
        self._pipes.discard(pipe_id)

    async def close(self) -> None:
        """Close the queue, waking every waiting producer and consumer."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()


class RouterMap:
    """Maps peer identities to write pipes, and read pipes back to identities."""

    def __init__(self) -> None:
        self._identity_to_write: Dict[bytes, int] = {}
        self._read_to_identity: Dict[int, bytes] = {}

    def __len__(self) -> int:
        return len(self._identity_to_write)

    def add_peer(self, identity: bytes, read_id: int, write_id: int) -> None:
        identity = bytes(identity)
        self._identity_to_write[identity] = write_id
        self._read_to_identity[read_id] = identity

    def get_pipe(self, identity: bytes) -> Optional[int]:
        """The write pipe id for ``identity``, or ``None`` if unknown."""
        return self._identity_to_write.get(bytes(identity))

    def remove_peer_by_read_pipe(self, read_id: int) -> None:
        identity = self._read_to_identity.pop(read_id, None)
        if identity is not None:
            self._identity_to_write.pop(identity, None)


async def _send_with_timeout(pipe: _Pipe, msg: Msg, timeout: Optional[float]) -> None:
    """Send ``msg`` honouring SNDTIMEO: ``None`` blocks, ``0`` never waits."""
    if timeout is None:
        await pipe.put(msg)
    elif timeout == 0:
        try:
            pipe.put_nowait(msg)
        except asyncio.QueueFull:
            raise ResourceLimitReached() from None
    else:
        try:
            await asyncio.wait_for(pipe.put(msg), timeout)
        except asyncio.TimeoutError:
            raise ZmqTimeout() from None


class RouterSocket:
    """ROUTER pattern logic.

    ``pipe_senders`` maps write pipe ids to outgoing pipes (objects with
    ``put`` and ``put_nowait``, such as ``asyncio.Queue``).
    """

    def __init__(
        self,
        options: Optional[SocketOptions] = None,
        pipe_senders: Optional[MutableMapping[int, Any]] = None,
    ) -> None:
        self.options = options if options is not None else SocketOptions()
        self.pipe_senders: MutableMapping[int, Any] = (
            pipe_senders if pipe_senders is not None else {}
        )
        self.router_map = RouterMap()
        self.incoming_queue = FairQueue(max(self.options.rcvhwm, 1))
        self._partial_incoming: Dict[int, list[Msg]] = {}
        self._current_send_target: Optional[int] = None
        self._send_lock = asyncio.Lock()
        self._pipe_to_identity: Dict[int, bytes] = {}

    @property
    def current_send_target(self) -> Optional[int]:
        """Write pipe id of the message being sent, if one is in progress."""
        return self._current_send_target

    @staticmethod
    def _placeholder_identity(pipe_read_id: int) -> bytes:
        return pipe_read_id.to_bytes(_PLACEHOLDER_ID_WIDTH, "big")

    async def send(self, msg: Msg) -> None:
        """Send one frame: first the destination identity, then payload frames."""
        async with self._send_lock:
            timeout = self.options.sndtimeo
            if self._current_send_target is None:
                await self._send_identity(msg, timeout)
            else:
                await self._send_payload(msg, timeout)

    async def _send_identity(self, msg: Msg, timeout: Optional[float]) -> None:
        if not msg.is_more():
            raise InvalidMessage(
                "ROUTER send expects Identity frame with MORE flag followed by payload"
            )
        destination = bytes(msg.data)
        if not destination:
            raise InvalidMessage("ROUTER send received empty Identity frame")

        write_id = self.router_map.get_pipe(destination)
        if write_id is None:
            logger.debug("ROUTER send failed: unknown identity %r", destination)
            raise HostUnreachable(
                f"Peer {destination!r} not connected or identity unknown"
            )
        pipe = self.pipe_senders.get(write_id)
        if pipe is None:
            logger.error("ROUTER send failed: pipe %d disappeared after lookup", write_id)
            raise HostUnreachable("Peer disconnected")

        msg.flags |= MsgFlags.MORE
        try:
            await _send_with_timeout(pipe, msg, timeout)
        except ConnectionClosed as exc:
            logger.warning("ROUTER send (identity) failed on pipe %d: %s", write_id, exc)
            raise HostUnreachable("Peer disconnected during send") from exc
        self._current_send_target = write_id

    async def _send_payload(self, msg: Msg, timeout: Optional[float]) -> None:
        target = self._current_send_target
        assert target is not None
        pipe = self.pipe_senders.get(target)
        if pipe is None:
            logger.error("ROUTER send (payload): target pipe %d disappeared", target)
            self._current_send_target = None
            raise HostUnreachable("Peer disconnected mid-message")

        is_last_user_part = not msg.is_more()
        try:
            await _send_with_timeout(pipe, msg, timeout)
        except ConnectionClosed as exc:
            self._current_send_target = None
            raise HostUnreachable("Peer disconnected during send") from exc
        except (ResourceLimitReached, ZmqTimeout):
            # The caller may retry the same payload frame.
            if is_last_user_part:
                self._current_send_target = None
            raise
        except Exception:
            self._current_send_target = None
            raise
        if is_last_user_part:
            self._current_send_target = None

    async def recv(self) -> Msg:
        """Receive the next frame: an identity frame precedes each message."""
        timeout = self.options.rcvtimeo
        if timeout:
            try:
                msg = await asyncio.wait_for(self.incoming_queue.pop_message(), timeout)
            except asyncio.TimeoutError:
                raise ZmqTimeout() from None
        else:
            msg = await self.incoming_queue.pop_message()
        if msg is None:
            raise InternalError("Receive queue closed")
        return msg

    async def set_pattern_option(self, option: int, value: bytes) -> None:
        raise UnsupportedOption(option)

    async def get_pattern_option(self, option: int) -> bytes:
        raise UnsupportedOption(option)

    async def handle_pipe_message(self, pipe_read_id: int, msg: Msg) -> None:
        """Buffer a frame from a pipe; queue identity + parts once complete."""
        if len(msg) == 0 and msg.is_more():
            # Empty delimiter frames from DEALER peers are consumed.
            return
        buffer = self._partial_incoming.setdefault(pipe_read_id, [])
        buffer.append(msg)
        if msg.is_more():
            return

        parts = self._partial_incoming.pop(pipe_read_id, [])
        identity = self._pipe_to_identity.get(pipe_read_id)
        if identity is None:
            logger.error("ROUTER: no identity for pipe %d, using placeholder", pipe_read_id)
            identity = self._placeholder_identity(pipe_read_id)

        id_msg = Msg(identity, MsgFlags.MORE if parts else MsgFlags(0))
        try:
            await self.incoming_queue.push_message(id_msg)
        except ConnectionClosed as exc:
            logger.error("ROUTER failed to queue identity frame: %s", exc)
            return

        last = len(parts) - 1
        for index, part in enumerate(parts):
            if index < last:
                part.flags |= MsgFlags.MORE
            else:
                part.flags &= ~MsgFlags.MORE
            try:
                await self.incoming_queue.push_message(part)
            except ConnectionClosed as exc:
                logger.error("ROUTER failed to queue payload frame %d: %s", index + 1, exc)
                return

    async def pipe_attached(
        self, pipe_read_id: int, pipe_write_id: int, peer_identity: Optional[bytes] = None
    ) -> None:
        """Register a new peer under its handshake identity or a placeholder."""
        if peer_identity:
            identity = bytes(peer_identity)
        else:
            identity = self._placeholder_identity(pipe_read_id)
        logger.debug(
            "ROUTER attaching pipe read=%d write=%d identity=%r",
            pipe_read_id,
            pipe_write_id,
            identity,
        )
        self.router_map.add_peer(identity, pipe_read_id, pipe_write_id)
        self._pipe_to_identity[pipe_read_id] = identity
        self.incoming_queue.pipe_attached(pipe_read_id)

    async def pipe_detached(self, pipe_read_id: int) -> None:
        """Forget a peer, its partial input and any send aimed at it."""
        identity = self._pipe_to_identity.get(pipe_read_id)
        write_id = self.router_map.get_pipe(identity) if identity is not None else None

        self.router_map.remove_peer_by_read_pipe(pipe_read_id)
        self._pipe_to_identity.pop(pipe_read_id, None)
        self.incoming_queue.pipe_detached(pipe_read_id)
        self._partial_incoming.pop(pipe_read_id, None)

        if write_id is not None and self._current_send_target == write_id:
            logger.warning("ROUTER send target pipe %d detached, clearing target", write_id)
            self._current_send_target = None