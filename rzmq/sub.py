"""SUB socket pattern: topic subscriptions and filtered receiving."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Dict, MutableMapping, Optional

from rzmq.errors import InvalidState, UnsupportedOption, ZmqError, ZmqTimeout, InternalError
from rzmq.router import FairQueue
from rzmq.socket import (
    RCVHWM,
    RCVTIMEO,
    SNDHWM,
    SNDTIMEO,
    SUBSCRIBE,
    UNSUBSCRIBE,
    Msg,
    SocketOptions,
)

logger = logging.getLogger(__name__)

# Prefix bytes of the subscription messages sent upstream to publishers.
SUBSCRIBE_COMMAND = b"\x01"
CANCEL_COMMAND = b"\x00"


class SubscriptionTrie:
    """Reference-counted set of topic prefixes."""

    def __init__(self) -> None:
        self._counts: Dict[bytes, int] = {}

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, topic: object) -> bool:
        return isinstance(topic, (bytes, bytearray)) and bytes(topic) in self._counts

    def subscribe(self, topic: bytes) -> None:
        """Add one subscription to ``topic``."""
        topic = bytes(topic)
        self._counts[topic] = self._counts.get(topic, 0) + 1

    def unsubscribe(self, topic: bytes) -> bool:
        """Drop one subscription to ``topic``; False if there was none."""
        topic = bytes(topic)
        count = self._counts.get(topic)
        if count is None:
            return False
        if count == 1:
            del self._counts[topic]
        else:
            self._counts[topic] = count - 1
        return True

    def matches(self, data: bytes) -> bool:
        """True when some subscribed topic is a prefix of ``data``."""
        data = bytes(data)
        return any(data[:n] in self._counts for n in range(len(data) + 1))


def _decode_int(value: bytes) -> int:
    if len(value) != 4:
        raise ZmqError(f"Invalid option value length: {len(value)}")
    return int.from_bytes(value, sys.byteorder, signed=True)


class SubSocket:
    """SUB pattern logic.

    ``pipe_senders`` maps write pipe ids to outgoing pipes (objects with an
    awaitable ``put``, such as ``asyncio.Queue``).
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
        self.subscriptions = SubscriptionTrie()
        self.fair_queue = FairQueue(max(self.options.rcvhwm, 1))
        self._pipe_read_to_write: Dict[int, int] = {}

    @property
    def peers(self) -> Dict[int, int]:
        """Mapping of attached read pipe ids to their write pipe ids."""
        return dict(self._pipe_read_to_write)

    async def _send_subscription_command(self, command: bytes, topic: bytes) -> None:
        body = command + bytes(topic)
        targets = []
        for write_id in self._pipe_read_to_write.values():
            pipe = self.pipe_senders.get(write_id)
            if pipe is None:
                logger.warning("Sub command: pipe %d has no sender, skipping", write_id)
                continue
            targets.append((write_id, pipe))
        if not targets:
            return
        results = await asyncio.gather(
            *(pipe.put(Msg(body)) for _, pipe in targets), return_exceptions=True
        )
        for (write_id, _), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Failed to send subscription command on pipe %d: %s", write_id, result
                )

    async def send(self, msg: Msg) -> None:
        raise InvalidState("SUB sockets cannot send data messages")

    async def recv(self) -> Msg:
        """Receive the next message that matched a subscription."""
        timeout = self.options.rcvtimeo
        if timeout:
            try:
                msg = await asyncio.wait_for(self.fair_queue.pop_message(), timeout)
            except asyncio.TimeoutError:
                raise ZmqTimeout() from None
        else:
            msg = await self.fair_queue.pop_message()
        if msg is None:
            raise InternalError("Receive queue closed")
        return msg

    async def set_option(self, option: int, value: bytes) -> None:
        """Set a subscription or a general socket option."""
        value = bytes(value)
        if option in (SUBSCRIBE, UNSUBSCRIBE):
            await self.set_pattern_option(option, value)
            return
        if option in (RCVTIMEO, SNDTIMEO):
            millis = _decode_int(value)
            seconds = None if millis < 0 else millis / 1000
            if option == RCVTIMEO:
                self.options.rcvtimeo = seconds
            else:
                self.options.sndtimeo = seconds
            return
        if option in (RCVHWM, SNDHWM):
            hwm = _decode_int(value)
            if hwm < 0:
                raise ZmqError(f"Invalid high-water mark: {hwm}")
            if option == RCVHWM:
                self.options.rcvhwm = hwm
            else:
                self.options.sndhwm = hwm
            return
        raise UnsupportedOption(option)

    async def set_pattern_option(self, option: int, value: bytes) -> None:
        value = bytes(value)
        if option == SUBSCRIBE:
            logger.debug("Subscribing to %r", value)
            self.subscriptions.subscribe(value)
            await self._send_subscription_command(SUBSCRIBE_COMMAND, value)
        elif option == UNSUBSCRIBE:
            logger.debug("Unsubscribing from %r", value)
            if self.subscriptions.unsubscribe(value):
                await self._send_subscription_command(CANCEL_COMMAND, value)
        else:
            raise UnsupportedOption(option)

    async def get_pattern_option(self, option: int) -> bytes:
        raise UnsupportedOption(option)

    async def handle_pipe_message(self, pipe_read_id: int, msg: Msg) -> None:
        """Queue ``msg`` if it matches a subscription, otherwise drop it."""
        if self.subscriptions.matches(msg.data):
            await self.fair_queue.push_message(msg)
        else:
            logger.debug("SUB dropping unmatched message from pipe %d", pipe_read_id)

    async def pipe_attached(
        self, pipe_read_id: int, pipe_write_id: int, peer_identity: Optional[bytes] = None
    ) -> None:
        self._pipe_read_to_write[pipe_read_id] = pipe_write_id
        self.fair_queue.pipe_attached(pipe_read_id)

    async def pipe_detached(self, pipe_read_id: int) -> None:
        self._pipe_read_to_write.pop(pipe_read_id, None)
        self.fair_queue.pipe_detached(pipe_read_id)