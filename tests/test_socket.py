import asyncio

import pytest

from rzmq.errors import InvalidState, UnsupportedOption, ZmqError
from rzmq.socket import (
    ACCEPTED,
    CONNECT_RETRIED,
    DEFAULT_MONITOR_CAPACITY,
    SNDTIMEO,
    SUBSCRIBE,
    CleanupComplete,
    ConnFailed,
    Msg,
    MsgFlags,
    ReportError,
    Socket,
    SocketEvent,
    SocketOptions,
)


class FakeImpl:
    def __init__(self):
        self.calls = []
        self.sent = []
        self.inbox = []
        self.options = {}
        self.monitors = []
        self.fail_monitor = False

    async def bind(self, endpoint):
        self.calls.append(("bind", endpoint))

    async def connect(self, endpoint):
        self.calls.append(("connect", endpoint))

    async def disconnect(self, endpoint):
        self.calls.append(("disconnect", endpoint))

    async def unbind(self, endpoint):
        self.calls.append(("unbind", endpoint))

    async def send(self, msg):
        self.sent.append(msg)

    async def recv(self):
        if not self.inbox:
            raise InvalidState("nothing to receive")
        return self.inbox.pop(0)

    async def set_option(self, option, value):
        if option < 0:
            raise UnsupportedOption(option)
        self.options[option] = value

    async def get_option(self, option):
        if option not in self.options:
            raise UnsupportedOption(option)
        return self.options[option]

    async def close(self):
        self.calls.append(("close", None))

    async def attach_monitor(self, queue):
        if self.fail_monitor:
            raise ZmqError("monitor setup failed")
        self.monitors.append(queue)


def test_msg_more_flag():
    plain = Msg(b"RequestPayload")
    more = Msg(b"id", MsgFlags.MORE)
    assert not plain.is_more()
    assert more.is_more()
    assert len(plain) == len(b"RequestPayload")


def test_msg_flags_combination_and_coercion():
    msg = Msg(bytearray(b"abc"), MsgFlags.MORE | MsgFlags.COMMAND)
    assert msg.data == b"abc"
    assert isinstance(msg.data, bytes)
    assert msg.is_more()
    msg.flags &= ~MsgFlags.MORE
    assert not msg.is_more()
    assert MsgFlags.COMMAND in msg.flags


def test_socket_options_independent_instances():
    first = SocketOptions()
    second = SocketOptions(rcvhwm=5)
    assert second.rcvhwm == 5
    assert first.rcvhwm == first.sndhwm


def test_socket_event_validation():
    event = SocketEvent(ACCEPTED, "tcp://127.0.0.1:5565", peer_addr="127.0.0.1:40000")
    assert event.peer_addr == "127.0.0.1:40000"
    retried = SocketEvent(CONNECT_RETRIED, "tcp://127.0.0.1:5561", interval=0.2)
    assert retried.interval == 0.2
    with pytest.raises(ValueError):
        SocketEvent("exploded", "tcp://127.0.0.1:1")


def test_command_records():
    err = ZmqError("boom")
    failed = ConnFailed("tcp://127.0.0.1:5690", err)
    assert failed.error is err
    done = CleanupComplete(7)
    assert done.endpoint_uri is None
    report = ReportError(3, "tcp://127.0.0.1:1", err)
    assert report.handle == 3 and report.error is err


@pytest.mark.asyncio
async def test_endpoint_operations_are_forwarded():
    inner = FakeImpl()
    sock = Socket(inner)
    await sock.bind("tcp://127.0.0.1:5560")
    await sock.connect("inproc://x")
    await sock.disconnect("inproc://x")
    await sock.unbind("tcp://127.0.0.1:5560")
    await sock.close()
    assert inner.calls == [
        ("bind", "tcp://127.0.0.1:5560"),
        ("connect", "inproc://x"),
        ("disconnect", "inproc://x"),
        ("unbind", "tcp://127.0.0.1:5560"),
        ("close", None),
    ]


@pytest.mark.asyncio
async def test_send_wraps_bytes_and_recv_returns_messages():
    inner = FakeImpl()
    sock = Socket(inner)
    await sock.send(b"Request 1")
    framed = Msg(b"id", MsgFlags.MORE)
    await sock.send(framed)
    assert inner.sent[0] == Msg(b"Request 1")
    assert inner.sent[1] is framed

    inner.inbox.append(Msg(b"Reply 1"))
    received = await sock.recv()
    assert received.data == b"Reply 1"


@pytest.mark.asyncio
async def test_errors_from_implementation_propagate():
    sock = Socket(FakeImpl())
    with pytest.raises(InvalidState):
        await sock.recv()
    with pytest.raises(UnsupportedOption) as info:
        await sock.get_option(SNDTIMEO)
    assert info.value.option == SNDTIMEO


@pytest.mark.asyncio
async def test_option_round_trip():
    sock = Socket(FakeImpl())
    await sock.set_option(SUBSCRIBE, bytearray(b"TopicA"))
    assert await sock.get_option(SUBSCRIBE) == b"TopicA"


@pytest.mark.asyncio
async def test_monitor_queue_is_attached_and_bounded():
    inner = FakeImpl()
    sock = Socket(inner)
    queue = await sock.monitor(4)
    assert inner.monitors == [queue]
    assert queue.maxsize == 4

    tiny = await sock.monitor(0)
    assert tiny.maxsize == 1

    default = await sock.monitor_default()
    assert default.maxsize == DEFAULT_MONITOR_CAPACITY

    event = SocketEvent(ACCEPTED, "tcp://127.0.0.1:5565", peer_addr="peer")
    queue.put_nowait(event)
    assert await asyncio.wait_for(queue.get(), 1) is event


@pytest.mark.asyncio
async def test_monitor_setup_failure_raises():
    inner = FakeImpl()
    inner.fail_monitor = True
    with pytest.raises(ZmqError, match="monitor setup failed"):
        await Socket(inner).monitor(8)