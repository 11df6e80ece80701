import asyncio
import sys

import pytest

from rzmq.errors import (
    InternalError,
    InvalidState,
    UnsupportedOption,
    ZmqError,
    ZmqTimeout,
)
from rzmq.socket import RCVTIMEO, SUBSCRIBE, UNSUBSCRIBE, Msg, SocketOptions
from rzmq.sub import CANCEL_COMMAND, SUBSCRIBE_COMMAND, SubscriptionTrie, SubSocket

SHORT = 0.2


def _ms(value):
    return value.to_bytes(4, sys.byteorder, signed=True)


def _sub(**kwargs):
    return SubSocket(SocketOptions(rcvtimeo=SHORT, **kwargs), {})


def test_trie_empty_matches_nothing():
    trie = SubscriptionTrie()
    assert trie.matches(b"anything") is False
    assert trie.matches(b"") is False


def test_trie_prefix_matching():
    trie = SubscriptionTrie()
    trie.subscribe(b"TopicA")
    assert trie.matches(b"TopicA: Data for A")
    assert trie.matches(b"TopicA")
    assert not trie.matches(b"TopicB: Data for B")
    assert not trie.matches(b"Topic")


def test_trie_empty_topic_matches_all():
    trie = SubscriptionTrie()
    trie.subscribe(b"")
    assert trie.matches(b"")
    assert trie.matches(b"Hello Subscriber")


def test_trie_reference_counts():
    trie = SubscriptionTrie()
    trie.subscribe(b"x")
    trie.subscribe(b"x")
    assert trie.unsubscribe(b"x") is True
    assert trie.matches(b"xyz")
    assert trie.unsubscribe(b"x") is True
    assert not trie.matches(b"xyz")
    assert trie.unsubscribe(b"x") is False
    assert len(trie) == 0


@pytest.mark.asyncio
async def test_basic_subscribe_all():
    sub = _sub()
    await sub.set_option(SUBSCRIBE, b"")
    await sub.handle_pipe_message(1, Msg(b"Hello Subscriber"))
    received = await sub.recv()
    assert received.data == b"Hello Subscriber"


@pytest.mark.asyncio
async def test_topic_filter():
    sub = _sub()
    await sub.set_option(SUBSCRIBE, b"TopicA")
    await sub.handle_pipe_message(1, Msg(b"TopicB: Data for B"))
    await sub.handle_pipe_message(1, Msg(b"TopicA: Data for A"))
    received = await sub.recv()
    assert received.data == b"TopicA: Data for A"
    with pytest.raises(ZmqTimeout):
        await sub.recv()


@pytest.mark.asyncio
async def test_multiple_subs():
    subs = [_sub(), _sub()]
    for sub in subs:
        await sub.set_option(SUBSCRIBE, b"")
        await sub.handle_pipe_message(1, Msg(b"Broadcast"))
    results = [(await sub.recv()).data for sub in subs]
    assert results == [b"Broadcast", b"Broadcast"]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    sub = _sub()
    topic = b"TopicToUnsub"
    await sub.set_option(SUBSCRIBE, topic)
    await sub.handle_pipe_message(1, Msg(b"TopicToUnsub:Data1"))
    assert (await sub.recv()).data == b"TopicToUnsub:Data1"
    await sub.set_option(UNSUBSCRIBE, topic)
    await sub.handle_pipe_message(1, Msg(b"TopicToUnsub:Data2"))
    with pytest.raises(ZmqTimeout):
        await sub.recv()


@pytest.mark.asyncio
async def test_late_subscriber_only_sees_later_messages():
    sub = _sub()
    await sub.handle_pipe_message(1, Msg(b"Message 1"))
    await sub.set_option(SUBSCRIBE, b"")
    await sub.handle_pipe_message(1, Msg(b"Message 2"))
    assert (await sub.recv()).data == b"Message 2"
    with pytest.raises(ZmqTimeout):
        await sub.recv()


@pytest.mark.asyncio
async def test_subscription_commands_sent_upstream():
    pipe = asyncio.Queue()
    sub = SubSocket(SocketOptions(), {10: pipe})
    await sub.pipe_attached(1, 10, None)
    await sub.set_option(SUBSCRIBE, b"TopicA")
    await sub.set_option(UNSUBSCRIBE, b"TopicA")
    assert pipe.get_nowait() == Msg(SUBSCRIBE_COMMAND + b"TopicA")
    assert pipe.get_nowait() == Msg(CANCEL_COMMAND + b"TopicA")
    assert pipe.empty()


@pytest.mark.asyncio
async def test_unsubscribe_unknown_topic_sends_nothing():
    pipe = asyncio.Queue()
    sub = SubSocket(SocketOptions(), {10: pipe})
    await sub.pipe_attached(1, 10, None)
    await sub.set_option(UNSUBSCRIBE, b"never")
    assert pipe.qsize() == 0


@pytest.mark.asyncio
async def test_detached_pipe_gets_no_commands():
    pipe = asyncio.Queue()
    sub = SubSocket(SocketOptions(), {10: pipe})
    await sub.pipe_attached(1, 10, None)
    await sub.pipe_detached(1)
    await sub.set_option(SUBSCRIBE, b"")
    assert pipe.qsize() == 0
    assert sub.peers == {}


@pytest.mark.asyncio
async def test_send_is_invalid():
    sub = _sub()
    with pytest.raises(InvalidState):
        await sub.send(Msg(b"data"))


@pytest.mark.asyncio
async def test_rcvtimeo_option_in_milliseconds():
    sub = SubSocket(SocketOptions(), {})
    await sub.set_option(RCVTIMEO, _ms(150))
    assert sub.options.rcvtimeo == pytest.approx(0.15)
    with pytest.raises(ZmqTimeout):
        await sub.recv()
    await sub.set_option(RCVTIMEO, _ms(-1))
    assert sub.options.rcvtimeo is None


@pytest.mark.asyncio
async def test_bad_option_value_length():
    sub = _sub()
    with pytest.raises(ZmqError):
        await sub.set_option(RCVTIMEO, b"\x01")


@pytest.mark.asyncio
async def test_unsupported_options():
    sub = _sub()
    with pytest.raises(UnsupportedOption):
        await sub.set_option(9999, b"")
    with pytest.raises(UnsupportedOption):
        await sub.get_pattern_option(SUBSCRIBE)


@pytest.mark.asyncio
async def test_recv_on_closed_queue():
    sub = _sub()
    await sub.fair_queue.close()
    with pytest.raises(InternalError):
        await sub.recv()