import asyncio
import errno
import socket

import pytest

from rzmq.errors import AddrInUse, InternalError, InvalidEndpoint, InvalidState
from rzmq.socket import ACCEPTED, CleanupComplete, ConnSuccess, ReportError, SocketOptions
from rzmq.tcp_listener import (
    TcpListener,
    TcpTransportConfig,
    apply_tcp_socket_options,
    is_fatal,
)

WAIT = 2.0


def test_config_from_options_copies_tcp_fields():
    options = SocketOptions(
        tcp_nodelay=False,
        tcp_keepalive_idle=30.0,
        tcp_keepalive_interval=5.0,
        tcp_keepalive_count=4,
    )
    config = TcpTransportConfig.from_options(options)
    assert config.tcp_nodelay is False
    assert config.keepalive_time == 30.0
    assert config.keepalive_interval == 5.0
    assert config.keepalive_count == 4
    assert config.wants_keepalive is True


def test_config_without_keepalive():
    config = TcpTransportConfig.from_options(SocketOptions())
    assert config.wants_keepalive is False


@pytest.mark.parametrize("nodelay", [True, False])
def test_apply_sets_nodelay(nodelay):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        apply_tcp_socket_options(sock, TcpTransportConfig(tcp_nodelay=nodelay))
        value = sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY)
        assert bool(value) is nodelay


def test_apply_enables_keepalive_when_configured():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        apply_tcp_socket_options(sock, TcpTransportConfig(keepalive_time=60.0))
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) > 0


def test_apply_leaves_keepalive_off_by_default():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        apply_tcp_socket_options(sock, TcpTransportConfig())
        assert sock.getsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE) == 0


@pytest.mark.parametrize(
    "error, expected",
    [
        (BrokenPipeError(), True),
        (OSError(errno.EINVAL, "invalid"), True),
        (ConnectionResetError(errno.ECONNRESET, "reset"), False),
        (OSError(errno.EMFILE, "too many files"), False),
    ],
)
def test_is_fatal(error, expected):
    assert is_fatal(error) is expected


@pytest.mark.asyncio
@pytest.mark.parametrize("uri", ["127.0.0.1:0", "udp://127.0.0.1:0", "tcp://127.0.0.1", "tcp://:x"])
async def test_start_rejects_bad_endpoint(uri):
    listener = TcpListener(1, uri, asyncio.Queue())
    with pytest.raises(InvalidEndpoint):
        await listener.start()
    assert listener.running is False


@pytest.mark.asyncio
async def test_accepts_connection_and_reports_success():
    mailbox: asyncio.Queue = asyncio.Queue()
    monitor: asyncio.Queue = asyncio.Queue()
    uri = "tcp://127.0.0.1:0"
    listener = TcpListener(7, uri, mailbox, monitor=monitor)
    await listener.start()
    try:
        assert listener.running is True
        host, port = listener.local_address
        assert host == "127.0.0.1"
        assert port > 0

        client_reader, client_writer = await asyncio.open_connection(host, port)
        success = await asyncio.wait_for(mailbox.get(), WAIT)
        assert isinstance(success, ConnSuccess)
        assert success.target_endpoint_uri == uri
        assert success.endpoint.startswith("tcp://127.0.0.1:")

        event = await asyncio.wait_for(monitor.get(), WAIT)
        assert event.kind == ACCEPTED
        assert event.endpoint == uri
        assert "tcp://" + event.peer_addr == success.endpoint

        client_writer.write(b"ping")
        await client_writer.drain()
        assert await asyncio.wait_for(success.reader.readexactly(4), WAIT) == b"ping"

        success.writer.write(b"pong")
        await success.writer.drain()
        assert await asyncio.wait_for(client_reader.readexactly(4), WAIT) == b"pong"

        client_writer.close()
        success.writer.close()
    finally:
        await listener.stop()


@pytest.mark.asyncio
async def test_stop_reports_cleanup_once():
    mailbox: asyncio.Queue = asyncio.Queue()
    uri = "tcp://127.0.0.1:0"
    listener = TcpListener(3, uri, mailbox)
    await listener.start()
    await listener.stop()
    assert listener.running is False
    assert listener.local_address is None
    assert mailbox.get_nowait() == CleanupComplete(3, uri)
    await listener.stop()
    assert mailbox.empty()


@pytest.mark.asyncio
async def test_start_twice_raises():
    listener = TcpListener(1, "tcp://127.0.0.1:0", asyncio.Queue())
    await listener.start()
    try:
        with pytest.raises(InvalidState):
            await listener.start()
    finally:
        await listener.stop()


@pytest.mark.asyncio
async def test_bind_to_address_in_use_fails():
    first = TcpListener(1, "tcp://127.0.0.1:0", asyncio.Queue())
    await first.start()
    try:
        port = first.local_address[1]
        second = TcpListener(2, f"tcp://127.0.0.1:{port}", asyncio.Queue())
        with pytest.raises(AddrInUse):
            await second.start()
        assert second.running is False
    finally:
        await first.stop()


class _RejectingMailbox:
    def __init__(self) -> None:
        self.received: list = []
        self.reported = asyncio.Event()

    async def put(self, command) -> None:
        if isinstance(command, ConnSuccess):
            raise RuntimeError("core gone")
        self.received.append(command)
        if isinstance(command, ReportError):
            self.reported.set()


@pytest.mark.asyncio
async def test_closed_core_mailbox_stops_accept_loop():
    mailbox = _RejectingMailbox()
    uri = "tcp://127.0.0.1:0"
    listener = TcpListener(9, uri, mailbox)
    await listener.start()
    try:
        host, port = listener.local_address
        _, writer = await asyncio.open_connection(host, port)
        await asyncio.wait_for(mailbox.reported.wait(), WAIT)
        report = mailbox.received[0]
        assert report.handle == 9
        assert report.endpoint_uri == uri
        assert isinstance(report.error, InternalError)
        await asyncio.sleep(0)
        assert listener.running is False
        writer.close()
    finally:
        await listener.stop()
    assert mailbox.received[-1] == CleanupComplete(9, uri)