# rzmq

Asyncio building blocks for messaging in the style of ZeroMQ: endpoint
parsing, multi-part message frames, the ROUTER and SUB socket patterns, and
TCP, Unix-domain (IPC) and in-process transports. There are no third-party
dependencies.

## Installation

```
pip install rzmq
```

For running the test suite:

```
pip install "rzmq[test]"
pytest
```

## Endpoints

`rzmq.endpoint.parse_endpoint` turns a `scheme://address` string into a
`TcpEndpoint`, `IpcEndpoint` or `InprocEndpoint`:

- `tcp://127.0.0.1:5555` or `tcp://[::1]:5555` (a literal IP address and port)
- `ipc:///tmp/service.sock`
- `inproc://service-name`

```python
from rzmq.endpoint import parse_endpoint, TcpEndpoint

ep = parse_endpoint("tcp://127.0.0.1:5555")
assert isinstance(ep, TcpEndpoint)
assert ep.address == ("127.0.0.1", 5555)
```

A malformed address raises `rzmq.errors.InvalidEndpoint`; an unknown scheme
raises `rzmq.errors.UnsupportedTransport`.

## Messages, options and events

`rzmq.socket` holds the shared types:

- `Msg` is one frame (`data`, `flags`). A frame with `MsgFlags.MORE` set is
  followed by more frames of the same message; test it with `Msg.is_more()`.
- `SocketOptions` holds high-water marks, send/receive timeouts (seconds,
  `None` for no timeout), TCP keepalive settings and the reconnect interval.
- `SocketEvent` is a monitor event; its `kind` is one of `ACCEPTED`,
  `ACCEPT_FAILED`, `CONNECTED`, `CONNECT_DELAYED`, `CONNECT_RETRIED` and
  `CONNECT_FAILED`.
- `ConnSuccess`, `ConnFailed`, `ReportError` and `CleanupComplete` are the
  notifications transports put on their `core_mailbox`.
- `Socket` is a handle whose coroutines (`bind`, `connect`, `disconnect`,
  `unbind`, `send`, `recv`, `set_option`, `get_option`, `close`, `monitor`,
  `monitor_default`) forward to an implementation object supplied to it.

All errors derive from `rzmq.errors.ZmqError`.

## ROUTER

`rzmq.router.RouterSocket` queues every incoming message behind an identity
frame naming the peer, and sends a message to the peer named by an identity
frame sent first with the MORE flag. Peers register their identity through
`pipe_attached`; a peer without one gets an 8-byte identity made from its
pipe id. Empty delimiter frames with MORE set are dropped on input.

```python
import asyncio
from rzmq.router import RouterSocket
from rzmq.socket import Msg, MsgFlags

async def main():
    outgoing = asyncio.Queue()
    router = RouterSocket(pipe_senders={2: outgoing})
    await router.pipe_attached(1, 2, b"peer-a")

    await router.handle_pipe_message(1, Msg(b"hello"))
    identity = await router.recv()   # b"peer-a", MORE set
    payload = await router.recv()    # b"hello"

    await router.send(Msg(identity.data, MsgFlags.MORE))
    await router.send(Msg(b"reply"))
    # outgoing now holds the identity frame and b"reply"

asyncio.run(main())
```

Sending to an unknown identity raises `HostUnreachable`; a first frame
without MORE or with empty data raises `InvalidMessage`. With a send timeout
of `0`, a full outgoing pipe raises `ResourceLimitReached`; a positive
timeout that expires raises `ZmqTimeout`, as does an expired receive
timeout.

## SUB

`rzmq.sub.SubSocket` delivers only messages whose data starts with a
subscribed topic; the empty topic matches everything. Subscriptions are
counted, so a topic subscribed twice needs two unsubscribes.

```python
from rzmq.socket import Msg, SUBSCRIBE
from rzmq.sub import SubSocket

sub = SubSocket()
await sub.set_option(SUBSCRIBE, b"news")
await sub.handle_pipe_message(1, Msg(b"sport: ignored"))
await sub.handle_pipe_message(1, Msg(b"news: kept"))
msg = await sub.recv()   # b"news: kept"
```

Subscribing sends `b"\x01" + topic`, and a successful unsubscribe sends
`b"\x00" + topic`, to every attached peer. `set_option` also accepts
`RCVTIMEO`/`SNDTIMEO` (milliseconds, negative for none) and
`RCVHWM`/`SNDHWM`, as 4-byte native-order integers. `send` raises
`InvalidState`.

## Transports

- `rzmq.tcp_listener.TcpListener` binds a TCP address and reports each
  accepted connection as a `ConnSuccess` carrying an asyncio stream reader
  and writer. `apply_tcp_socket_options` sets nodelay and keepalive from a
  `TcpTransportConfig`.
- `rzmq.tcp_connecter.TcpConnecter` connects to a TCP endpoint, retrying
  every `reconnect_ivl` seconds; the interval doubles up to
  `reconnect_ivl_max` when that is set. With an interval of zero, or on a
  fatal error (see `is_fatal_connect_error`), it gives up after reporting
  `ConnFailed`.
- `rzmq.ipc.IpcListener` binds a Unix-domain socket path, replacing a stale
  file there, and removes the file on `stop()`. `IpcConnecter` makes a single
  connection attempt.
- `rzmq.inproc` joins `InprocPeer` objects in one event loop through an
  `InprocRegistry` with `bind_inproc`, `connect_inproc`, `disconnect_inproc`
  and `unbind_inproc`. Connecting to an unbound name raises
  `ConnectionRefused`; binding a name twice raises `AddrInUse`.

Listeners and connecters put `CleanupComplete` on their mailbox when they
finish, and emit `SocketEvent`s on an optional monitor queue.

## What is not included

The package has no context or socket core that creates sockets by
`SocketType` and wires patterns to transports: `Socket` needs an
implementation object passed in. Only the ROUTER and SUB patterns are
provided; PUB, REQ, REP, DEALER, PUSH and PULL appear in `SocketType` but
have no pattern logic. TCP and IPC connections are handed over as raw
asyncio streams; there is no wire-protocol framing or handshake, so peer
identities are only those given to `pipe_attached`.