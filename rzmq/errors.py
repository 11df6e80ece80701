"""Exceptions raised by sockets and transports."""

from __future__ import annotations

import errno


class ZmqError(Exception):
    """Base class for every error the library raises."""


class InvalidEndpoint(ZmqError):
    """The endpoint string could not be parsed."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Invalid endpoint: {endpoint}")
        self.endpoint = endpoint


class UnsupportedTransport(ZmqError):
    """The endpoint names a transport scheme that is not available."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Unsupported transport: {endpoint}")
        self.endpoint = endpoint


class InvalidMessage(ZmqError):
    """A message or frame sequence is not valid for the socket pattern."""


class HostUnreachable(ZmqError):
    """The destination peer is unknown or no longer connected."""


class ConnectionClosed(ZmqError):
    """The connection or pipe was closed."""

    def __init__(self, detail: str = "Connection closed") -> None:
        super().__init__(detail)


class ResourceLimitReached(ZmqError):
    """A high-water mark was reached and the operation would block."""

    def __init__(self, detail: str = "Resource limit reached") -> None:
        super().__init__(detail)


class ZmqTimeout(ZmqError):
    """The operation did not complete within its timeout."""

    def __init__(self, detail: str = "Operation timed out") -> None:
        super().__init__(detail)


class InvalidState(ZmqError):
    """The operation is not allowed in the socket's current state."""


class UnsupportedOption(ZmqError):
    """The socket option is not supported by this socket."""

    def __init__(self, option: int) -> None:
        super().__init__(f"Unsupported option: {option}")
        self.option = option


class InternalError(ZmqError):
    """An internal invariant was broken or a component went away."""


class ConnectionRefused(ZmqError):
    """The remote side refused the connection."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Connection refused: {endpoint}")
        self.endpoint = endpoint


class AddrInUse(ZmqError):
    """The local address is already in use."""

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"Address in use: {endpoint}")
        self.endpoint = endpoint


def from_os_error(error: OSError, endpoint: str) -> ZmqError:
    """Map an operating-system error on ``endpoint`` to a library error.

    The original error is kept as ``__cause__`` of the returned exception.
    """
    code = error.errno
    result: ZmqError
    if code == errno.EADDRINUSE:
        result = AddrInUse(endpoint)
    elif code == errno.ECONNREFUSED or isinstance(error, ConnectionRefusedError):
        result = ConnectionRefused(endpoint)
    elif code == errno.EHOSTUNREACH:
        result = HostUnreachable(f"Host unreachable: {endpoint}")
    elif code == errno.ETIMEDOUT or isinstance(error, TimeoutError):
        result = ZmqTimeout(f"Operation timed out: {endpoint}")
    else:
        result = ZmqError(f"I/O error on {endpoint}: {error}")
    result.__cause__ = error
    return result