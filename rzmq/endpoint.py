"""Parsing of endpoint strings such as ``tcp://127.0.0.1:5555``."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from rzmq.errors import InvalidEndpoint, UnsupportedTransport

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


@dataclass(frozen=True)
class TcpEndpoint:
    """A TCP endpoint: a literal IP address and a port."""

    host: _IPAddress
    port: int
    uri: str

    @property
    def address(self) -> tuple[str, int]:
        """The ``(host, port)`` pair suitable for socket calls."""
        return str(self.host), self.port


@dataclass(frozen=True)
class IpcEndpoint:
    """A Unix-domain socket endpoint."""

    path: Path
    uri: str


@dataclass(frozen=True)
class InprocEndpoint:
    """An in-process endpoint identified by name."""

    name: str

    @property
    def uri(self) -> str:
        return f"inproc://{self.name}"


Endpoint = Union[TcpEndpoint, IpcEndpoint, InprocEndpoint]


def _parse_socket_address(text: str) -> tuple[_IPAddress, int]:
    """Parse ``ip:port`` or ``[ipv6]:port``; raise ValueError if invalid."""
    host: _IPAddress
    if text.startswith("["):
        close = text.find("]")
        if close == -1 or text[close + 1 : close + 2] != ":":
            raise ValueError(text)
        host = ipaddress.IPv6Address(text[1:close])
        port_text = text[close + 2 :]
    else:
        host_text, sep, port_text = text.rpartition(":")
        if not sep:
            raise ValueError(text)
        host = ipaddress.IPv4Address(host_text)
    if not (port_text.isascii() and port_text.isdigit()):
        raise ValueError(text)
    port = int(port_text)
    if port > 0xFFFF:
        raise ValueError(text)
    return host, port


def parse_endpoint(endpoint: str) -> Endpoint:
    """Parse an endpoint string into a structured endpoint."""
    scheme, sep, address = endpoint.partition("://")
    if not sep:
        raise InvalidEndpoint(endpoint)

    if scheme == "tcp":
        try:
            host, port = _parse_socket_address(address)
        except ValueError:
            raise InvalidEndpoint(endpoint) from None
        return TcpEndpoint(host, port, endpoint)

    if scheme in ("ipc", "inproc"):
        if not address or "\0" in address:
            raise InvalidEndpoint(endpoint)
        if scheme == "ipc":
            return IpcEndpoint(Path(address), endpoint)
        return InprocEndpoint(address)

    raise UnsupportedTransport(endpoint)