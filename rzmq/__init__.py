"""Asyncio building blocks for ZeroMQ-style messaging: endpoints, frames, ROUTER and SUB patterns, TCP, IPC and in-process transports."""

__version__ = "0.1.0"

__all__ = [
    "endpoint",
    "errors",
    "inproc",
    "ipc",
    "router",
    "socket",
    "sub",
    "tcp_connecter",
    "tcp_listener",
]