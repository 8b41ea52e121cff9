"""Simplified pwntools-like tubes: one interface for sockets and processes."""

from .context import args, context, hexdump
from .exceptions import (
    BindError,
    BufferLimitError,
    ClosedError,
    ConnectFailure,
    SpawnError,
    TruncatedError,
    TubeConnectionError,
    TubeError,
)
from .interactive import InteractiveBridge
from .listen import Listener, listen
from .process import Process, process
from .remote import Remote, remote, tls
from .tube import Tube


__all__ = [
    "context",
    "args",
    "hexdump",
    "Tube",
    "remote",
    "Remote",
    "tls",
    "process",
    "Process",
    "listen",
    "Listener",
    "InteractiveBridge",
    "TubeError",
    "ConnectFailure",
    "SpawnError",
    "TubeConnectionError",
    "ClosedError",
    "BindError",
    "TruncatedError",
    "BufferLimitError",
]

__version__ = "0.1.0"
