"""Error taxonomy for tubes.

Every error derives from :class:`TubeError` and from the closest builtin, so
``except OSError`` / ``except EOFError`` handlers written for plain sockets
keep working.
"""

from __future__ import annotations

from typing import Optional


class TubeError(Exception):
    """Base class for every error raised by tubelib."""


class _KindMixin:
    kinds: tuple = ()

    def _set_kind(self, kind: str) -> None:
        if kind not in self.kinds:
            raise ValueError(f"{type(self).__name__}: unknown kind {kind!r}")
        self.kind = kind


class ConnectFailure(_KindMixin, TubeError, OSError):
    """Connection setup failed; ``kind`` says which stage."""

    kinds = ("dns", "refused", "timeout", "unreachable", "tls-handshake", "proxy-rejected")

    def __init__(self, kind: str, message: str, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
        self._set_kind(kind)
        self.host = host
        self.port = port
        super().__init__(f"[{kind}] {message}")


class SpawnError(_KindMixin, TubeError, OSError):
    kinds = ("pipe-create", "process-create")

    def __init__(self, kind: str, message: str, *, executable: Optional[str] = None) -> None:
        self._set_kind(kind)
        self.executable = executable
        super().__init__(f"[{kind}] {message}")


class TubeConnectionError(_KindMixin, TubeError, ConnectionError):
    """The peer went away abruptly during send/recv.

    The tube is left in an unspecified state; close and discard it.
    """

    kinds = ("reset", "broken-pipe")

    def __init__(self, kind: str, message: str) -> None:
        self._set_kind(kind)
        super().__init__(f"[{kind}] {message}")


class ClosedError(TubeError, EOFError):
    """Operation attempted on a tube or listener after close()."""


class BindError(_KindMixin, TubeError, OSError):
    kinds = ("in-use", "permission", "other")

    def __init__(self, kind: str, message: str, *, host: Optional[str] = None, port: Optional[int] = None) -> None:
        self._set_kind(kind)
        self.host = host
        self.port = port
        super().__init__(f"[{kind}] {message}")


class TruncatedError(TubeError, EOFError):
    """Peer closed before the expected data arrived.

    Recoverable: ``partial`` holds every byte read so far, in the same way
    asyncio's IncompleteReadError does.
    """

    def __init__(self, partial: bytes, expected: object = None) -> None:
        self.partial = partial
        self.expected = expected
        super().__init__(f"Connection closed after {len(partial)} bytes, expected {expected!r}")


class BufferLimitError(TubeError):
    """recvuntil accumulated more than ``limit`` bytes without a delimiter."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Delimiter not found within {limit} bytes")
