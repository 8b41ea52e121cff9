"""Listening socket that hands out one remote tube per inbound connection."""

from __future__ import annotations

import errno
import socket
import ssl as _ssl
import time
from typing import Optional, Union

from .context import _log, _stage
from .exceptions import BindError, ClosedError, ConnectFailure
from .remote import remote
from .tube import _Driver


def _map_bindaddr_family(bindaddr: str, fam: Union[str, int]) -> int:
    if isinstance(fam, int):
        return fam
    fam_l = str(fam).lower()
    if fam_l in ("ipv6", "inet6") or ":" in bindaddr:
        return socket.AF_INET6
    return socket.AF_INET


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


class listen:
    """Minimal listener compatible with pwntools.listen.

    Binds and listens immediately; ``accept()`` returns a :class:`remote`
    that owns the accepted socket.
    """

    def __init__(
        self,
        port: int = 0,
        bindaddr: str = "0.0.0.0",
        backlog: int = 128,
        *,
        fam: Union[str, int] = "any",
        ssl_context: Optional[_ssl.SSLContext] = None,
        timeout: Optional[float] = None,
    ) -> None:
        af = _map_bindaddr_family(bindaddr, fam)
        self.family = af
        self.ssl_context = ssl_context
        self.timeout = timeout
        self._closed = False
        self._sock = socket.socket(af, socket.SOCK_STREAM)
        try:
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if af == socket.AF_INET6:
                self._sock.bind((bindaddr, port, 0, 0))
            else:
                self._sock.bind((bindaddr, port))
            self._sock.listen(backlog)
            self._sock.setblocking(False)
            self._driver = _Driver()
        except OSError as exc:
            self._sock.close()
            if exc.errno == errno.EADDRINUSE:
                kind = "in-use"
            elif exc.errno in (errno.EACCES, errno.EPERM):
                kind = "permission"
            else:
                kind = "other"
            raise BindError(kind, f"Cannot listen on {bindaddr}:{port} - {exc}", host=bindaddr, port=port) from exc
        sockname = self._sock.getsockname()
        self.lhost, self.lport = sockname[0], sockname[1]
        _stage("[*]", f"Listening on {self.lhost}:{self.lport}")

    def __enter__(self) -> "listen":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        if self._closed:
            raise ClosedError("Listener is closed")
        return self._sock.fileno()

    def accept(self, timeout: Optional[float] = None) -> remote:
        """Block until a client connects and return a tube for it.

        Raises ClosedError if the listener is (or gets) closed, TimeoutError
        if ``timeout`` expires first.
        """
        if self._closed:
            raise ClosedError("Listener is closed")
        wait = self.timeout if timeout is None else timeout
        deadline = None if wait is None else time.monotonic() + wait
        while True:
            ready = self._driver.wait([self._sock.fileno()], _remaining(deadline))
            if not ready:
                raise TimeoutError(f"No connection within {wait}s")
            try:
                conn, addr = self._sock.accept()
            except BlockingIOError:
                # another thread won the race for this connection
                continue
            except OSError as exc:
                if self._closed:
                    raise ClosedError("Listener is closed") from exc
                raise
            break

        conn.setblocking(False)
        if self.ssl_context is not None:
            conn = self._handshake(conn, addr, deadline)
        _log("info", f"Accepted connection from {addr[0]}:{addr[1]}")
        return remote.fromsocket(conn)

    def _handshake(self, conn: socket.socket, addr, deadline: Optional[float]) -> _ssl.SSLSocket:
        """Server-side TLS handshake on a non-blocking socket.

        Waits through the listener's driver, so close() interrupts a client
        that connects and then stalls; the accept deadline still applies.
        """
        where = f"{addr[0]}:{addr[1]}"
        try:
            tls_conn = self.ssl_context.wrap_socket(conn, server_side=True, do_handshake_on_connect=False)
        except (_ssl.SSLError, OSError) as exc:
            conn.close()
            raise ConnectFailure("tls-handshake", f"TLS handshake with {where} failed: {exc}", host=addr[0], port=addr[1]) from exc
        try:
            while True:
                try:
                    tls_conn.do_handshake()
                    return tls_conn
                except _ssl.SSLWantReadError:
                    write = False
                except _ssl.SSLWantWriteError:
                    write = True
                if not self._driver.wait([tls_conn.fileno()], _remaining(deadline), write=write):
                    raise TimeoutError(f"TLS handshake with {where} timed out")
        except (TimeoutError, ClosedError):
            tls_conn.close()
            raise
        except (_ssl.SSLError, OSError) as exc:
            tls_conn.close()
            if self._closed:
                raise ClosedError("Listener is closed") from exc
            raise ConnectFailure("tls-handshake", f"TLS handshake with {where} failed: {exc}", host=addr[0], port=addr[1]) from exc

    wait_for_connection = accept

    def close(self) -> None:
        """Stop listening; an accept() blocked in another thread raises ClosedError."""
        if self._closed:
            return
        self._closed = True
        self._driver.fire()
        try:
            self._sock.close()
        except OSError as exc:
            _log("debug", f"Ignoring error while closing listener: {exc}")
        self._driver.close()
        _log("info", f"Stopped listening on {self.lhost}:{self.lport}")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "listening"
        return f"<listen {self.lhost}:{self.lport} {state}>"


Listener = listen
