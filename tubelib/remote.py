"""TCP tubes: plain, TLS, and tunnelled through an HTTP CONNECT proxy."""

from __future__ import annotations

import base64
import errno
import socket
import ssl as _ssl
import threading
from typing import Any, Optional, Tuple, Union

from .context import _log, _stage
from .exceptions import ClosedError, ConnectFailure, TubeConnectionError
from .tube import Tube, _is_reset


_WOULD_BLOCK = (BlockingIOError, _ssl.SSLWantReadError, _ssl.SSLWantWriteError)

# largest proxy reply head we are willing to buffer
_PROXY_HEAD_LIMIT = 64 * 1024


class _SocketTubeBase(Tube):
    """Common socket-backed tube implementation."""

    def __init__(self, sock: socket.socket, timeout: Optional[float]) -> None:
        self._sock = sock
        self._is_tls = isinstance(sock, _ssl.SSLSocket)
        # OpenSSL objects must not be entered from two threads at once
        self._ssl_lock = threading.Lock()
        try:
            super().__init__(timeout)
        except OSError:
            # driver or wiretap setup failed
            sock.close()
            raise
        self._sock.setblocking(False)

    def _fileno(self) -> int:
        return self._sock.fileno()

    def _pending(self) -> int:
        if not self._is_tls:
            return 0
        with self._ssl_lock:
            return self._sock.pending()

    def _recv_raw(self, max_bytes: int) -> Optional[bytes]:
        try:
            with self._ssl_lock:
                return self._sock.recv(max_bytes)
        except _WOULD_BLOCK:
            return None
        except (_ssl.SSLZeroReturnError, _ssl.SSLEOFError):
            return b""
        except OSError as exc:
            if self._closed:
                raise ClosedError("Tube is closed") from exc
            if _is_reset(exc):
                raise TubeConnectionError("reset", f"Connection reset by peer: {exc}") from exc
            raise TubeConnectionError("reset", f"Receive failed: {exc}") from exc

    def _send_raw(self, data: bytes) -> None:
        view = memoryview(data)
        total = 0
        while total < len(data):
            try:
                with self._ssl_lock:
                    sent = self._sock.send(view[total:])
            except _ssl.SSLWantReadError:
                # renegotiation in progress, wait for the peer
                self._driver.wait([self._fileno()], 0.05)
                continue
            except (BlockingIOError, _ssl.SSLWantWriteError):
                self._driver.wait([self._fileno()], None, write=True)
                continue
            except OSError as exc:
                if self._closed:
                    raise ClosedError("Tube is closed") from exc
                if _is_reset(exc):
                    raise TubeConnectionError("reset", f"Connection reset by peer: {exc}") from exc
                raise TubeConnectionError("broken-pipe", f"Send failed: {exc}") from exc
            total += sent

    def _close_raw(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def _half_close(self, how: int) -> None:
        # SSLSocket.shutdown() discards the TLS state; go to the raw socket
        try:
            socket.socket.shutdown(self._sock, how)
        except OSError as exc:
            _log("debug", f"Ignoring shutdown error: {exc}")

    def _shutdown_send(self) -> None:
        self._half_close(socket.SHUT_WR)

    def _shutdown_recv(self) -> None:
        self._half_close(socket.SHUT_RD)


def _map_family(fam: Union[str, int]) -> int:
    if isinstance(fam, int):
        return fam
    fam_l = str(fam).lower()
    if fam_l in ("ipv4", "inet"):
        return socket.AF_INET
    if fam_l in ("ipv6", "inet6"):
        return socket.AF_INET6
    return socket.AF_UNSPEC


def _connect_failure(exc: BaseException, host: str, port: int, what: str = "connect") -> ConnectFailure:
    if isinstance(exc, socket.gaierror):
        kind = "dns"
    elif isinstance(exc, (socket.timeout, TimeoutError)):
        kind = "timeout"
    elif isinstance(exc, ConnectionRefusedError):
        kind = "refused"
    elif isinstance(exc, OSError) and exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
        kind = "unreachable"
    elif isinstance(exc, ConnectionError):
        kind = "refused"
    else:
        kind = "unreachable"
    return ConnectFailure(kind, f"Failed to {what} {host}:{port} - {exc}", host=host, port=port)


def _dial(host: str, port: int, family: int, timeout: Optional[float]) -> Tuple[socket.socket, Any]:
    """Connect to the first reachable address of ``host``; blocking socket."""
    try:
        addrinfo = socket.getaddrinfo(host, port, family, socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise _connect_failure(exc, host, port, "resolve") from exc

    err: Optional[OSError] = None
    for af, socktype, proto, _, candidate_addr in addrinfo:
        candidate = None
        try:
            candidate = socket.socket(af, socktype, proto)
            candidate.settimeout(timeout)
            candidate.connect(candidate_addr)
        except OSError as exc:
            if candidate is not None:
                candidate.close()
            err = exc
            continue
        return candidate, candidate_addr
    if err is None:
        err = OSError(f"no addresses for {host}")
    raise _connect_failure(err, host, port) from err


class _ProxyTunnel:
    """CONNECT exchange state; lives only while remote() is connecting."""

    def __init__(
        self,
        proxy_host: str,
        proxy_port: int,
        host: str,
        port: int,
        auth: Optional[Tuple[str, str]] = None,
    ) -> None:
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.host = host
        self.port = port
        self.auth = auth

    def request(self) -> bytes:
        target = f"{self.host}:{self.port}"
        if ":" in self.host:
            target = f"[{self.host}]:{self.port}"
        lines = [f"CONNECT {target} HTTP/1.1", f"Host: {target}"]
        if self.auth is not None:
            token = base64.b64encode(f"{self.auth[0]}:{self.auth[1]}".encode()).decode("ascii")
            lines.append(f"Proxy-Authorization: Basic {token}")
        return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")

    def establish(self, sock: socket.socket) -> bytes:
        """Run the CONNECT exchange on a connected blocking socket.

        Returns any bytes the proxy already relayed after its reply head.
        """
        where = f"{self.proxy_host}:{self.proxy_port}"
        try:
            sock.sendall(self.request())
            head = bytearray()
            while b"\r\n\r\n" not in head:
                if len(head) > _PROXY_HEAD_LIMIT:
                    raise ConnectFailure("proxy-rejected", f"Oversized reply from proxy {where}", host=self.host, port=self.port)
                chunk = sock.recv(4096)
                if not chunk:
                    raise ConnectFailure("proxy-rejected", f"Proxy {where} closed the connection during CONNECT", host=self.host, port=self.port)
                head.extend(chunk)
        except ConnectFailure:
            raise
        except OSError as exc:
            raise _connect_failure(exc, self.proxy_host, self.proxy_port, "tunnel through proxy") from exc

        end = head.index(b"\r\n\r\n") + 4
        status_line = bytes(head[: head.find(b"\r\n")]).decode("latin-1", errors="replace")
        parts = status_line.split(None, 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
            raise ConnectFailure("proxy-rejected", f"Malformed reply from proxy {where}: {status_line!r}", host=self.host, port=self.port)
        if not 200 <= int(parts[1]) < 300:
            raise ConnectFailure("proxy-rejected", f"Proxy {where} refused CONNECT {self.host}:{self.port}: {status_line}", host=self.host, port=self.port)
        _log("debug", f"Proxy {where} tunnel established: {status_line}")
        return bytes(head[end:])


def _tls_context(ssl_context: Optional[_ssl.SSLContext], verify: bool) -> _ssl.SSLContext:
    if ssl_context is not None:
        return ssl_context
    ctx = _ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = _ssl.CERT_NONE
    return ctx


class remote(_SocketTubeBase):
    """TCP tube mirroring pwntools.remote basics.

    ``ssl=True`` negotiates TLS (certificates verified unless ``verify=False``);
    ``proxy=(host, port)`` tunnels through an HTTP CONNECT proxy first.
    Construction either returns a connected tube or raises ConnectFailure.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        timeout: Optional[float] = None,
        fam: Union[str, int] = "any",
        ssl: bool = False,
        verify: bool = True,
        ssl_context: Optional[_ssl.SSLContext] = None,
        sni: Union[str, bool] = True,
        proxy: Optional[Tuple[str, int]] = None,
        proxy_auth: Optional[Tuple[str, str]] = None,
        sock: Optional[socket.socket] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.ssl = ssl or ssl_context is not None

        if sock is not None:
            # adopt an already connected socket
            self._peer = _peername(sock)
            super().__init__(sock, timeout)
            _stage("[+]", f"Opened connection to {host}:{port} (from socket)")
            return

        label = "TLS " if self.ssl else ""
        via = f" via proxy {proxy[0]}:{proxy[1]}" if proxy else ""
        _stage("[x]", f"Opening {label}connection to {host} on port {port}{via}")

        leftover = b""
        if proxy is not None:
            tunnel = _ProxyTunnel(proxy[0], int(proxy[1]), host, port, proxy_auth)
            raw, sockaddr = _dial(tunnel.proxy_host, tunnel.proxy_port, _map_family(fam), timeout)
            try:
                leftover = tunnel.establish(raw)
            except BaseException:
                raw.close()
                raise
        else:
            raw, sockaddr = _dial(host, port, _map_family(fam), timeout)

        created: socket.socket = raw
        if self.ssl:
            if leftover:
                raw.close()
                raise ConnectFailure("proxy-rejected", "Proxy sent data before the TLS handshake", host=host, port=port)
            ctx = _tls_context(ssl_context, verify)
            if sni is True:
                server_hostname: Optional[str] = host
            elif sni is False:
                server_hostname = None
            else:
                server_hostname = str(sni)
            try:
                created = ctx.wrap_socket(raw, server_hostname=server_hostname)
            except (socket.timeout, TimeoutError) as exc:
                raw.close()
                raise ConnectFailure("timeout", f"TLS handshake with {host}:{port} timed out", host=host, port=port) from exc
            except (_ssl.SSLError, OSError, ValueError) as exc:
                raw.close()
                raise ConnectFailure("tls-handshake", f"TLS handshake with {host}:{port} failed: {exc}", host=host, port=port) from exc

        created.settimeout(None)
        self._peer = sockaddr
        super().__init__(created, timeout)
        if leftover:
            self._buffer.extend(leftover)
        _stage("[+]", f"Opened {label}connection to {host} on port {port}{via}")

    @classmethod
    def fromsocket(cls, sock: socket.socket, timeout: Optional[float] = None) -> "remote":
        """Wrap a connected socket; the tube takes ownership of it."""
        peer = _peername(sock)
        host, port = (peer[0], peer[1]) if peer else ("?", 0)
        return cls(host, port, sock=sock, timeout=timeout)

    @property
    def peer(self) -> Any:
        return self._peer

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<remote {self.host}:{self.port} tls={self.ssl} {state}>"


def _peername(sock: socket.socket) -> Any:
    try:
        return sock.getpeername()
    except OSError:
        return None


def tls(host: str, port: int, **kwargs: Any) -> remote:
    """Convenience wrapper for TLS connections.

    Example: s = tls('example.com', 443)
    """
    kwargs.setdefault("ssl", True)
    return remote(host, port, **kwargs)


Remote = remote
