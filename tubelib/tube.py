"""Transport independent tube behaviour: buffering, delimiters, logging."""

from __future__ import annotations

import errno
import os
import select
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .context import _ByteLike, _ensure_bytes, _log, _log_recv, _log_send, context
from .exceptions import BufferLimitError, ClosedError, TruncatedError


_Delims = Union[str, _ByteLike, Sequence[Union[str, _ByteLike]]]


class _Driver:
    """Per-tube wakeup pipe so close() can interrupt a blocked select()."""

    def __init__(self) -> None:
        self._rfd, self._wfd = os.pipe()
        os.set_blocking(self._rfd, False)
        os.set_blocking(self._wfd, False)
        self.fired = False

    def fileno(self) -> int:
        return self._rfd

    def fire(self) -> None:
        if self.fired:
            return
        self.fired = True
        try:
            os.write(self._wfd, b"x")
        except OSError:
            pass

    def wait(self, fds: Sequence[int], timeout: Optional[float], *, write: bool = False) -> List[int]:
        """Block until one of ``fds`` is ready or the driver fires.

        Returns the ready subset of ``fds``; raises ClosedError once fired.
        """
        if self.fired:
            raise ClosedError("Tube is closed")
        watch = [self._rfd] if write else [self._rfd, *fds]
        wlist = list(fds) if write else []
        try:
            readable, writable, _ = select.select(watch, wlist, [], timeout)
        except (OSError, ValueError) as exc:
            # fd invalidated by a concurrent close()
            if self.fired:
                raise ClosedError("Tube is closed") from exc
            raise
        if self.fired or self._rfd in readable:
            raise ClosedError("Tube is closed")
        return writable if write else readable

    def close(self) -> None:
        for fd in (self._rfd, self._wfd):
            try:
                os.close(fd)
            except OSError:
                pass
        self._rfd = self._wfd = -1


class Tube:
    """Common functionality shared by remote/process tubes.

    Subclasses implement the ``_recv_raw`` / ``_send_raw`` / ``_close_raw``
    hooks; everything callers use lives here, so code written against a
    remote works unchanged against a process.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = context.timeout if timeout is None else timeout
        self._buffer = bytearray()
        self._closed = False
        self._eof = False
        self._driver = _Driver()
        # metrics
        now = time.monotonic()
        self._created_at = now
        self._last_send_at: Optional[float] = None
        self._last_recv_at: Optional[float] = None
        self._bytes_sent = 0
        self._bytes_recv = 0
        # optional per-tube wiretap sink (binary file-like with write())
        self._tap = None
        self._tap_owned = False
        self._in_interactive = False
        if context.wiretap:
            try:
                self.wiretap(context.wiretap)
            except OSError:
                self._driver.close()
                raise

    # -- hooks ---------------------------------------------------------
    def _fileno(self) -> int:
        raise NotImplementedError

    def _input_fileno(self) -> int:
        return self._fileno()

    def _pending(self) -> int:
        """Bytes the transport holds that select() cannot see (TLS records)."""
        return 0

    def _recv_raw(self, max_bytes: int) -> Optional[bytes]:
        """Read once. ``b""`` means EOF, ``None`` means try again later."""
        raise NotImplementedError

    def _send_raw(self, data: bytes) -> None:
        raise NotImplementedError

    def _close_raw(self) -> None:
        pass

    def _shutdown_send(self) -> None:
        self.close()

    def _shutdown_recv(self) -> None:
        self.close()

    # -- context helpers ----------------------------------------------
    def __enter__(self) -> "Tube":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- state ---------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def eof(self) -> bool:
        """True once the peer has closed its sending side."""
        return self._eof

    def close(self) -> None:
        """Release the transport. Idempotent and never raises."""
        if self._closed:
            return
        self._closed = True
        # wake readers blocked in another thread before the fd goes away
        self._driver.fire()
        try:
            self._close_raw()
        except Exception as exc:
            _log("debug", f"Ignoring error while closing {self!r}: {exc}")
        if self._tap is not None and self._tap_owned:
            try:
                self._tap.close()
            except OSError:
                pass
        self._tap = None
        self._driver.close()
        _log("info", "Tube closed")

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedError("Tube is closed")

    def settimeout(self, timeout: Optional[float]) -> None:
        self.timeout = context.timeout if timeout is None else timeout

    def fileno(self) -> int:
        return self.output_fileno()

    def output_fileno(self) -> int:
        """Descriptor the peer's bytes arrive on."""
        self._check_open()
        return self._fileno()

    def input_fileno(self) -> int:
        """Descriptor that send() writes to (what the peer reads)."""
        self._check_open()
        return self._input_fileno()

    def is_alive(self) -> bool:
        """Non-blocking liveness check."""
        if self._closed or self._eof:
            return False
        if self._buffer:
            return True
        try:
            self._fill_buffer(1, 0.0)
        except TimeoutError:
            pass
        except ConnectionError:
            return False
        return not (self._eof or self._closed)

    connected = is_alive

    def shutdown(self, direction: str = "both") -> None:
        """Close one or both directions of the tube.

        direction: 'send' | 'recv' | 'both'
        """
        d = direction.lower()
        if d not in {"send", "recv", "both"}:
            raise ValueError("direction must be 'send', 'recv', or 'both'")
        if self._closed:
            return
        if d == "both":
            self.close()
            return
        if d == "send":
            self._shutdown_send()
        else:
            self._shutdown_recv()

    # -- buffering -----------------------------------------------------
    def can_recv(self, timeout: float = 0.0) -> bool:
        if self._buffer:
            return True
        if self._closed or self._eof:
            return False
        if self._pending():
            return True
        try:
            ready = self._driver.wait([self._fileno()], timeout)
        except ClosedError:
            return False
        return bool(ready)

    def unrecv(self, data: Union[str, _ByteLike]) -> None:
        chunk = _ensure_bytes(data)
        self._buffer[:0] = chunk

    def peek(self, n: Optional[int] = None) -> bytes:
        if n is None:
            return bytes(self._buffer)
        return bytes(self._buffer[: max(0, n)])

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        eff = self.timeout if timeout is None else timeout
        return None if eff is None else time.monotonic() + eff

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def _fill_buffer(self, required: int, timeout: Optional[float]) -> None:
        """Read from the transport until ``required`` bytes are buffered.

        Stops early at EOF. Raises TimeoutError when ``timeout`` expires
        (0.0 means a single non-blocking poll) and ClosedError on local close.
        """
        self._check_open()
        deadline = None if timeout is None else time.monotonic() + timeout
        while len(self._buffer) < required and not self._eof:
            if not self._pending():
                wait_time = self._remaining(deadline)
                ready = self._driver.wait([self._fileno()], wait_time)
                if not ready:
                    raise TimeoutError(f"Timed out after {timeout}s waiting for data")
            chunk = self._recv_raw(int(context.recv_size))
            if chunk is None:
                # spurious wakeup (partial TLS record); re-check the deadline
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError(f"Timed out after {timeout}s waiting for data")
                continue
            if not chunk:
                self._eof = True
                _log("debug", "Peer closed the connection")
                break
            self._buffer.extend(chunk)
            self._bytes_recv += len(chunk)
            self._last_recv_at = time.monotonic()
            _log_recv(chunk, in_interactive=self._in_interactive)
            self._tap_write(b"< ", chunk)

    def _take(self, n: int) -> bytes:
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    # -- recv ----------------------------------------------------------
    def recv(self, numb: int = 4096, timeout: Optional[float] = None) -> bytes:
        """Return up to ``numb`` available bytes, ``b""`` once the peer closed."""
        self._check_open()
        if numb <= 0:
            return b""
        if not self._buffer:
            self._fill_buffer(1, self._remaining(self._deadline(timeout)))
        return self._take(min(numb, len(self._buffer)))

    def recvn(self, numb: int, timeout: Optional[float] = None) -> bytes:
        """Return exactly ``numb`` bytes."""
        self._check_open()
        self._fill_buffer(numb, self._remaining(self._deadline(timeout)))
        if len(self._buffer) < numb:
            raise TruncatedError(self._take(len(self._buffer)), numb)
        return self._take(numb)

    def recvuntil(
        self,
        delims: _Delims,
        *,
        drop: bool = False,
        timeout: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> bytes:
        """Receive up to and including the first delimiter.

        Bytes after the delimiter stay buffered. If the peer closes first a
        TruncatedError carrying everything read so far is raised.
        """
        if isinstance(delims, (list, tuple)):
            targets = [_ensure_bytes(d) for d in delims]
        else:
            targets = [_ensure_bytes(delims)]
        if not targets or any(len(t) == 0 for t in targets):
            raise ValueError("Delimiter must not be empty")
        if limit is None:
            limit = context.recvuntil_limit
        self._check_open()

        deadline = self._deadline(timeout)
        # only rescan the tail that could hold a delimiter straddling the old end
        longest = max(len(t) for t in targets)
        scan_from = 0
        while True:
            end = -1
            match_len = 0
            for delim in targets:
                idx = self._buffer.find(delim, scan_from)
                # earliest end wins, ties go to the longer delimiter
                if idx != -1 and (end == -1 or idx + len(delim) < end or (idx + len(delim) == end and len(delim) > match_len)):
                    end, match_len = idx + len(delim), len(delim)
            if end != -1:
                data = self._take(end)
                return data[:-match_len] if drop else data
            if limit is not None and len(self._buffer) > limit:
                raise BufferLimitError(limit)
            if self._eof:
                partial = self._take(len(self._buffer))
                raise TruncatedError(partial, targets[0] if len(targets) == 1 else targets)
            scan_from = max(0, len(self._buffer) - longest + 1)
            self._fill_buffer(len(self._buffer) + 1, self._remaining(deadline))

    def recvline(self, *, keepends: bool = True, timeout: Optional[float] = None) -> bytes:
        return self.recvuntil(context.newline, drop=not keepends, timeout=timeout)

    def recvlines(
        self,
        numlines: int,
        *,
        keepends: bool = False,
        timeout: Optional[float] = None,
    ) -> List[bytes]:
        deadline = self._deadline(timeout)
        return [
            self.recvline(keepends=keepends, timeout=self._remaining(deadline))
            for _ in range(numlines)
        ]

    def recvline_contains(
        self,
        keyword: Union[str, _ByteLike, Iterable[Union[str, _ByteLike]]],
        *,
        timeout: Optional[float] = None,
    ) -> bytes:
        if isinstance(keyword, (list, tuple, set)):
            needles = [_ensure_bytes(k) for k in keyword]
        else:
            needles = [_ensure_bytes(keyword)]
        deadline = self._deadline(timeout)
        while True:
            line = self.recvline(timeout=self._remaining(deadline))
            if any(needle in line for needle in needles):
                return line

    def recvall(self, timeout: Optional[float] = None) -> bytes:
        """Read until the peer closes (or the tube is closed locally).

        With a timeout, returns whatever arrived before it expired.
        """
        self._check_open()
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while not self._eof:
                self._fill_buffer(len(self._buffer) + 1, self._remaining(deadline))
        except (TimeoutError, ClosedError):
            pass
        return self._take(len(self._buffer))

    def clean(self, timeout: float = 0.05) -> bytes:
        """Drain whatever arrives until ``timeout`` passes with no new data."""
        data = bytearray(self._take(len(self._buffer)))
        while not self._eof:
            try:
                self._fill_buffer(1, timeout)
            except TimeoutError:
                break
            data.extend(self._take(len(self._buffer)))
        return bytes(data)

    # -- send ----------------------------------------------------------
    def send(self, data: Union[str, _ByteLike]) -> None:
        """Write every byte of ``data`` or raise."""
        payload = _ensure_bytes(data)
        self._check_open()
        self._send_raw(payload)
        self._bytes_sent += len(payload)
        self._last_send_at = time.monotonic()
        _log_send(payload, in_interactive=self._in_interactive)
        self._tap_write(b"> ", payload)

    def sendline(self, data: Union[str, _ByteLike] = b"") -> None:
        self.send(_ensure_bytes(data) + context.newline)

    def sendafter(
        self,
        delim: _Delims,
        data: Union[str, _ByteLike],
        *,
        timeout: Optional[float] = None,
    ) -> bytes:
        received = self.recvuntil(delim, timeout=timeout)
        self.send(data)
        return received

    def sendlineafter(
        self,
        delim: _Delims,
        data: Union[str, _ByteLike],
        *,
        timeout: Optional[float] = None,
    ) -> bytes:
        received = self.recvuntil(delim, timeout=timeout)
        self.sendline(data)
        return received

    def sendthen(
        self,
        delim: _Delims,
        data: Union[str, _ByteLike],
        *,
        timeout: Optional[float] = None,
    ) -> bytes:
        self.send(data)
        return self.recvuntil(delim, timeout=timeout)

    def sendlinethen(
        self,
        delim: _Delims,
        data: Union[str, _ByteLike],
        *,
        timeout: Optional[float] = None,
    ) -> bytes:
        self.sendline(data)
        return self.recvuntil(delim, timeout=timeout)

    # -- observability helpers ---------------------------------------
    def stats(self) -> Dict[str, Any]:
        return {
            "bytes_sent": self._bytes_sent,
            "bytes_recv": self._bytes_recv,
            "buffered": len(self._buffer),
            "created_at": self._created_at,
            "last_send_at": self._last_send_at,
            "last_recv_at": self._last_recv_at,
            "closed": self._closed,
            "eof": self._eof,
        }

    def reset_stats(self) -> None:
        self._bytes_sent = 0
        self._bytes_recv = 0
        self._last_send_at = None
        self._last_recv_at = None

    def wiretap(self, sink: Union[str, os.PathLike, Any]) -> None:
        """Mirror raw IO to a sink (file path or binary file-like)."""
        if self._tap is not None and self._tap_owned:
            self._tap.close()
        if isinstance(sink, (str, bytes, os.PathLike)):
            self._tap = open(sink, "ab")
            self._tap_owned = True
        else:
            self._tap = sink
            self._tap_owned = False

    def _tap_write(self, prefix: bytes, data: bytes) -> None:
        if self._tap is None:
            return
        try:
            self._tap.write(prefix + data)
            if hasattr(self._tap, "flush"):
                self._tap.flush()
        except (OSError, ValueError) as exc:
            _log("debug", f"Wiretap write failed: {exc}")

    # -- interactive ---------------------------------------------------
    def interactive(self, stdin: Any = None, stdout: Any = None) -> None:
        """Bridge this tube to the local terminal until either side ends."""
        from .interactive import InteractiveBridge

        self._check_open()
        InteractiveBridge(self, stdin=stdin, stdout=stdout).run()


def _is_reset(exc: OSError) -> bool:
    return isinstance(exc, ConnectionResetError) or exc.errno in (errno.ECONNRESET, errno.ECONNABORTED)
