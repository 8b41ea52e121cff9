"""Pipe-backed tube around a spawned child process."""

from __future__ import annotations

import errno
import os
import signal
import subprocess
from typing import Any, Dict, Optional, Sequence, Union

from .context import _log, _stage, context
from .exceptions import ClosedError, SpawnError, TubeConnectionError
from .tube import Tube, _is_reset


class process(Tube):
    """Spawn a local process and expose tube interface.

    ``argv`` is an argument vector (``argv[0]`` is the program name) or a single
    executable path. The child is always executed directly, never through a
    shell, with its stdin/stdout wired to a pair of pipes.
    """

    def __init__(
        self,
        argv: Union[str, bytes, os.PathLike, Sequence[Union[str, bytes, os.PathLike]]],
        *,
        executable: Optional[str] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        stderr: Any = subprocess.STDOUT,
        timeout: Optional[float] = None,
    ) -> None:
        if isinstance(argv, (str, bytes, os.PathLike)):
            argv = [argv]
        argv = list(argv)
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = argv
        self.executable = os.fsdecode(executable if executable is not None else argv[0])
        argv_display = " ".join(os.fsdecode(a) for a in argv)
        _stage("[x]", f"Starting local process '{argv_display}'")

        self._proc: Optional[subprocess.Popen] = None
        self._stdin_fd = -1
        self._stdout_fd = -1
        self._reaped = False

        # to-child and from-child pipes; the child gets (to_r, from_w)
        opened: list[int] = []
        try:
            to_r, to_w = os.pipe()
            opened += [to_r, to_w]
            from_r, from_w = os.pipe()
            opened += [from_r, from_w]
        except OSError as exc:
            _close_fds(opened)
            raise SpawnError("pipe-create", f"pipe() failed: {exc}", executable=self.executable) from exc

        try:
            self._proc = subprocess.Popen(
                argv,
                shell=False,
                executable=executable,
                stdin=to_r,
                stdout=from_w,
                stderr=from_w if stderr is subprocess.STDOUT else stderr,
                cwd=cwd,
                env=env,
                bufsize=0,
                close_fds=True,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            _close_fds(opened)
            raise SpawnError("process-create", f"Failed to start '{self.executable}': {exc}", executable=self.executable) from exc

        # parent keeps only its own ends
        _close_fds([to_r, from_w])
        self._stdin_fd = to_w
        self._stdout_fd = from_r
        try:
            super().__init__(timeout)
        except OSError as exc:
            self._terminate_and_reap()
            _close_fds([to_w, from_r])
            raise SpawnError("pipe-create", f"Could not set up IO for '{self.executable}': {exc}", executable=self.executable) from exc
        _stage("[+]", f"Starting local process '{argv_display}' : pid {self._proc.pid}")

    # -- transport hooks ----------------------------------------------
    def _fileno(self) -> int:
        return self._stdout_fd

    def _input_fileno(self) -> int:
        return self._stdin_fd

    def _recv_raw(self, max_bytes: int) -> Optional[bytes]:
        try:
            return os.read(self._stdout_fd, max_bytes)
        except BlockingIOError:
            return None
        except OSError as exc:
            if self._closed:
                raise ClosedError("Tube is closed") from exc
            if _is_reset(exc):
                raise TubeConnectionError("reset", f"Read from '{self.executable}' failed: {exc}") from exc
            raise

    def _send_raw(self, data: bytes) -> None:
        if self._stdin_fd < 0:
            raise TubeConnectionError("broken-pipe", f"stdin of '{self.executable}' is closed")
        view = memoryview(data)
        total = 0
        while total < len(data):
            try:
                total += os.write(self._stdin_fd, view[total:])
            except BrokenPipeError as exc:
                raise TubeConnectionError("broken-pipe", f"'{self.executable}' closed its stdin") from exc
            except OSError as exc:
                if self._closed:
                    raise ClosedError("Tube is closed") from exc
                if exc.errno == errno.EPIPE:
                    raise TubeConnectionError("broken-pipe", f"'{self.executable}' closed its stdin") from exc
                raise

    def _shutdown_send(self) -> None:
        fd, self._stdin_fd = self._stdin_fd, -1
        _close_fds([fd])

    def _shutdown_recv(self) -> None:
        fd, self._stdout_fd = self._stdout_fd, -1
        self._eof = True
        _close_fds([fd])

    def _close_raw(self) -> None:
        # terminate, reap, then release the pipes; each step runs even if an earlier one failed
        try:
            self._terminate_and_reap()
        finally:
            _close_fds([self._stdin_fd, self._stdout_fd])
            self._stdin_fd = self._stdout_fd = -1

    def _terminate_and_reap(self) -> None:
        proc = self._proc
        if proc is None or self._reaped:
            return
        if proc.poll() is None:
            try:
                proc.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                proc.wait(timeout=context.close_grace)
            except subprocess.TimeoutExpired:
                _log("warning", f"'{self.executable}' ignored SIGTERM, killing pid {proc.pid}")
                proc.kill()
                proc.wait()
        self._reaped = True
        _log("debug", f"Process '{self.executable}' (pid {proc.pid}) exited with {proc.returncode}")

    # -- process state ------------------------------------------------
    def is_alive(self) -> bool:
        """Non-blocking wait: True while running, False once exited or closed."""
        if self._closed or self._proc is None:
            return False
        if self._reaped:
            return False
        try:
            running = self._proc.poll() is None
        except ChildProcessError:
            # somebody else collected it
            running = False
        if not running:
            self._reaped = True
        return running

    connected = is_alive

    def poll(self) -> Optional[int]:
        return self._proc.poll() if self._proc is not None else None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            code = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        self._reaped = True
        return code

    def kill(self) -> None:
        if self._proc is not None and self._proc.poll() is None:
            self._proc.kill()

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc is not None else -1

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<process '{self.executable}' pid={self.pid} {state}>"


def _close_fds(fds: Sequence[int]) -> None:
    for fd in fds:
        if fd < 0:
            continue
        try:
            os.close(fd)
        except OSError:
            pass


Process = process
