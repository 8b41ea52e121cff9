"""Live two-way session between a tube and the local terminal."""

from __future__ import annotations

import os
import sys
import threading
from typing import Any, Callable, Optional

from .context import _log, _log_tags
from .exceptions import ClosedError, TubeError
from .tube import Tube, _Driver


# how often the tube reader re-checks the stop signal
_POLL_INTERVAL = 0.1


def _input_fd(stdin: Any) -> int:
    if stdin is None:
        stdin = sys.stdin
    if isinstance(stdin, int):
        return stdin
    return stdin.fileno()


def _output_writer(stdout: Any) -> Callable[[bytes], None]:
    if stdout is None:
        stdout = sys.stdout.buffer
    if isinstance(stdout, int):
        fd = stdout

        def write_fd(data: bytes) -> None:
            view = memoryview(data)
            while view:
                view = view[os.write(fd, view):]

        return write_fd

    def write_stream(data: bytes) -> None:
        stdout.write(data)
        stdout.flush()

    return write_stream


class InteractiveBridge:
    """Copy tube -> local output and local input -> tube on two threads.

    The bridge borrows the tube for the duration of :meth:`run` and never
    closes it. The loops share nothing but a stop signal: when the tube side
    ends, the input side notices on its next wait and exits. Local EOF
    half-closes the tube so the peer sees end of input, and the session lasts
    until the peer closes.
    """

    def __init__(self, tube: Tube, stdin: Any = None, stdout: Any = None) -> None:
        self.tube = tube
        self._in_fd = _input_fd(stdin)
        self._write = _output_writer(stdout)
        self._stop: Optional[_Driver] = None

    def _tube_to_local(self) -> None:
        stop = self._stop
        try:
            while not stop.fired:
                try:
                    data = self.tube.recv(4096, timeout=_POLL_INTERVAL)
                except TimeoutError:
                    continue
                if not data:
                    _log("info", "Got EOF while reading in interactive")
                    break
                self._write(data)
        except (TubeError, OSError, ValueError) as exc:
            _log("debug", f"Interactive reader stopped: {exc}")
        finally:
            stop.fire()

    def _local_to_tube(self) -> None:
        stop = self._stop
        try:
            while True:
                try:
                    stop.wait([self._in_fd], None)
                except ClosedError:
                    return
                data = os.read(self._in_fd, 4096)
                if not data:
                    _log("info", "Got EOF on local input, closing the send side")
                    self.tube.shutdown("send")
                    return
                self.tube.send(data)
        except (TubeError, OSError, ValueError) as exc:
            _log("debug", f"Interactive writer stopped: {exc}")
            stop.fire()

    def run(self) -> None:
        """Run both loops and block until they have ended."""
        _log_tags("info", ["Switched"], "to interactive mode")
        self._stop = _Driver()
        self.tube._in_interactive = True
        workers = [
            threading.Thread(target=self._tube_to_local, name="tube->local", daemon=True),
            threading.Thread(target=self._local_to_tube, name="local->tube", daemon=True),
        ]
        try:
            for worker in workers:
                worker.start()
            for worker in workers:
                # short joins keep the main thread responsive to Ctrl-C
                while worker.is_alive():
                    worker.join(_POLL_INTERVAL)
        except KeyboardInterrupt:
            _log("info", "Interactive session interrupted")
            self._stop.fire()
            for worker in workers:
                worker.join()
        finally:
            self.tube._in_interactive = False
            self._stop.close()
            self._stop = None
        _log("info", "Left interactive mode")
