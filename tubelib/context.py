"""Global settings and the small logger shared by every tube."""

from __future__ import annotations

import os
import sys
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional, Sequence, Union


_ByteLike = Union[bytes, bytearray, memoryview]


class _Context:
    """Small subset of pwntools.context required for IO work."""

    _defaults: Dict[str, Any] = {
        "log_level": "info",
        # None blocks forever; a number is the default per-call timeout
        "timeout": None,
        "newline": b"\n",
        "encoding": "utf-8",
        "recv_size": 4096,
        # cap on bytes buffered while scanning for a delimiter, None = unbounded
        "recvuntil_limit": None,
        # seconds a child gets between SIGTERM and SIGKILL on close()
        "close_grace": 1.0,
        # observability controls
        "log_timestamps": False,
        "log_color": False,
        # 'auto' -> text if mostly printable, else hex; 'text' -> always text lines; 'hex' -> always hexdump
        "log_dump": "auto",
        # where to write logs: 'stderr' or 'stdout'
        "log_stream": "stderr",
        # optional log file path (append)
        "log_file": None,
        # interactive logging mode: 'off' | 'tags' | 'full'
        "interactive_log": "tags",
        # optional global wiretap sink for all tubes (file path or binary file-like)
        "wiretap": None,
    }

    def __init__(self) -> None:
        self._state = dict(self._defaults)
        self._stack: list[Dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> "_Context":
        self._state.update(kwargs)
        if "log_level" in kwargs:
            self._apply_debug_defaults()
        return self

    def __getattr__(self, name: str) -> Any:
        if name in self._state:
            return self._state[name]
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            super().__setattr__(name, value)
        else:
            self._state[name] = value
            if name == "log_level":
                self._apply_debug_defaults()

    def clear(self) -> None:
        """Reset every setting to its default.

        Inside ``context.local()`` the reset only lasts until the block exits,
        which restores the settings saved on entry.
        """
        self._state = dict(self._defaults)

    # When user switches to debug, default to hex dump + colored tags unless overridden
    def _apply_debug_defaults(self) -> None:
        level = str(self._state.get("log_level", "")).lower()
        if level == "debug":
            if self._state.get("log_dump", "auto") == "auto":
                self._state["log_dump"] = "hex"
            if self._state.get("log_color", False) is False:
                self._state["log_color"] = True
            if self._state.get("interactive_log", "tags") == "tags":
                self._state["interactive_log"] = "full"

    @contextmanager
    def local(self, **kwargs: Any) -> Iterator["_Context"]:
        previous = dict(self._state)
        self._stack.append(previous)
        self._state.update(kwargs)
        try:
            yield self
        finally:
            self._state = self._stack.pop()


context = _Context()


_LEVELS = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
}

# interactive mode logs from two threads at once
_log_lock = threading.Lock()


def _should_log(level: str) -> bool:
    return _LEVELS.get(level, 20) >= _LEVELS.get(context.log_level, 20)


_COLOR = {
    "info": "\033[94m",
    "debug": "\033[92m",
    "warning": "\033[93m",
    "error": "\033[91m",
    "input": "\033[95m",
    "output": "\033[96m",
    "reset": "\033[0m",
}


def _maybe_color(s: str, role: str) -> str:
    if not context.log_color:
        return s
    color = _COLOR.get(role, "")
    return f"{color}{s}{_COLOR['reset']}" if color else s


_TAG_ROLE = {
    "IN": "input",
    "OUT": "output",
    "Switched": "warning",
}


def _format_tag(tag: str, role: str) -> str:
    # Only color the [TAG] token, not the entire line
    return _maybe_color(f"[{tag}]", role)


def _emit(line: str) -> None:
    stream = sys.stderr if context.log_stream == "stderr" else sys.stdout
    with _log_lock:
        print(line, file=stream, flush=True)
        lf = context.log_file
        if lf:
            try:
                with open(lf, "a", encoding="utf-8", errors="replace") as fp:
                    fp.write(line + "\n")
            except OSError:
                # a broken log file must never break IO
                pass


def _log_tags(level: str, extra_tags: Optional[Sequence[str]], message: str) -> None:
    if not _should_log(level):
        return
    parts = []
    if context.log_timestamps:
        parts.append(f"[{time.strftime('%H:%M:%S')}]")
    parts.append(_format_tag(level.upper(), level.lower()))
    if extra_tags:
        for t in extra_tags:
            parts.append(_format_tag(t, _TAG_ROLE.get(t, "info")))
    line = " ".join(parts) + (f" {message}" if message else "")
    _emit(line)


def _log(level: str, message: str) -> None:
    _log_tags(level, None, message)


def _stage(prefix: str, message: str, level: Optional[str] = None) -> None:
    # stage markers like pwntools: [x], [+], [*], [-]
    if level is None:
        level = "warning" if prefix.startswith("[-]") else "info"
    _log(level, f"{prefix} {message}")


def hexdump(data: bytes, start: int = 0, width: int = 16, group: int = 4) -> str:
    """Render ``data`` as offset / grouped hex / ascii columns."""
    out_lines = []
    total_groups = (width + group - 1) // group
    for offset in range(0, len(data), width):
        chunk = data[offset : offset + width]
        hex_cols = []
        for gi in range(total_groups):
            sub = chunk[gi * group : (gi + 1) * group]
            hx = " ".join(f"{b:02x}" for b in sub)
            # 'xx ' * (group-1) + 'xx'
            hex_cols.append(hx.ljust(group * 3 - 1))
        hex_part = "  ".join(hex_cols)
        ascii_part = bytes((c if 32 <= c <= 126 else 0x2E) for c in chunk).decode("ascii")
        out_lines.append(f"{start + offset:08x}  {hex_part}  │{ascii_part}│")
    return "\n".join(out_lines)


def _mostly_printable(b: bytes) -> bool:
    if not b:
        return True
    printable = sum(1 for x in b if 32 <= x <= 126 or x in (9, 10, 13))
    return printable / len(b) >= 0.8


def _debug_dump(label: str, data: bytes) -> None:
    if not _should_log("debug"):
        return
    tag = "IN" if label.startswith("Sent") else "OUT"
    _log_tags("debug", [tag], f"{label} {len(data)} bytes:")
    mode = str(context.log_dump)
    if mode == "text" or (mode == "auto" and _mostly_printable(data) and len(data) <= 4096):
        # escaped Python literal lines, not hexdump
        for line in data.splitlines(keepends=True):
            _emit("    " + repr(line))
    else:
        _emit("    " + hexdump(data).replace("\n", "\n    "))


def _log_send(data: bytes, *, in_interactive: bool = False) -> None:
    mode = str(context.interactive_log)
    if in_interactive and mode != "full":
        if mode == "tags":
            _log_tags("debug", ["IN"], f"Sent {len(data)} bytes")
        return
    _debug_dump("Sent", data)


def _log_recv(data: bytes, *, in_interactive: bool = False) -> None:
    mode = str(context.interactive_log)
    if in_interactive and mode != "full":
        if mode == "tags":
            _log_tags("debug", ["OUT"], f"Received {len(data)} bytes")
        return
    _debug_dump("Received", data)


def _ensure_bytes(data: Union[str, _ByteLike]) -> bytes:
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode(context.encoding)
    raise TypeError(f"Unsupported type {type(data)!r}")


# -- args compatibility ----------------------------------------------
class _Args:
    """Minimal pwntools-like args parser.

    - Parses env vars with prefix TUBELIB_ and command-line tokens of the form KEY or KEY=VAL
    - Parsing happens on first access, not at import time
    - Exposes mapping-like and attribute-like access; missing keys -> '' (empty string)
    - Applies common magic keys to context (DEBUG/SILENT/LOG_LEVEL/LOG_FILE/TIMEOUT)
    """

    _PREFIX = "TUBELIB_"

    def __init__(self) -> None:
        self._store: Dict[str, str] = {}
        self._parsed = False

    def _parse(self) -> None:
        if self._parsed:
            return
        self._parsed = True
        # 1) Env vars TUBELIB_*
        for k, v in os.environ.items():
            if k.startswith(self._PREFIX):
                self._store[k[len(self._PREFIX):]] = v
        # 2) CLI tokens like KEY or KEY=VAL; remove them from sys.argv
        keep: list[str] = sys.argv[:1]
        for tok in sys.argv[1:]:
            if "=" in tok:
                k, _, v = tok.partition("=")
                if k and k.isidentifier() and k.isupper():
                    self._store[k] = v
                    continue
            if tok.isidentifier() and tok.isupper():
                self._store[tok] = "1"
                continue
            keep.append(tok)
        sys.argv[:] = keep
        # 3) Apply common magic
        self._apply_magic()

    def _apply_magic(self) -> None:
        s = self._store
        if s.get("DEBUG"):
            context.log_level = "debug"
        if s.get("SILENT"):
            context.log_level = "error"
        if "LOG_LEVEL" in s:
            context.log_level = s["LOG_LEVEL"].lower()
        if "LOG_FILE" in s:
            context.log_file = s["LOG_FILE"]
        if "TIMEOUT" in s:
            try:
                context.timeout = float(s["TIMEOUT"])
            except ValueError:
                _log("warning", f"Ignoring non-numeric TIMEOUT={s['TIMEOUT']!r}")

    # mapping-like
    def __getitem__(self, k: str) -> str:
        self._parse()
        return self._store.get(k, "")

    def __contains__(self, k: str) -> bool:
        self._parse()
        return k in self._store

    def get(self, k: str, default: str = "") -> str:
        self._parse()
        return self._store.get(k, default)

    # attribute-like
    def __getattr__(self, k: str) -> str:
        if k.startswith("_"):
            raise AttributeError(k)
        self._parse()
        return self._store.get(k, "")

    def __repr__(self) -> str:
        return f"_Args({self._store!r})"


args = _Args()
