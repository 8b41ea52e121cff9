import os
import socket
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tubelib import context, hexdump, listen, remote  # noqa: E402
from tubelib.context import _Args  # noqa: E402


def setup_function(function):
    context.clear()


def teardown_function(function):
    context.clear()


def test_context_local_restores_previous_values():
    context(newline=b"\r\n")
    with context.local(newline=b"\n", timeout=1.5):
        assert context.newline == b"\n"
        assert context.timeout == 1.5
    assert context.newline == b"\r\n"
    assert context.timeout is None


def test_context_keys():
    assert set(context._defaults) == {
        "log_level",
        "timeout",
        "newline",
        "encoding",
        "recv_size",
        "recvuntil_limit",
        "close_grace",
        "log_timestamps",
        "log_color",
        "log_dump",
        "log_stream",
        "log_file",
        "interactive_log",
        "wiretap",
    }


def test_clear_inside_local_is_undone_on_exit():
    context(timeout=2.0, newline=b"\r\n")
    with context.local(log_level="warning"):
        context.clear()
        assert context.timeout is None
        assert context.newline == b"\n"
        assert context.log_level == "info"
    assert context.timeout == 2.0
    assert context.newline == b"\r\n"
    assert context.log_level == "info"


def test_debug_level_switches_dump_defaults():
    context(log_level="debug")
    assert context.log_dump == "hex"
    assert context.log_color is True
    assert context.interactive_log == "full"
    context.clear()
    assert context.log_level == "info"
    assert context.log_dump == "auto"


def test_custom_newline_used_by_sendline_and_recvline():
    a, b = socket.socketpair()
    r = remote.fromsocket(a)
    try:
        with context.local(newline=b"\r\n"):
            r.sendline(b"hi")
            assert b.recv(16) == b"hi\r\n"
            b.sendall(b"one\ntwo\r\n")
            assert r.recvline(timeout=2.0) == b"one\ntwo\r\n"
    finally:
        r.close()
        b.close()


def test_args_magic_env(monkeypatch):
    print("[TEST] args magic via env + argv")
    monkeypatch.setenv("TUBELIB_DEBUG", "1")
    monkeypatch.setenv("TUBELIB_TIMEOUT", "0.7")
    argv = [sys.argv[0], "A=1", "REMOTE", "--keep-me", "lower=1"]
    monkeypatch.setattr(sys, "argv", argv, raising=False)
    fresh = _Args()
    # nothing happens until first access
    assert context.log_level == "info"
    assert fresh.A == "1"
    assert fresh["REMOTE"] == "1"
    assert "REMOTE" in fresh
    assert fresh.MISSING == ""
    assert fresh.get("MISSING", "x") == "x"
    assert context.log_level == "debug"
    assert context.timeout == 0.7
    assert sys.argv == [argv[0], "--keep-me", "lower=1"]


def test_args_bad_timeout_is_ignored(monkeypatch):
    monkeypatch.setenv("TUBELIB_TIMEOUT", "soon")
    monkeypatch.setattr(sys, "argv", [sys.argv[0]], raising=False)
    fresh = _Args()
    assert fresh.TIMEOUT == "soon"
    assert context.timeout is None


def test_hexdump_layout():
    out = hexdump(b"ABCD\x00\xff")
    print(out)
    assert out.startswith("00000000  41 42 43 44  00 ff")
    assert out.endswith("│ABCD..│")
    lines = hexdump(bytes(range(20)), start=0x100).splitlines()
    assert len(lines) == 2
    assert lines[1].startswith("00000110  10 11 12 13")


def test_log_file_and_debug_dump(tmp_path, capsys):
    log_path = tmp_path / "tube.log"
    context(log_level="debug")
    context(log_color=False, log_stream="stdout", log_file=str(log_path))
    a, b = socket.socketpair()
    r = remote.fromsocket(a)
    try:
        r.send(b"\x00\x01binary\xff")
        b.recv(16)
    finally:
        r.close()
        b.close()
    out = capsys.readouterr().out
    print(out)
    assert "[DEBUG] [IN] Sent 9 bytes:" in out
    assert "00000000  00 01 62 69" in out
    logged = log_path.read_text()
    assert "Sent 9 bytes" in logged
    assert "Tube closed" in logged


def test_log_level_filters_messages(capsys):
    context(log_level="warning", log_stream="stdout")
    srv = listen(0, "127.0.0.1")
    srv.close()
    assert capsys.readouterr().out == ""
