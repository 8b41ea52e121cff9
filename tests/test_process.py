import os
import shutil
import sys
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tubelib import ClosedError, SpawnError, TubeConnectionError, context, process  # noqa: E402


def setup_module(module):
    context.clear()
    context(timeout=5.0, log_level="info")


def teardown_module(module):
    context.clear()


CAT = shutil.which("cat") or "/bin/cat"
ECHO = shutil.which("echo") or "/bin/echo"


def _wait_dead(p, limit=5.0):
    deadline = time.monotonic() + limit
    while p.is_alive() and time.monotonic() < deadline:
        time.sleep(0.05)
    return not p.is_alive()


def test_cat_ping():
    p = process(CAT)
    try:
        assert p.is_alive() is True
        p.sendline(b"ping")
        got = p.recvline(timeout=2.0)
        print("[TEST] cat said:", got)
        assert got == b"ping\n"
        assert p.pid > 0
        assert p.input_fileno() != p.output_fileno()
    finally:
        p.close()


def test_is_alive_tracks_child_exit():
    p = process([sys.executable, "-c", "import sys; sys.stdin.read()"])
    try:
        assert p.is_alive() is True
        p.shutdown("send")
        assert _wait_dead(p)
        # once it reported dead it stays dead
        assert p.is_alive() is False
        assert p.returncode == 0
        assert p.closed is False
    finally:
        p.close()
    assert p.is_alive() is False


def test_close_terminates_and_reaps():
    p = process([sys.executable, "-c", "import time; time.sleep(30)"])
    pid = p.pid
    p.close()
    p.close()
    print("[TEST] returncode after close:", p.returncode)
    assert p.returncode is not None
    assert p.is_alive() is False
    with pytest.raises(ChildProcessError):
        # already reaped by close()
        os.waitpid(pid, os.WNOHANG)
    with pytest.raises(ClosedError):
        p.send(b"x")
    with pytest.raises(ClosedError):
        p.recv()
    with pytest.raises(ClosedError):
        p.input_fileno()


def test_close_kills_child_that_ignores_sigterm():
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "sys.stdout.write('ready\\n')\n"
        "sys.stdout.flush()\n"
        "time.sleep(30)\n"
    )
    with context.local(close_grace=0.2):
        p = process([sys.executable, "-c", code])
        assert p.recvline(timeout=3.0) == b"ready\n"
        start = time.monotonic()
        p.close()
    assert time.monotonic() - start < 5.0
    assert p.returncode == -9


def test_missing_executable_is_spawn_error():
    with pytest.raises(SpawnError) as ei:
        process(["/nonexistent/definitely-not-here"])
    print("[TEST] spawn error:", ei.value)
    assert ei.value.kind == "process-create"
    assert isinstance(ei.value, OSError)


def test_no_shell_interpretation():
    # a whole command line in one string is just a (missing) program name
    with pytest.raises(SpawnError):
        process("echo hi; echo injected")

    p = process([ECHO, "hi; echo injected $(id)"])
    try:
        out = p.recvall(timeout=3.0)
        print("[TEST] echo said:", out)
        assert out == b"hi; echo injected $(id)\n"
    finally:
        p.close()


def test_empty_argv_rejected():
    with pytest.raises(ValueError):
        process([])


def test_stderr_is_merged_by_default():
    code = "import sys; sys.stderr.write('oops\\n'); sys.stderr.flush()"
    p = process([sys.executable, "-c", code])
    try:
        assert p.recvall(timeout=3.0) == b"oops\n"
    finally:
        p.close()


def test_env_and_cwd(tmp_path):
    code = "import os; print(os.environ['TUBE_MARK'], os.getcwd())"
    env = dict(os.environ, TUBE_MARK="marked")
    p = process([sys.executable, "-c", code], env=env, cwd=str(tmp_path))
    try:
        line = p.recvline(timeout=3.0)
    finally:
        p.close()
    mark, cwd = line.decode().split()
    assert mark == "marked"
    assert os.path.realpath(cwd) == os.path.realpath(str(tmp_path))


def test_send_to_exited_child_is_broken_pipe():
    p = process([sys.executable, "-c", "pass"])
    try:
        assert p.wait(timeout=5.0) == 0
        with pytest.raises(TubeConnectionError) as ei:
            p.send(b"x" * 65536)
        assert ei.value.kind == "broken-pipe"
    finally:
        p.close()


def test_child_output_after_exit_is_still_readable():
    p = process([sys.executable, "-c", "print('bye')"])
    try:
        p.wait(timeout=5.0)
        assert p.is_alive() is False
        assert p.recvline(timeout=2.0) == b"bye\n"
        assert p.recv() == b""
    finally:
        p.close()
