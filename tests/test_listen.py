import os
import socket
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tubelib import BindError, ClosedError, Listener, context, listen, remote  # noqa: E402


def setup_module(module):
    context.clear()
    context(timeout=5.0, log_level="info")


def teardown_module(module):
    context.clear()


def test_accept_and_talk_both_ways():
    srv = listen(0, "127.0.0.1")
    assert srv.lport > 0
    client = remote("127.0.0.1", srv.lport)
    try:
        conn = srv.accept(timeout=3.0)
        with conn:
            client.sendline(b"up")
            assert conn.recvline(timeout=2.0) == b"up\n"
            conn.sendline(b"down")
            assert client.recvline(timeout=2.0) == b"down\n"
            print("[TEST] accepted peer:", conn.peer)
            assert conn.peer[0] == "127.0.0.1"
    finally:
        client.close()
        srv.close()


def test_port_in_use_is_bind_error():
    first = listen(0, "127.0.0.1")
    try:
        with pytest.raises(BindError) as ei:
            listen(first.lport, "127.0.0.1")
        print("[TEST] bind error:", ei.value)
        assert ei.value.kind == "in-use"
        assert isinstance(ei.value, OSError)
    finally:
        first.close()


def test_accept_timeout():
    with Listener(0, "127.0.0.1") as srv:
        start = time.monotonic()
        with pytest.raises(TimeoutError):
            srv.accept(timeout=0.2)
        assert time.monotonic() - start < 2.0
        assert srv.closed is False
    assert srv.closed is True


def test_close_wakes_blocked_accept():
    srv = listen(0, "127.0.0.1")
    outcome = []

    def waiter():
        try:
            outcome.append(srv.accept())
        except Exception as exc:
            outcome.append(exc)

    t = threading.Thread(target=waiter, daemon=True)
    t.start()
    time.sleep(0.2)
    srv.close()
    t.join(2.0)
    print("[TEST] blocked accept got:", outcome)
    assert not t.is_alive()
    assert len(outcome) == 1 and isinstance(outcome[0], ClosedError)
    with pytest.raises(ClosedError):
        srv.accept(timeout=0.1)
    srv.close()


def test_accepted_tube_outlives_listener():
    srv = listen(0, "127.0.0.1")
    client = remote("127.0.0.1", srv.lport)
    conn = srv.wait_for_connection(timeout=3.0)
    srv.close()
    try:
        client.send(b"still here")
        assert conn.recvn(10, timeout=2.0) == b"still here"
    finally:
        conn.close()
        client.close()


def test_http_style_request_over_listener():
    # the framing a small HTTP layer would do on top of a tube
    srv = listen(0, "127.0.0.1")
    served = []

    def handle():
        conn = srv.accept(timeout=3.0)
        with conn:
            head = conn.recvuntil(b"\r\n\r\n", timeout=3.0)
            lines = head.decode().split("\r\n")
            method, path, _ = lines[0].split(" ")
            headers = dict(line.split(": ", 1) for line in lines[1:] if line)
            body = conn.recvn(int(headers.get("Content-Length", "0")), timeout=3.0)
            served.append((method, path, body))
            payload = body[::-1]
            conn.send(b"HTTP/1.1 200 OK\r\nContent-Length: %d\r\n\r\n" % len(payload) + payload)

    t = threading.Thread(target=handle, daemon=True)
    t.start()
    try:
        sock = socket.create_connection(("127.0.0.1", srv.lport), timeout=3.0)
        with sock:
            sock.sendall(b"POST /echo HTTP/1.1\r\nHost: x\r\nContent-Length: 5\r\n\r\nhello")
            reply = b""
            while not reply.endswith(b"olleh"):
                chunk = sock.recv(4096)
                if not chunk:
                    break
                reply += chunk
        t.join(2.0)
    finally:
        srv.close()
    assert served == [("POST", "/echo", b"hello")]
    assert reply.startswith(b"HTTP/1.1 200 OK\r\n")
    assert reply.endswith(b"\r\n\r\nolleh")
