import socket
import threading

import pytest

from ceciproxy.proxy.tcpproxy import TcpProxy


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _ping_pong_target():
    listener = socket.create_server(("127.0.0.1", 0))

    def run():
        conn, _ = listener.accept()
        with conn:
            if _recv_exact(conn, 4) == b"ping":
                conn.sendall(b"pong")
        listener.close()

    threading.Thread(target=run, daemon=True).start()
    return f"127.0.0.1:{listener.getsockname()[1]}"


def _dead_address():
    with socket.create_server(("127.0.0.1", 0)) as listener:
        port = listener.getsockname()[1]
    return f"127.0.0.1:{port}"


def test_load_balance_round_robin():
    proxy = TcpProxy("127.0.0.1:0", ["a:1", "b:2"])
    assert [proxy.load_balance(0) for _ in range(3)] == ["a:1", "b:2", "a:1"]


def test_load_balance_exhausted():
    proxy = TcpProxy("127.0.0.1:0", ["a:1", "b:2"])
    assert proxy.load_balance(2) is None
    assert TcpProxy("127.0.0.1:0", []).load_balance(0) is None


def test_relays_to_target():
    proxy = TcpProxy("127.0.0.1:0", [_ping_pong_target()])
    proxy.start()
    try:
        port = proxy.listener.getsockname()[1]
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            conn.sendall(b"ping")
            assert _recv_exact(conn, 4) == b"pong"
    finally:
        proxy.stop()
    assert proxy.listener is None


def test_fails_over_to_next_target():
    proxy = TcpProxy("127.0.0.1:0", [_dead_address(), _ping_pong_target()])
    proxy.start()
    try:
        port = proxy.listener.getsockname()[1]
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            conn.sendall(b"ping")
            assert _recv_exact(conn, 4) == b"pong"
    finally:
        proxy.stop()


def test_no_reachable_target_closes_connection():
    proxy = TcpProxy("127.0.0.1:0", [_dead_address()])
    proxy.start()
    try:
        port = proxy.listener.getsockname()[1]
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            conn.sendall(b"ping")
            assert conn.recv(4) == b""
    finally:
        proxy.stop()


def test_bad_listen_address():
    with pytest.raises(ValueError):
        TcpProxy("no-port", []).start()