import socket
import threading

from ceciproxy.cert import Cert
from ceciproxy.proxy.socksproxy import SocksProxy
from ceciproxy.socks5.auth import AuthMethod


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
    return listener.getsockname()[1]


def _started(proxy):
    proxy.start()
    assert proxy.server.ready.wait(3)
    return proxy.server.address[1]


def test_connect_without_auth():
    target_port = _ping_pong_target()
    proxy = SocksProxy("127.0.0.1:0")
    port = _started(proxy)
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            conn.sendall(bytes([5, 1, 0]))
            assert _recv_exact(conn, 2) == bytes([5, 0])
            conn.sendall(bytes([5, 1, 0, 1, 127, 0, 0, 1]) + target_port.to_bytes(2, "big"))
            reply = bytearray(_recv_exact(conn, 10))
            reply[8:10] = b"\x00\x00"
            assert bytes(reply) == bytes([5, 0, 0, 1, 127, 0, 0, 1, 0, 0])
            conn.sendall(b"ping")
            assert _recv_exact(conn, 4) == b"pong"
    finally:
        proxy.stop()


def test_password_required():
    password = "password"
    proxy = SocksProxy("127.0.0.1:0", "user", password)
    assert set(proxy.server.methods) == {AuthMethod.USER_PASS}
    port = _started(proxy)
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            conn.sendall(bytes([5, 1, 2]))
            assert _recv_exact(conn, 2) == bytes([5, 2])
            conn.sendall(bytes([1, 4]) + b"user" + bytes([8]) + b"password")
            assert _recv_exact(conn, 2) == bytes([1, 0])
    finally:
        proxy.stop()


def test_wrong_password_rejected():
    password = "password"
    proxy = SocksProxy("127.0.0.1:0", "user", password)
    port = _started(proxy)
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            conn.sendall(bytes([5, 1, 2]))
            assert _recv_exact(conn, 2) == bytes([5, 2])
            conn.sendall(bytes([1, 4]) + b"user" + bytes([6]) + b"secret")
            assert _recv_exact(conn, 2) == bytes([1, 1])
    finally:
        proxy.stop()


def test_no_tls_without_key():
    proxy = SocksProxy("127.0.0.1:0", cert=Cert(crt_file="crt"))
    assert proxy.server.config.tls_context is None


def test_stop_ends_background_thread():
    proxy = SocksProxy("127.0.0.1:0")
    _started(proxy)
    thread = proxy._thread
    proxy.stop()
    assert not thread.is_alive()
    assert proxy._thread is None