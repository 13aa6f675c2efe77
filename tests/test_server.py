import socket
import threading

import pytest

from ceciproxy.socks5.auth import AuthMethod, UserPassAuthenticator
from ceciproxy.socks5.credentials import StaticCredentials
from ceciproxy.socks5.request import SocksError
from ceciproxy.socks5.ruleset import permit_none
from ceciproxy.socks5.server import Config, Server


def _recv_exact(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _read_all(sock):
    sock.settimeout(2)
    data = b""
    while chunk := sock.recv(4096):
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

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return listener.getsockname()[1]


def test_socks5_connect():
    target_port = _ping_pong_target()
    creds = StaticCredentials({"foo": "bar"})
    server = Server(Config(auth_methods=[UserPassAuthenticator(creds)]))
    assert set(server.methods) == {AuthMethod.USER_PASS}
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    thread = threading.Thread(target=server.serve, args=(listener,), daemon=True)
    thread.start()
    try:
        with socket.create_connection(("127.0.0.1", port), timeout=2) as conn:
            req = bytes([5])
            req += bytes([2, 0, 2])
            req += bytes([1, 3]) + b"foo" + bytes([3]) + b"bar"
            req += bytes([5, 1, 0, 1, 127, 0, 0, 1])
            req += target_port.to_bytes(2, "big")
            req += b"ping"
            conn.sendall(req)

            expected = bytes([5, 2, 1, 0, 5, 0, 0, 1, 127, 0, 0, 1, 0, 0]) + b"pong"
            out = bytearray(_recv_exact(conn, len(expected)))
            assert len(out) == len(expected)
            out[12] = 0
            out[13] = 0
            assert bytes(out) == expected
    finally:
        server.close()
        thread.join(2)
    assert not thread.is_alive()


def test_close_stops_serve():
    server = Server(Config())
    listener = socket.create_server(("127.0.0.1", 0))
    thread = threading.Thread(target=server.serve, args=(listener,), daemon=True)
    thread.start()
    server.close()
    thread.join(3)
    assert not thread.is_alive()


def test_default_auth_methods():
    assert set(Server(Config()).methods) == {AuthMethod.NO_AUTH}
    with_creds = Server(Config(credentials=StaticCredentials({"foo": "bar"})))
    assert set(with_creds.methods) == {AuthMethod.USER_PASS}


def test_unsupported_version_raises():
    client, srv = socket.socketpair()
    with client:
        client.sendall(b"\x04")
        with pytest.raises(SocksError):
            Server(Config()).serve_conn(srv)


def test_auth_failure():
    client, srv = socket.socketpair()
    with client:
        client.sendall(bytes([5, 2, 0, 2, 1, 3]) + b"foo" + bytes([3]) + b"baz")
        creds = StaticCredentials({"foo": "bar"})
        server = Server(Config(auth_methods=[UserPassAuthenticator(creds)]))
        with pytest.raises(SocksError):
            server.serve_conn(srv)
        assert _read_all(client) == bytes([5, 2, 1, 1])


def test_unrecognized_address_type():
    client, srv = socket.socketpair()
    with client:
        client.sendall(bytes([5, 1, 0]) + bytes([5, 1, 0, 9]))
        with pytest.raises(SocksError):
            Server(Config()).serve_conn(srv)
        assert _read_all(client) == bytes([5, 0, 5, 8, 0, 1, 0, 0, 0, 0, 0, 0])


def test_connect_blocked_by_rules():
    client, srv = socket.socketpair()
    with client:
        client.sendall(bytes([5, 1, 0]) + bytes([5, 1, 0, 1, 127, 0, 0, 1, 0, 80]))
        server = Server(Config(rules=permit_none()))
        assert set(server.methods) == {AuthMethod.NO_AUTH}
        server.serve_conn(srv)
        reply = _read_all(client)
        assert reply == bytes([5, 0, 5, 2, 0, 1, 0, 0, 0, 0, 0, 0])