"""The SOCKS5 server: accepts connections and speaks the protocol on them."""

from __future__ import annotations

import ipaddress
import logging
import socket
import ssl
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable

from .auth import (
    SOCKS5_VERSION,
    AuthError,
    Authenticator,
    NoAuthAuthenticator,
    UserPassAuthenticator,
    _read_exact,
    authenticate,
)
from .request import (
    AddrSpec,
    Reply,
    Request,
    SocksError,
    UnrecognizedAddrType,
    handle_request,
    read_request,
    send_reply,
)
from .resolver import DNSResolver
from .ruleset import permit_all

_POLL_INTERVAL = 0.5


def _split_address(addr: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` and ``:port`` too) into a pair."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _peer_spec(conn: Any) -> AddrSpec | None:
    try:
        peer = conn.getpeername()
    except OSError:
        return None
    if not isinstance(peer, tuple) or len(peer) < 2:
        return None
    try:
        return AddrSpec(ip=ipaddress.ip_address(peer[0]), port=peer[1])
    except ValueError:
        return None


@dataclass
class Config:
    """Settings for a :class:`Server`.

    Unset fields get defaults when the server is created: no-auth (or
    username/password when ``credentials`` is given), the system DNS
    resolver, a rule set permitting everything and a module logger.
    """

    auth_methods: list[Authenticator] = field(default_factory=list)
    credentials: Any = None
    resolver: Any = None
    rules: Any = None
    rewriter: Callable[[Request], AddrSpec] | None = None
    bind_ip: Any = None
    logger: logging.Logger | None = None
    dial: Callable[[tuple[str, int]], socket.socket] | None = None
    tls_context: ssl.SSLContext | None = None


class Server:
    """Accepts connections and serves the SOCKS5 protocol on each."""

    def __init__(self, config: Config | None = None) -> None:
        config = config if config is not None else Config()
        if not config.auth_methods:
            if config.credentials is not None:
                config.auth_methods = [UserPassAuthenticator(config.credentials)]
            else:
                config.auth_methods = [NoAuthAuthenticator()]
        if config.resolver is None:
            config.resolver = DNSResolver()
        if config.rules is None:
            config.rules = permit_all()
        if config.logger is None:
            config.logger = logging.getLogger("ceciproxy.socks5")
        self.config = config
        self.methods: dict[int, Authenticator] = {int(a.code): a for a in config.auth_methods}
        self.address: tuple | None = None
        self.ready = threading.Event()
        self._listeners: list[socket.socket] = []
        self._lock = threading.Lock()
        self._closed = False

    def listen_and_serve(self, addr: str) -> None:
        """Listen on ``host:port`` (with TLS when configured) and serve."""
        listener = socket.create_server(_split_address(addr))
        if self.config.tls_context is not None:
            listener = self.config.tls_context.wrap_socket(
                listener, server_side=True, do_handshake_on_connect=False
            )
        self.address = listener.getsockname()
        self.ready.set()
        self.serve(listener)

    def serve(self, listener: socket.socket) -> None:
        """Accept connections from ``listener`` until the server is closed."""
        with self._lock:
            if self._closed:
                listener.close()
                return
            self._listeners.append(listener)
        listener.settimeout(_POLL_INTERVAL)
        try:
            while True:
                try:
                    conn, _ = listener.accept()
                except TimeoutError:
                    if self._closed:
                        return
                    continue
                except OSError:
                    if self._closed:
                        return
                    raise
                threading.Thread(target=self._serve_logged, args=(conn,), daemon=True).start()
        finally:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
            listener.close()

    def _serve_logged(self, conn: socket.socket) -> None:
        try:
            self.serve_conn(conn)
        except Exception:  # already logged; keep the worker thread quiet
            self.config.logger.debug("Socks.ServeConn finished with error", exc_info=True)

    def serve_conn(self, conn: socket.socket) -> None:
        """Serve one client connection, closing it when done."""
        log = self.config.logger
        with conn, conn.makefile("rb") as reader:
            try:
                if isinstance(conn, ssl.SSLSocket):
                    conn.do_handshake()
                (version,) = _read_exact(reader, 1)
            except (EOFError, OSError) as exc:
                log.error("Socks.ServeConn Failed to get version byte: %s", exc)
                raise SocksError(f"Failed to get version byte: {exc}") from exc

            if version != SOCKS5_VERSION:
                error = SocksError(f"Unsupported SOCKS version: {version}")
                log.error("Socks.ServeConn %s", error)
                raise error

            try:
                context = authenticate(self.methods, conn, reader)
            except (AuthError, EOFError, OSError) as exc:
                error = SocksError(f"Failed to authenticate: {exc}")
                log.error("Socks.ServeConn %s", error)
                raise error from exc

            try:
                request = read_request(reader)
            except UnrecognizedAddrType as exc:
                try:
                    send_reply(conn, Reply.ADDR_TYPE_NOT_SUPPORTED)
                except OSError as send_exc:
                    raise SocksError(f"Failed to send reply: {send_exc}") from send_exc
                raise SocksError(f"Failed to read destination address: {exc}") from exc
            except (SocksError, EOFError, OSError) as exc:
                raise SocksError(f"Failed to read destination address: {exc}") from exc

            request.auth_context = context
            request.remote_addr = _peer_spec(conn)

            log.info("Socks.ServeConn CONNECT %s", request.dest_addr.address())
            try:
                handle_request(
                    request,
                    conn,
                    resolver=self.config.resolver,
                    rules=self.config.rules,
                    rewriter=self.config.rewriter,
                    dial=self.config.dial,
                )
            except (SocksError, OSError, ValueError) as exc:
                log.error("Socks.ServeConn Failed to handle request: %s", exc)

    def close(self) -> None:
        """Stop serving and close every listener."""
        with self._lock:
            self._closed = True
            listeners = list(self._listeners)
        for listener in listeners:
            with suppress(OSError):
                listener.shutdown(socket.SHUT_RDWR)
            with suppress(OSError):
                listener.close()