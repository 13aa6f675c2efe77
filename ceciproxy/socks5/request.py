"""SOCKS5 requests: parsing, replies and command handling."""

from __future__ import annotations

import errno
import ipaddress
import queue
import socket
import threading
from contextlib import suppress
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable

from .auth import SOCKS5_VERSION, AuthContext, _read_exact, _send
from .resolver import DNSResolver, IPAddress
from .ruleset import Command, permit_all

_CHUNK = 32 * 1024


class AddrType(IntEnum):
    """Address type codes."""

    IPV4 = 1
    FQDN = 3
    IPV6 = 4


class Reply(IntEnum):
    """Reply codes sent back to the client."""

    SUCCESS = 0
    SERVER_FAILURE = 1
    RULE_FAILURE = 2
    NETWORK_UNREACHABLE = 3
    HOST_UNREACHABLE = 4
    CONNECTION_REFUSED = 5
    TTL_EXPIRED = 6
    COMMAND_NOT_SUPPORTED = 7
    ADDR_TYPE_NOT_SUPPORTED = 8


class SocksError(Exception):
    """A SOCKS5 request could not be read or served."""


class UnrecognizedAddrType(SocksError):
    """The request carried an unknown address type."""

    def __init__(self, message: str = "Unrecognized address type") -> None:
        super().__init__(message)


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class AddrSpec:
    """A destination given as an IP address or a domain name, with a port."""

    fqdn: str = ""
    ip: IPAddress | None = None
    port: int = 0

    def __str__(self) -> str:
        if self.fqdn:
            return f"{self.fqdn}:{self.port}"
        return f"{self.ip}:{self.port}"

    def address(self) -> str:
        """A dialable ``host:port`` string, preferring the IP address."""
        return _join_host_port(*self._endpoint())

    def _endpoint(self) -> tuple[str, int]:
        if self.ip is not None:
            return str(self.ip), self.port
        return self.fqdn, self.port


@dataclass
class Request:
    """A request received from a client after authentication."""

    version: int = SOCKS5_VERSION
    command: int = 0
    dest_addr: AddrSpec = field(default_factory=AddrSpec)
    auth_context: AuthContext | None = None
    remote_addr: AddrSpec | None = None
    real_dest_addr: AddrSpec | None = None
    reader: Any = field(default=None, repr=False, compare=False)


def read_addr_spec(reader: Any) -> AddrSpec:
    """Read an address type byte, the address and the port."""
    (addr_type,) = _read_exact(reader, 1)
    spec = AddrSpec()
    if addr_type == AddrType.IPV4:
        spec.ip = ipaddress.IPv4Address(_read_exact(reader, 4))
    elif addr_type == AddrType.IPV6:
        spec.ip = ipaddress.IPv6Address(_read_exact(reader, 16))
    elif addr_type == AddrType.FQDN:
        (length,) = _read_exact(reader, 1)
        spec.fqdn = _read_exact(reader, length).decode("utf-8", "surrogateescape")
    else:
        raise UnrecognizedAddrType()
    spec.port = int.from_bytes(_read_exact(reader, 2), "big")
    return spec


def read_request(reader: Any) -> Request:
    """Read a request header and destination from ``reader``."""
    try:
        version, command, _reserved = _read_exact(reader, 3)
    except (EOFError, OSError) as exc:
        raise SocksError(f"Failed to get command version: {exc}") from exc
    if version != SOCKS5_VERSION:
        raise SocksError(f"Unsupported command version: {version}")
    dest = read_addr_spec(reader)
    return Request(version=SOCKS5_VERSION, command=command, dest_addr=dest, reader=reader)


def send_reply(writer: Any, reply: int, addr: AddrSpec | None = None) -> None:
    """Send a reply carrying ``addr`` (all zeros when it is None)."""
    if addr is None:
        addr_type, body, port = AddrType.IPV4, bytes(4), 0
    elif addr.fqdn:
        name = addr.fqdn.encode("utf-8", "surrogateescape")
        if len(name) > 255:
            raise SocksError(f"Failed to format address: {addr}")
        addr_type, body, port = AddrType.FQDN, bytes([len(name)]) + name, addr.port
    elif isinstance(addr.ip, ipaddress.IPv4Address):
        addr_type, body, port = AddrType.IPV4, addr.ip.packed, addr.port
    elif isinstance(addr.ip, ipaddress.IPv6Address):
        mapped = addr.ip.ipv4_mapped
        if mapped is not None:
            addr_type, body = AddrType.IPV4, mapped.packed
        else:
            addr_type, body = AddrType.IPV6, addr.ip.packed
        port = addr.port
    else:
        raise SocksError(f"Failed to format address: {addr}")

    header = bytes([SOCKS5_VERSION, reply, 0, addr_type])
    _send(writer, header + body + (port & 0xFFFF).to_bytes(2, "big"))


def _reply(conn: Any, reply: int, addr: AddrSpec | None = None) -> None:
    try:
        send_reply(conn, reply, addr)
    except OSError as exc:
        raise SocksError(f"Failed to send reply: {exc}") from exc


def handle_request(
    request: Request,
    conn: Any,
    resolver: Any = None,
    rules: Any = None,
    rewriter: Callable[[Request], AddrSpec] | None = None,
    dial: Callable[[tuple[str, int]], socket.socket] | None = None,
) -> None:
    """Serve an authenticated request, writing replies and data to ``conn``.

    ``resolver`` has a ``resolve(name)`` method, ``rules`` an
    ``allow(request)`` method, ``rewriter`` maps a request to its real
    destination and ``dial`` opens a socket to a ``(host, port)`` pair.
    """
    if resolver is None:
        resolver = DNSResolver()
    if rules is None:
        rules = permit_all()

    dest = request.dest_addr
    if dest.fqdn:
        try:
            dest.ip = resolver.resolve(dest.fqdn)
        except OSError as exc:
            _reply(conn, Reply.HOST_UNREACHABLE)
            raise SocksError(f"Failed to resolve destination '{dest.fqdn}': {exc}") from exc

    request.real_dest_addr = rewriter(request) if rewriter is not None else dest

    if request.command == Command.CONNECT:
        _handle_connect(request, conn, rules, dial)
    elif request.command == Command.BIND:
        _handle_unsupported(request, conn, rules, "Bind")
    elif request.command == Command.ASSOCIATE:
        _handle_unsupported(request, conn, rules, "Associate")
    else:
        _reply(conn, Reply.COMMAND_NOT_SUPPORTED)
        raise SocksError(f"Unsupported command: {request.command}")


def _handle_unsupported(request: Request, conn: Any, rules: Any, verb: str) -> None:
    if not rules.allow(request):
        _reply(conn, Reply.RULE_FAILURE)
        raise SocksError(f"{verb} to {request.dest_addr} blocked by rules")
    _reply(conn, Reply.COMMAND_NOT_SUPPORTED)


def _dial_failure_reply(exc: OSError) -> Reply:
    message = str(exc).lower()
    if isinstance(exc, ConnectionRefusedError) or "refused" in message:
        return Reply.CONNECTION_REFUSED
    if exc.errno == errno.ENETUNREACH or "network is unreachable" in message:
        return Reply.NETWORK_UNREACHABLE
    return Reply.HOST_UNREACHABLE


def _handle_connect(request: Request, conn: Any, rules: Any, dial: Any) -> None:
    if not rules.allow(request):
        _reply(conn, Reply.RULE_FAILURE)
        raise SocksError(f"Connect to {request.dest_addr} blocked by rules")

    if dial is None:
        dial = socket.create_connection
    real = request.real_dest_addr or request.dest_addr
    try:
        target = dial(real._endpoint())
    except OSError as exc:
        _reply(conn, _dial_failure_reply(exc))
        raise SocksError(f"Connect to {request.dest_addr} failed: {exc}") from exc

    with target:
        try:
            host, port = target.getsockname()[:2]
            _reply(conn, Reply.SUCCESS, AddrSpec(ip=ipaddress.ip_address(host), port=port))
            _relay(request.reader, conn, target)
        finally:
            with suppress(OSError):
                target.shutdown(socket.SHUT_RDWR)


def _copy_to_target(reader: Any, target: socket.socket, results: queue.Queue) -> None:
    error: Exception | None = None
    try:
        if reader is not None:
            read = getattr(reader, "read1", reader.read)
            while chunk := read(_CHUNK):
                target.sendall(chunk)
    except (OSError, ValueError) as exc:
        error = exc
    with suppress(OSError):
        target.shutdown(socket.SHUT_WR)
    results.put(error)


def _copy_to_client(target: socket.socket, conn: Any, results: queue.Queue) -> None:
    error: Exception | None = None
    try:
        while chunk := target.recv(_CHUNK):
            _send(conn, chunk)
    except (OSError, ValueError) as exc:
        error = exc
    shutdown = getattr(conn, "shutdown", None)
    if shutdown is not None:
        with suppress(OSError):
            shutdown(socket.SHUT_WR)
    results.put(error)


def _relay(reader: Any, conn: Any, target: socket.socket) -> None:
    results: queue.Queue = queue.Queue()
    workers = [
        threading.Thread(target=_copy_to_target, args=(reader, target, results), daemon=True),
        threading.Thread(target=_copy_to_client, args=(target, conn, results), daemon=True),
    ]
    for worker in workers:
        worker.start()
    for _ in workers:
        error = results.get()
        if error is not None:
            raise error