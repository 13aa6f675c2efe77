"""An HTTP proxy with CONNECT tunnelling, basic auth and a small stats API."""

from __future__ import annotations

import base64
import binascii
import dataclasses
import http.client
import json
import logging
import re
import socket
import socketserver
import ssl
import threading
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, unquote, urlsplit

import yaml

from ..cert import Cert
from ..socks5.server import _split_address

_CHUNK = 32 * 1024
_DIAL_TIMEOUT = 10.0
_FIRST_DELAY = 2.0
_MIN_DELAY = 10.0
_MAX_DELAY = 60.0
_HTTP_OKAY = b"HTTP/1.1 200 OK\r\n\r\n"
_HOP_HEADERS = {
    "connection",
    "proxy-connection",
    "keep-alive",
    "transfer-encoding",
    "te",
    "trailer",
    "upgrade",
    "content-length",
}

_STATS_TEMPLATE_HEAD = """
<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8">
    <title>OpenLAN Ceci</title>
    <style>
      body, table, a {{
        background-color: #1d1d1d;
        color: #bababa;
        font-size: small;
      }}
      td, th {{
        border: 1px solid #424242;
        border-radius: 2px;
        text-align: center;
      }}
    </style>
  </head>
  <body>
    <table>
    <tr>
      <td>Project:</td><td><a href="https://github.com/luscis/openlan">OpenLAN Ceci</a></td>
    </tr>
    <tr>
      <td>Total:</td><td>{total}</td>
    </tr>
    <tr>
      <td>Bytes:</td><td>{nbytes}</td>
    </tr>
    <tr>
      <td>Configuration:</td><td><a href="/api/config">display</a></td>
    </tr>
    <tr>
      <td>APIs:</td><td><a href="/api">display</a></td>
    </tr>
    <tr>
      <td>StartAt:</td><td>{start_at}</td>
    </tr>
    </table>
    <table>
    <tr>
      <td>Domain</td><td>Count</td><td>Bytes</td><td>LastAt</td>
    </tr>"""

_STATS_TEMPLATE_ROW = """
    <tr>
      <td>{domain}</td><td>{count}</td>
      <td>{nbytes}</td><td>{last_at}
    </tr>"""

_STATS_TEMPLATE_TAIL = """
    </table>
  <body>
</html>"""


def _now() -> str:
    return str(datetime.now().astimezone())


@dataclass
class HttpRecord:
    """Traffic seen for one destination host."""

    domain: str = ""
    count: int = 0
    last_at: str = ""
    create_at: str = ""
    bytes: int = 0

    def update(self, nbytes: int) -> None:
        """Count one more event carrying ``nbytes`` bytes."""
        if self.count == 0:
            self.create_at = _now()
        self.count += 1
        self.bytes += nbytes
        self.last_at = _now()

    def as_json(self) -> dict[str, Any]:
        return {
            "Count": self.count,
            "LastAt": self.last_at,
            "CreateAt": self.create_at,
            "Domain": self.domain,
            "Bytes": self.bytes,
        }

    def as_yaml(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "lastat": self.last_at,
            "createat": self.create_at,
            "domain": self.domain,
            "bytes": self.bytes,
        }


def decode_basic_auth(auth: str) -> tuple[str, str] | None:
    """Split a ``Basic`` credential into (user, password), or None if malformed."""
    prefix = "Basic "
    if len(auth) < len(prefix) or auth[: len(prefix)].lower() != prefix.lower():
        return None
    try:
        raw = base64.b64decode(auth[len(prefix):], validate=True)
    except (binascii.Error, ValueError):
        return None
    text = raw.decode("utf-8", "surrogateescape")
    user, sep, remainder = text.partition(":")
    if not sep:
        return None
    return user, remainder


def encode_basic_auth(value: str) -> str:
    """Build a ``Basic`` credential from ``user:password``."""
    return "Basic " + base64.b64encode(value.encode("utf-8")).decode("ascii")


def _to_json(value: Any) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


def _to_yaml(value: Any) -> bytes:
    text = yaml.safe_dump(value, default_flow_style=False, sort_keys=False, allow_unicode=True)
    if text.endswith("\n...\n"):
        text = text[: -len("...\n")]
    return text.encode("utf-8")


@dataclass(frozen=True)
class _Route:
    method: str
    template: str
    pattern: re.Pattern
    handler: Callable[..., tuple[int, str, bytes]]


class _Server(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], proxy: HttpProxy) -> None:
        self.proxy = proxy
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(address, _Handler)

    def server_bind(self) -> None:
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = str(host)
        self.server_port = port

    def handle_error(self, request: Any, client_address: Any) -> None:
        self.proxy._log.debug("HttpProxy error from %s", client_address, exc_info=True)


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    server: _Server

    def setup(self) -> None:
        if isinstance(self.request, ssl.SSLSocket):
            self.request.do_handshake()
        super().setup()

    def log_message(self, format: str, *args: Any) -> None:
        self.server.proxy._log.debug(format, *args)

    def _dispatch(self) -> None:
        self.server.proxy._serve(self)

    do_GET = do_POST = do_PUT = do_DELETE = do_HEAD = _dispatch
    do_PATCH = do_OPTIONS = do_CONNECT = _dispatch

    def reply(self, status: int, content_type: str, body: bytes, headers: Any = ()) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        for key, value in headers:
            self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def error(self, status: int, message: str, headers: Any = ()) -> None:
        extra = [("X-Content-Type-Options", "nosniff"), *headers]
        self.reply(status, "text/plain; charset=utf-8", (message + "\n").encode("utf-8"), extra)


def _read_chunked(reader: Any) -> bytes:
    body = bytearray()
    while True:
        line = reader.readline()
        if not line:
            raise EOFError("truncated chunked body")
        size = int(line.split(b";", 1)[0].strip() or b"0", 16)
        if size == 0:
            while reader.readline() not in (b"\r\n", b"\n", b""):
                pass
            return bytes(body)
        body += reader.read(size)
        reader.readline()


class HttpProxy:
    """An HTTP(S) forward proxy serving a statistics API for direct requests."""

    def __init__(
        self,
        listen: str,
        username: str | None = None,
        password: str | None = None,
        password_file: str | None = None,
        cert: Cert | None = None,
        ca_cert: str | None = None,
    ) -> None:
        self.listen = listen
        self.cert = cert
        self.ca_cert = ca_cert or ""
        self.password_file = password_file or ""
        self.passwords: dict[str, str] = {}
        self.requests: dict[str, HttpRecord] = {}
        self.start_at = ""
        self.address: tuple | None = None
        self.ready = threading.Event()
        self._log = logging.getLogger(f"ceciproxy.http.{listen}")
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._server: _Server | None = None
        self._thread: threading.Thread | None = None
        if username:
            self.passwords[username] = password or ""
            self._log.debug("HttpProxy: Auth user %s", username)
        self._routes = self._build_routes()
        self._load_passwords()

    # -- users ---------------------------------------------------------

    def _load_passwords(self) -> None:
        if not self.password_file:
            return
        path = Path(self.password_file)
        if not path.exists():
            return
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            self._log.warning("HttpProxy.LoadPass open %s", exc)
            return
        for line in lines:
            user, sep, remainder = line.partition(":")
            if sep:
                self.passwords[user] = remainder

    def _save_passwords(self) -> None:
        if not self.password_file:
            return
        lines = "".join(f"{user}:{stored}\n" for user, stored in self.passwords.items())
        try:
            Path(self.password_file).write_text(lines, encoding="utf-8")
        except OSError as exc:
            self._log.warning("HttpProxy.SavePass %s", exc)

    def is_auth(self, username: str, password: str) -> bool:
        """True when ``username`` is known with this ``password``."""
        with self._lock:
            return username in self.passwords and self.passwords[username] == password

    def check_auth(self, header: str | None) -> bool:
        """Check a Proxy-Authorization value; anything passes when no users exist."""
        with self._lock:
            if not self.passwords:
                return True
        decoded = decode_basic_auth(header or "")
        return decoded is not None and self.is_auth(*decoded)

    def add_user(self, user: str, password: str) -> None:
        """Add or replace a user and persist the password file."""
        with self._lock:
            self.passwords[user] = password
            self._save_passwords()

    def del_user(self, user: str) -> None:
        """Remove a user if present and persist the password file."""
        with self._lock:
            self.passwords.pop(user, None)
            self._save_passwords()

    # -- statistics ----------------------------------------------------

    def record(self, host: str, nbytes: int) -> None:
        """Account ``nbytes`` of traffic to ``host``."""
        with self._lock:
            entry = self.requests.get(host)
            if entry is None:
                entry = self.requests[host] = HttpRecord(domain=host)
            entry.update(nbytes)

    def stats_data(self) -> dict[str, Any]:
        """Start time, number of hosts and total bytes."""
        with self._lock:
            return {
                "start_at": self.start_at,
                "total": len(self.requests),
                "bytes": sum(r.bytes for r in self.requests.values()),
            }

    def index_data(self) -> dict[str, Any]:
        """Statistics plus per-host records, busiest first."""
        with self._lock:
            records = [dataclasses.replace(r) for r in self.requests.values()]
            data = self.stats_data()
        data["requests"] = sorted(records, key=lambda r: (r.bytes, r.last_at), reverse=True)
        return data

    def render_stats(self, fmt: str) -> tuple[str, bytes]:
        """Content type and body of the stats page in ``json`` or YAML."""
        data = self.stats_data()
        if fmt == "json":
            return "application/json", _to_json(
                {"StartAt": data["start_at"], "Total": data["total"], "Bytes": data["bytes"]}
            )
        return "text/plain", _to_yaml(
            {"startat": data["start_at"], "total": data["total"], "bytes": data["bytes"]}
        )

    def render_index(self, fmt: str) -> tuple[str, bytes]:
        """Content type and body of the index page as YAML, JSON or HTML."""
        data = self.index_data()
        records = data["requests"]
        if fmt == "yaml":
            return "text/plain", _to_yaml(
                {
                    "startat": data["start_at"],
                    "total": data["total"],
                    "bytes": data["bytes"],
                    "requests": [r.as_yaml() for r in records],
                }
            )
        if fmt == "json":
            return "application/json", _to_json(
                {
                    "StartAt": data["start_at"],
                    "Total": data["total"],
                    "Bytes": data["bytes"],
                    "Requests": [r.as_json() for r in records] or None,
                }
            )
        page = _STATS_TEMPLATE_HEAD.format(
            total=data["total"], nbytes=data["bytes"], start_at=data["start_at"]
        )
        page += "".join(
            _STATS_TEMPLATE_ROW.format(
                domain=r.domain, count=r.count, nbytes=r.bytes, last_at=r.last_at
            )
            for r in records
        )
        page += _STATS_TEMPLATE_TAIL
        return "text/html; charset=utf-8", page.encode("utf-8")

    # -- API -----------------------------------------------------------

    def _build_routes(self) -> list[_Route]:
        table = [
            ("GET", "/", self._api_index),
            ("GET", "/api", self._api_list),
            ("GET", "/api/stats", self._api_stats),
            ("POST", "/api/user/{user}/{pass}", self._api_add_user),
            ("DELETE", "/api/user/{user}", self._api_del_user),
        ]
        routes = []
        for method, template, handler in table:
            regex = re.sub(r"\\\{[^}]+\\\}", "([^/]+)", re.escape(template))
            routes.append(_Route(method, template, re.compile(f"^{regex}$"), handler))
        return routes

    def api_routes(self) -> list[str]:
        """Every API route as ``METHOD path``."""
        return [f"{route.method:<6} {route.template}" for route in self._routes]

    def _api_index(self, query: dict[str, list[str]]) -> tuple[int, str, bytes]:
        return (200, *self.render_index(_first(query, "format")))

    def _api_stats(self, query: dict[str, list[str]]) -> tuple[int, str, bytes]:
        return (200, *self.render_stats(_first(query, "format")))

    def _api_list(self, query: dict[str, list[str]]) -> tuple[int, str, bytes]:
        return 200, "text/plain", _to_yaml(self.api_routes())

    def _api_add_user(self, query: dict[str, list[str]], user: str, value: str):
        self.add_user(user, value)
        return 200, "text/plain", _to_yaml("success")

    def _api_del_user(self, query: dict[str, list[str]], user: str):
        self.del_user(user)
        return 200, "text/plain", _to_yaml("success")

    def _serve_api(self, handler: _Handler) -> None:
        parts = urlsplit(handler.path)
        query = parse_qs(parts.query, keep_blank_values=True)
        path = unquote(parts.path)
        matched = False
        for route in self._routes:
            found = route.pattern.match(path)
            if not found:
                continue
            matched = True
            if route.method == handler.command:
                status, content_type, body = route.handler(query, *found.groups())
                handler.reply(status, content_type, body)
                return
        if matched:
            handler.reply(405, "", b"")
        else:
            handler.error(404, "Oops!")

    # -- proxying ------------------------------------------------------

    def _open_conn(self, protocol: str, remote: str, insecure: bool) -> socket.socket:
        host, port = _split_address(remote)
        sock = socket.create_connection((host, port), timeout=_DIAL_TIMEOUT)
        if protocol in ("https", "tls"):
            context = ssl.create_default_context()
            if insecure:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            if self.ca_cert and Path(self.ca_cert).exists():
                try:
                    context.load_verify_locations(self.ca_cert)
                except (OSError, ssl.SSLError) as exc:
                    self._log.warning("HttpProxy.openConn %s", exc)
            try:
                sock = context.wrap_socket(sock, server_hostname=host)
            except (OSError, ssl.SSLError):
                sock.close()
                raise
        sock.settimeout(None)
        return sock

    def _serve(self, handler: _Handler) -> None:
        if not self.check_auth(handler.headers.get("Proxy-Authorization")):
            self._log.info("HttpProxy.ServeHTTP Required %s Authentication", handler.path)
            handler.error(
                407, "Proxy Authentication Required", [("Proxy-Authenticate", "Basic")]
            )
            return
        if handler.command == "CONNECT":
            host = handler.path
        else:
            host = urlsplit(handler.path).netloc
        if not host:
            self._serve_api(handler)
            return

        self.record(host, 0)
        self._log.info(
            "HttpProxy.ServeHTTP %s %s -> %s", handler.command, handler.client_address, host
        )
        if handler.command == "CONNECT":
            self._connect(handler, host)
        else:
            self._forward(handler)

    def _connect(self, handler: _Handler, host: str) -> None:
        try:
            target = self._open_conn("", host, True)
        except (OSError, ValueError) as exc:
            handler.error(502, str(exc))
            self._log.warning("HttpProxy.ServeHTTP %s: %s", host, exc)
            return
        handler.close_connection = True
        handler.wfile.write(_HTTP_OKAY)
        self._tunnel(handler, target, host)

    def _tunnel(self, handler: _Handler, target: socket.socket, host: str) -> None:
        client = handler.connection

        def upstream() -> None:
            total = 0
            try:
                while chunk := handler.rfile.read1(_CHUNK):
                    target.sendall(chunk)
                    total += len(chunk)
            except (OSError, ValueError) as exc:
                self._log.debug("HttpProxy.tunnel from ws %s", exc)
            with suppress(OSError):
                target.shutdown(socket.SHUT_WR)
            self.record(host, total)

        def downstream() -> None:
            total = 0
            try:
                while chunk := target.recv(_CHUNK):
                    client.sendall(chunk)
                    total += len(chunk)
            except (OSError, ValueError) as exc:
                self._log.debug("HttpProxy.tunnel from target %s", exc)
            with suppress(OSError):
                client.shutdown(socket.SHUT_WR)
            self.record(host, total)

        with target:
            workers = [
                threading.Thread(target=upstream, daemon=True),
                threading.Thread(target=downstream, daemon=True),
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
        self._log.debug("HttpProxy.tunnel %s exit", host)

    def _forward(self, handler: _Handler) -> None:
        parts = urlsplit(handler.path)
        headers = handler.headers
        try:
            if "chunked" in headers.get("Transfer-Encoding", "").lower():
                body = _read_chunked(handler.rfile)
            else:
                body = handler.rfile.read(int(headers.get("Content-Length") or 0))
        except (OSError, ValueError, EOFError) as exc:
            handler.error(400, str(exc))
            return

        target = parts.path or "/"
        if parts.query:
            target += "?" + parts.query
        forwarded = [(k, v) for k, v in headers.items() if k.lower() not in _HOP_HEADERS]
        if body or handler.command in ("POST", "PUT", "PATCH"):
            forwarded.append(("Content-Length", str(len(body))))

        if parts.scheme == "https":
            upstream = http.client.HTTPSConnection(parts.netloc, timeout=_DIAL_TIMEOUT)
        else:
            upstream = http.client.HTTPConnection(parts.netloc, timeout=_DIAL_TIMEOUT)
        try:
            upstream.connect()
            upstream.sock.settimeout(None)
            upstream.putrequest(handler.command, target, skip_host=True, skip_accept_encoding=True)
            if not any(k.lower() == "host" for k, _ in forwarded):
                upstream.putheader("Host", parts.netloc)
            for key, value in forwarded:
                upstream.putheader(key, value)
            upstream.endheaders(body or None)
            response = upstream.getresponse()
            payload = response.read()
        except (OSError, http.client.HTTPException, ValueError) as exc:
            handler.error(502, str(exc))
            return
        finally:
            upstream.close()

        reply_headers = []
        dropped_auth = False
        for key, value in response.getheaders():
            lowered = key.lower()
            if lowered in ("transfer-encoding", "connection", "content-length", "keep-alive"):
                continue
            if lowered == "proxy-authorization" and not dropped_auth:
                dropped_auth = True
                continue
            reply_headers.append((key, value))

        handler.send_response(response.status, response.reason)
        for key, value in reply_headers:
            handler.send_header(key, value)
        handler.send_header("Content-Length", str(len(payload)))
        handler.end_headers()
        if handler.command != "HEAD":
            handler.wfile.write(payload)

    # -- lifecycle -----------------------------------------------------

    @property
    def _uses_tls(self) -> bool:
        return self.cert is not None and bool(self.cert.key_file)

    def start(self) -> None:
        """Serve in a background thread, retrying while listening fails."""
        if self._thread is not None:
            return
        scheme = "https" if self._uses_tls else "http"
        self._log.info("HttpProxy.start %s://%s", scheme, self.listen)
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _bind(self) -> _Server:
        server = _Server(_split_address(self.listen), self)
        if self._uses_tls:
            context = self.cert.server_context()
            if context is None:
                server.server_close()
                raise OSError("unable to load the server certificate")
            server.socket = context.wrap_socket(
                server.socket, server_side=True, do_handshake_on_connect=False
            )
        return server

    def _run(self) -> None:
        delay = _FIRST_DELAY
        while not self._stopped.is_set():
            try:
                server = self._bind()
            except (OSError, ValueError) as exc:
                self._log.warning("HttpProxy.start %s", exc)
                if self._stopped.wait(delay):
                    return
                delay = min(max(delay * 2, _MIN_DELAY), _MAX_DELAY)
                continue
            with self._lock:
                self._server = server
                self.start_at = _now()
            self.address = server.server_address
            self.ready.set()
            try:
                server.serve_forever(poll_interval=0.5)
            finally:
                server.server_close()
            return

    def stop(self) -> None:
        """Stop serving and wait for the background thread."""
        self._stopped.set()
        with self._lock:
            server, self._server = self._server, None
        if server is not None:
            server.shutdown()
        if self._thread is not None:
            self._thread.join(5)
            self._thread = None
        self.ready.clear()


def _first(query: dict[str, list[str]], name: str) -> str:
    values = query.get(name)
    return values[0] if values else ""