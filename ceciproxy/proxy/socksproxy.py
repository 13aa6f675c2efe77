"""A SOCKS5 proxy service with optional password and TLS."""

from __future__ import annotations

import logging
import threading

from ..cert import Cert
from ..socks5.auth import Authenticator, UserPassAuthenticator
from ..socks5.credentials import StaticCredentials
from ..socks5.server import Config, Server

_FIRST_DELAY = 2.0
_MIN_DELAY = 10.0
_MAX_DELAY = 60.0


class SocksProxy:
    """Runs a SOCKS5 server on ``listen`` in the background."""

    def __init__(
        self,
        listen: str,
        username: str | None = None,
        password: str | None = None,
        cert: Cert | None = None,
    ) -> None:
        self.listen = listen
        self.cert = cert
        self._log = logging.getLogger(f"ceciproxy.socks.{listen}")
        methods: list[Authenticator] = []
        if username:
            credentials = StaticCredentials({username: password or ""})
            methods.append(UserPassAuthenticator(credentials))
            self._log.debug("SocksProxy: Auth user %s", username)
        tls_context = None
        if cert is not None and cert.key_file:
            tls_context = cert.server_context()
        self.server = Server(
            Config(auth_methods=methods, logger=self._log, tls_context=tls_context)
        )
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def _uses_tls(self) -> bool:
        return self.cert is not None and bool(self.cert.key_file)

    def start(self) -> None:
        """Serve in a background thread, retrying while listening fails."""
        if self._thread is not None:
            return
        scheme = "sockss" if self._uses_tls else "socks5"
        self._log.info("SocksProxy.Start: %s://%s", scheme, self.listen)
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        delay = _FIRST_DELAY
        while not self._stopped.is_set():
            try:
                self.server.listen_and_serve(self.listen)
                return
            except (OSError, ValueError) as exc:
                self._log.warning("SocksProxy.Start %s", exc)
            if self._stopped.wait(delay):
                return
            delay = min(max(delay * 2, _MIN_DELAY), _MAX_DELAY)

    def stop(self) -> None:
        """Stop serving and wait for the background thread."""
        self._stopped.set()
        self.server.close()
        if self._thread is not None:
            self._thread.join(5)
            self._thread = None