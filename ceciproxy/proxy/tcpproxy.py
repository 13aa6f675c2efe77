"""A TCP proxy balancing connections round-robin over target addresses."""

from __future__ import annotations

import logging
import socket
import threading
from contextlib import suppress

from ..socks5.server import _split_address

_POLL_INTERVAL = 0.5
_CHUNK = 32 * 1024
_FIRST_DELAY = 2.0
_MIN_DELAY = 10.0
_MAX_DELAY = 60.0


def _pipe(src: socket.socket, dst: socket.socket, log: logging.Logger) -> None:
    try:
        while chunk := src.recv(_CHUNK):
            dst.sendall(chunk)
    except OSError as exc:
        log.debug("TcpProxy.tunnel %s", exc)
    with suppress(OSError):
        dst.shutdown(socket.SHUT_WR)


class TcpProxy:
    """Listens on one address and relays each connection to a target."""

    def __init__(self, listen: str, targets: list[str]) -> None:
        self.listen = listen
        self.targets = list(targets)
        self.listener: socket.socket | None = None
        self._rr = 0
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._log = logging.getLogger(f"ceciproxy.tcp.{listen}")

    def load_balance(self, fail: int) -> str | None:
        """The next target in turn, or None once ``fail`` reaches the target count."""
        with self._lock:
            if fail < len(self.targets):
                target = self.targets[self._rr % len(self.targets)]
                self._rr += 1
                return target
        return None

    def start(self) -> None:
        """Bind the listener (retrying until it succeeds) and accept in the background."""
        self._stopped.clear()
        listener = self._bind()
        listener.settimeout(_POLL_INTERVAL)
        self.listener = listener
        self._log.info("TcpProxy.Start: %s", self.targets)
        threading.Thread(target=self._accept_loop, args=(listener,), daemon=True).start()

    def _bind(self) -> socket.socket:
        delay = _FIRST_DELAY
        while True:
            try:
                return socket.create_server(_split_address(self.listen))
            except OSError as exc:
                self._log.warning("TcpProxy.Start %s", exc)
                if self._stopped.wait(delay):
                    raise
                delay = min(max(delay * 2, _MIN_DELAY), _MAX_DELAY)

    def _accept_loop(self, listener: socket.socket) -> None:
        with listener:
            while True:
                try:
                    conn, _ = listener.accept()
                except TimeoutError:
                    if self._stopped.is_set():
                        break
                    continue
                except OSError as exc:
                    if not self._stopped.is_set():
                        self._log.error("TcpServer.Accept: %s", exc)
                    break
                self._connect(conn)

    def _connect(self, conn: socket.socket) -> None:
        fail = 0
        while (backend := self.load_balance(fail)) is not None:
            try:
                target = socket.create_connection(_split_address(backend))
            except (OSError, ValueError) as exc:
                self._log.error("TcpProxy.Accept %s", exc)
                fail += 1
                continue
            threading.Thread(target=self._tunnel, args=(conn, target), daemon=True).start()
            return
        conn.close()

    def _tunnel(self, src: socket.socket, dst: socket.socket) -> None:
        with src, dst:
            self._log.info("TcpProxy.tunnel %s -> %s", src.getpeername(), dst.getpeername())
            workers = [
                threading.Thread(target=_pipe, args=(src, dst, self._log), daemon=True),
                threading.Thread(target=_pipe, args=(dst, src, self._log), daemon=True),
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
        self._log.debug("TcpProxy.tunnel exit")

    def stop(self) -> None:
        """Close the listener and stop accepting."""
        self._stopped.set()
        if self.listener is not None:
            with suppress(OSError):
                self.listener.close()
        self._log.info("TcpProxy.Stop")
        self.listener = None