"""Certificate and cipher settings and TLS context helpers."""

from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger("ceciproxy.cert")


class CertError(Exception):
    """A certificate file is missing or unusable."""


def var_dir(*names: str) -> str:
    """A path under the program's state directory."""
    return "/var/openceci/" + "/".join(names)


@dataclass
class Crypt:
    """A cipher algorithm and its secret."""

    algo: str = ""
    secret: str = ""

    def is_zero(self) -> bool:
        """True when neither algorithm nor secret is set."""
        return not self.algo and not self.secret

    def correct(self) -> None:
        """Default the algorithm to ``xor`` when only a secret is given."""
        if self.secret and not self.algo:
            self.algo = "xor"


@dataclass
class Cert:
    """Locations of a certificate, its key and the trusted CA bundle."""

    directory: str = ""
    crt_file: str = ""
    key_file: str = ""
    ca_file: str = ""
    insecure: bool = False

    def correct(self) -> None:
        """Fill unset paths with defaults under the certificate directory."""
        if not self.directory:
            self.directory = var_dir("cert")
        if not self.crt_file:
            self.crt_file = f"{self.directory}/crt"
        if not self.key_file:
            self.key_file = f"{self.directory}/key"
        if not self.ca_file:
            self.ca_file = f"{self.directory}/ca-trusted.crt"

    def server_context(self) -> ssl.SSLContext | None:
        """A server TLS context with this key pair, or None if unavailable."""
        if not self.key_file or not self.crt_file:
            return None
        _log.debug("Cert.server_context: %s", self)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(self.crt_file, self.key_file)
        except OSError as exc:
            _log.error("Cert.server_context: %s", exc)
            return None
        return context

    def client_context(self) -> ssl.SSLContext | None:
        """A client TLS context trusting the CA file, or None if unusable."""
        try:
            context = get_cert_pool(self.ca_file)
        except CertError as exc:
            _log.warning("GetCertPool %s", exc)
            return None
        if self.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


def get_cert_pool(ca: str) -> ssl.SSLContext:
    """Return a client TLS context trusting the certificates in ``ca``."""
    if not ca:
        raise CertError(f"{ca}: not such file")
    path = Path(ca)
    if not path.exists():
        raise CertError(f"Cert.GetTlsCertPool: {ca} not such file")
    try:
        data = path.read_text(encoding="ascii", errors="replace")
    except OSError as exc:
        raise CertError(f"Cert.GetTlsCertPool: {exc}") from exc
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    try:
        context.load_verify_locations(cadata=data)
    except (ssl.SSLError, ValueError) as exc:
        raise CertError("Cert.GetTlsCertPool: invalid cert") from exc
    return context