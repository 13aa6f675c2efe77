"""SOCKS5 authentication method negotiation."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Mapping

SOCKS5_VERSION = 5
USER_AUTH_VERSION = 1
AUTH_SUCCESS = 0
AUTH_FAILURE = 1

_TEXT_ENCODING = "utf-8"
_TEXT_ERRORS = "surrogateescape"


class AuthMethod(IntEnum):
    """Authentication method codes of the SOCKS5 protocol."""

    NO_AUTH = 0
    USER_PASS = 2
    NO_ACCEPTABLE = 255


class AuthError(Exception):
    """Authentication negotiation failed."""


class UserAuthFailed(AuthError):
    """The client presented credentials that were rejected."""

    def __init__(self, message: str = "User authentication failed") -> None:
        super().__init__(message)


class NoSupportedAuth(AuthError):
    """None of the client's offered methods is supported."""

    def __init__(self, message: str = "No supported authentication mechanism") -> None:
        super().__init__(message)


@dataclass
class AuthContext:
    """The outcome of a successful negotiation.

    ``payload`` depends on the method; for username/password it holds
    the ``Username`` key.
    """

    method: int
    payload: dict[str, str] = field(default_factory=dict)


def _read_exact(reader: Any, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise EOFError."""
    data = bytearray()
    while len(data) < size:
        chunk = reader.read(size - len(data))
        if not chunk:
            raise EOFError(f"unexpected EOF: wanted {size} bytes, got {len(data)}")
        data += chunk
    return bytes(data)


def _send(writer: Any, data: bytes) -> None:
    """Write all of ``data`` to a socket-like or file-like writer."""
    sendall = getattr(writer, "sendall", None)
    if sendall is not None:
        sendall(data)
    else:
        writer.write(data)


def _decode(raw: bytes) -> str:
    return raw.decode(_TEXT_ENCODING, _TEXT_ERRORS)


class Authenticator(abc.ABC):
    """A SOCKS5 authentication method."""

    code: AuthMethod

    @abc.abstractmethod
    def authenticate(self, reader: Any, writer: Any) -> AuthContext:
        """Run the method's sub-negotiation and return the resulting context."""


class NoAuthAuthenticator(Authenticator):
    """The "no authentication required" method."""

    code = AuthMethod.NO_AUTH

    def authenticate(self, reader: Any, writer: Any) -> AuthContext:
        _send(writer, bytes([SOCKS5_VERSION, AuthMethod.NO_AUTH]))
        return AuthContext(AuthMethod.NO_AUTH)


class UserPassAuthenticator(Authenticator):
    """Username/password authentication against a credential store."""

    code = AuthMethod.USER_PASS

    def __init__(self, credentials: Any) -> None:
        self.credentials = credentials

    def authenticate(self, reader: Any, writer: Any) -> AuthContext:
        _send(writer, bytes([SOCKS5_VERSION, AuthMethod.USER_PASS]))

        version, user_len = _read_exact(reader, 2)
        if version != USER_AUTH_VERSION:
            raise AuthError(f"Unsupported auth version: {version}")

        user = _decode(_read_exact(reader, user_len))
        (pass_len,) = _read_exact(reader, 1)
        secret = _decode(_read_exact(reader, pass_len))

        if not self.credentials.valid(user, secret):
            _send(writer, bytes([USER_AUTH_VERSION, AUTH_FAILURE]))
            raise UserAuthFailed()

        _send(writer, bytes([USER_AUTH_VERSION, AUTH_SUCCESS]))
        return AuthContext(AuthMethod.USER_PASS, {"Username": user})


def read_methods(reader: Any) -> bytes:
    """Read the method count and the offered method codes."""
    (count,) = _read_exact(reader, 1)
    return _read_exact(reader, count)


def no_acceptable_auth(writer: Any) -> None:
    """Tell the client that no offered method is acceptable and raise."""
    _send(writer, bytes([SOCKS5_VERSION, AuthMethod.NO_ACCEPTABLE]))
    raise NoSupportedAuth()


def authenticate(methods: Mapping[int, Authenticator], writer: Any, reader: Any) -> AuthContext:
    """Pick the first client-offered method found in ``methods`` and run it."""
    try:
        offered = read_methods(reader)
    except (EOFError, OSError) as exc:
        raise AuthError(f"Failed to get auth methods: {exc}") from exc

    for code in offered:
        authenticator = methods.get(code)
        if authenticator is not None:
            return authenticator.authenticate(reader, writer)

    no_acceptable_auth(writer)
    raise NoSupportedAuth()  # no_acceptable_auth always raises