"""Rules deciding which SOCKS5 commands are permitted."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class Command(IntEnum):
    """SOCKS5 request commands."""

    CONNECT = 1
    BIND = 2
    ASSOCIATE = 3


@dataclass
class PermitCommand:
    """A rule set that enables or disables each command."""

    enable_connect: bool = False
    enable_bind: bool = False
    enable_associate: bool = False

    def allow(self, request: Any) -> bool:
        """Return True when the request's command is permitted."""
        permitted = {
            Command.CONNECT: self.enable_connect,
            Command.BIND: self.enable_bind,
            Command.ASSOCIATE: self.enable_associate,
        }
        return permitted.get(request.command, False)


def permit_all() -> PermitCommand:
    """A rule set allowing every command."""
    return PermitCommand(True, True, True)


def permit_none() -> PermitCommand:
    """A rule set refusing every command."""
    return PermitCommand(False, False, False)