"""Credential stores for SOCKS5 username/password authentication."""

from __future__ import annotations


class StaticCredentials(dict):
    """A plain mapping of user names to passwords used as a credential store."""

    def valid(self, user: str, password: str) -> bool:
        """Return True when ``user`` is known and ``password`` matches."""
        if user not in self:
            return False
        return self[user] == password