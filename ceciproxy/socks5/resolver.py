"""Host name resolution for SOCKS5 destinations."""

from __future__ import annotations

import ipaddress
import socket

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class DNSResolver:
    """Resolves names through the system resolver, preferring IPv4."""

    def resolve(self, name: str) -> IPAddress:
        """Return an address for ``name``; raise OSError if there is none."""
        infos = socket.getaddrinfo(name, None, type=socket.SOCK_STREAM)
        if not infos:
            raise OSError(f"no such host: {name}")
        chosen = next((info for info in infos if info[0] == socket.AF_INET), infos[0])
        return ipaddress.ip_address(chosen[4][0])