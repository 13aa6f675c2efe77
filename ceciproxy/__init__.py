"""HTTP, SOCKS5 and round-robin TCP forwarding proxies."""

__version__ = "0.1.0"