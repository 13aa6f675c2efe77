"""Proxy services: HTTP, SOCKS5 and plain TCP forwarding."""