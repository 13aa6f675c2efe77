import ipaddress
import socket
from unittest import mock

import pytest

from ceciproxy.socks5.resolver import DNSResolver


def test_dns_resolver_localhost_is_loopback():
    addr = DNSResolver().resolve("localhost")
    assert addr.is_loopback


def test_resolve_literal_address():
    assert DNSResolver().resolve("127.0.0.1") == ipaddress.IPv4Address("127.0.0.1")


def test_prefers_ipv4_result():
    infos = [
        (socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("::1", 0, 0, 0)),
        (socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.1.2.3", 0)),
    ]
    with mock.patch("socket.getaddrinfo", return_value=infos):
        assert DNSResolver().resolve("example.com") == ipaddress.IPv4Address("10.1.2.3")


def test_falls_back_to_ipv6():
    infos = [(socket.AF_INET6, socket.SOCK_STREAM, 6, "", ("2001:db8::1", 0, 0, 0))]
    with mock.patch("socket.getaddrinfo", return_value=infos):
        assert DNSResolver().resolve("example.com") == ipaddress.IPv6Address("2001:db8::1")


def test_resolution_failure_raises_oserror():
    with mock.patch("socket.getaddrinfo", side_effect=socket.gaierror("no host")):
        with pytest.raises(OSError):
            DNSResolver().resolve("example.invalid")


def test_empty_result_raises_oserror():
    with mock.patch("socket.getaddrinfo", return_value=[]):
        with pytest.raises(OSError, match="no such host"):
            DNSResolver().resolve("example.com")