import socket
from collections import namedtuple
from ipaddress import IPv4Address, IPv6Address
from unittest import mock

import pytest

from tracenet.platform import SocketImpl
from tracenet.socket import InvalidSourceAddrError, UnknownInterfaceError
from tracenet.source import (
    discover_source_addr,
    udp_socket_for_addr_family,
    validate_source_addr,
)

LOOPBACK = IPv4Address("127.0.0.1")

_Addr = namedtuple("_Addr", "family address netmask broadcast ptp")

FAKE_INTERFACES = {
    "wan0": [
        _Addr(socket.AF_INET, "10.1.2.3", "255.0.0.0", None, None),
        _Addr(socket.AF_INET6, "2001:db8::7", None, None, None),
    ],
}


def test_validate_loopback_returns_same_address():
    assert validate_source_addr(LOOPBACK) == LOOPBACK


def test_validate_unbindable_address_raises():
    addr = IPv4Address("192.0.2.1")
    with pytest.raises(InvalidSourceAddrError) as info:
        validate_source_addr(addr)
    assert info.value.addr == addr


def test_discover_without_interface_uses_route():
    assert discover_source_addr(LOOPBACK, None, None) == LOOPBACK


def test_discover_with_dest_port_uses_route():
    assert discover_source_addr(LOOPBACK, 33434, None) == LOOPBACK


def test_discover_with_interface_ipv4():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        found = discover_source_addr(IPv4Address("198.51.100.1"), 80, "wan0")
    assert found == IPv4Address("10.1.2.3")


def test_discover_with_interface_ipv6():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        found = discover_source_addr(IPv6Address("2001:db8::1"), None, "wan0")
    assert found == IPv6Address("2001:db8::7")


def test_discover_with_unknown_interface():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        with pytest.raises(UnknownInterfaceError) as info:
            discover_source_addr(LOOPBACK, None, "missing0")
    assert info.value.name == "missing0"


def test_udp_socket_for_ipv4_family():
    with udp_socket_for_addr_family(LOOPBACK) as sock:
        assert isinstance(sock, SocketImpl)
        sock.bind((LOOPBACK, 0))
        ip, _ = sock.local_addr()
    assert ip.version == 4
    assert ip == LOOPBACK