import errno
import socket
import time
from collections import namedtuple
from ipaddress import IPv4Address, IPv6Address
from unittest import mock

import pytest

from tracenet.byte_order import PlatformIpv4FieldByteOrder
from tracenet.platform import (
    SocketImpl,
    discover_local_addr,
    for_address,
    is_conn_refused_error,
    is_host_unreachable_error,
    is_not_in_progress_error,
    lookup_interface_addr_ipv4,
    lookup_interface_addr_ipv6,
)
from tracenet.socket import IoOperation, SocketIoError, UnknownInterfaceError

LOOPBACK = IPv4Address("127.0.0.1")

_Addr = namedtuple("_Addr", "family address netmask broadcast ptp")

FAKE_INTERFACES = {
    "eth0": [
        _Addr(socket.AF_INET6, "fe80::1%eth0", None, None, None),
        _Addr(socket.AF_INET, "10.0.0.5", "255.255.255.0", None, None),
    ],
    "lo": [_Addr(socket.AF_INET, "127.0.0.1", "255.0.0.0", None, None)],
}


@pytest.fixture
def dgram():
    sockets = []

    def make():
        sock = SocketImpl.new_udp_dgram_socket_ipv4()
        sock.bind((LOOPBACK, 0))
        sockets.append(sock)
        return sock

    yield make
    for sock in sockets:
        sock.close()


def _connect(sock, address):
    try:
        sock.connect(address)
    except SocketIoError as err:
        assert not is_not_in_progress_error(err.errno)


def _wait_writable(sock, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if sock.is_writable():
            return True
        time.sleep(0.01)
    return False


def test_in_progress_error_classification():
    assert is_not_in_progress_error(errno.EINPROGRESS) is False
    assert is_not_in_progress_error(errno.EADDRINUSE) is True


def test_conn_refused_classification():
    assert is_conn_refused_error(errno.ECONNREFUSED) is True
    assert is_conn_refused_error(errno.EINPROGRESS) is False


def test_host_unreachable_never_reported():
    assert is_host_unreachable_error(errno.EHOSTUNREACH) is False


def test_for_address_ipv6_is_network_order():
    assert for_address(IPv6Address("::1")) is PlatformIpv4FieldByteOrder.NETWORK


def test_for_address_on_linux_is_network_order(monkeypatch):
    monkeypatch.setattr("sys.platform", "linux")
    assert for_address(LOOPBACK) is PlatformIpv4FieldByteOrder.NETWORK


def test_lookup_interface_ipv4():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        assert lookup_interface_addr_ipv4("eth0") == IPv4Address("10.0.0.5")


def test_lookup_interface_ipv6_strips_scope():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        assert lookup_interface_addr_ipv6("eth0") == IPv6Address("fe80::1")


def test_lookup_interface_missing_family():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        with pytest.raises(UnknownInterfaceError) as info:
            lookup_interface_addr_ipv6("lo")
    assert info.value.name == "lo"


def test_lookup_unknown_interface():
    with mock.patch("psutil.net_if_addrs", return_value=FAKE_INTERFACES):
        with pytest.raises(UnknownInterfaceError):
            lookup_interface_addr_ipv4("nosuch0")


def test_lookup_interface_listing_failure():
    with mock.patch("psutil.net_if_addrs", side_effect=OSError("boom")):
        with pytest.raises(UnknownInterfaceError):
            lookup_interface_addr_ipv4("eth0")


def test_discover_local_addr_loopback():
    assert discover_local_addr(LOOPBACK, 80) == LOOPBACK


def test_bind_and_local_addr(dgram):
    sock = dgram()
    ip, port = sock.local_addr()
    assert ip == LOOPBACK
    assert 0 < port <= 0xFFFF


def test_send_and_recv_round_trip(dgram):
    receiver, sender = dgram(), dgram()
    assert receiver.is_readable(0) is False
    sender.send_to(b"ping", receiver.local_addr())
    assert receiver.is_readable(1.0) is True
    data, addr = receiver.recv_from()
    assert data == b"ping"
    assert addr == sender.local_addr()


def test_read_returns_datagram(dgram):
    receiver, sender = dgram(), dgram()
    sender.send_to(b"\x01\x02\x03", receiver.local_addr())
    assert receiver.is_readable(1.0)
    assert receiver.read() == b"\x01\x02\x03"


def test_connected_dgram_peer_and_error(dgram):
    first, second = dgram(), dgram()
    first.connect(second.local_addr())
    assert first.peer_addr() == second.local_addr()
    assert first.take_error() is None
    assert first.is_writable() is True


def test_bind_failure_reports_operation_and_address():
    with SocketImpl.new_udp_dgram_socket_ipv4() as sock:
        address = (IPv4Address("192.0.2.1"), 0)
        with pytest.raises(SocketIoError) as info:
            sock.bind(address)
    assert info.value.operation is IoOperation.BIND
    assert info.value.address == address


def test_shutdown_unconnected_fails(dgram):
    sock = dgram()
    with pytest.raises(SocketIoError) as info:
        sock.shutdown()
    assert info.value.operation is IoOperation.SHUTDOWN


def test_operations_after_close_fail():
    with SocketImpl.new_udp_dgram_socket_ipv4() as sock:
        sock.bind((LOOPBACK, 0))
    with pytest.raises(SocketIoError) as info:
        sock.local_addr()
    assert info.value.operation is IoOperation.LOCAL_ADDR


def test_icmp_error_info_is_unspecified(dgram):
    assert dgram().icmp_error_info() == IPv4Address("0.0.0.0")


def test_set_ttl_and_tos_on_dgram(dgram):
    sock = dgram()
    sock.set_ttl(5)
    sock.set_tos(0x10)
    assert sock.local_addr()[0] == LOOPBACK


def test_stream_connect_succeeds():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        port = listener.getsockname()[1]
        with SocketImpl.new_stream_socket_ipv4() as sock:
            _connect(sock, (LOOPBACK, port))
            assert _wait_writable(sock)
            assert sock.take_error() is None
            assert sock.peer_addr() == (LOOPBACK, port)


def test_stream_connect_refused():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
    with SocketImpl.new_stream_socket_ipv4() as sock:
        _connect(sock, (LOOPBACK, port))
        assert _wait_writable(sock)
        error = sock.take_error()
    assert is_conn_refused_error(error.errno)