"""Unix socket implementation and platform specific networking helpers."""

from __future__ import annotations

import errno
import os
import select
import socket
import struct
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from ipaddress import IPv4Address, IPv6Address, ip_address

import psutil

from .byte_order import PlatformIpv4FieldByteOrder
from .socket import (
    IoOperation,
    IpAddress,
    Socket,
    SocketAddress,
    SocketIoError,
    UnknownInterfaceError,
)

# Large enough for any IP packet the tracer sends or expects back.
_MAX_PACKET_SIZE = 1024

# Size of the test packet used to discover the IPv4 `total_length` byte order.
_TEST_PACKET_LENGTH = 256

_LOCALHOST_V4 = IPv4Address("127.0.0.1")


@contextmanager
def _io(operation: IoOperation, address: SocketAddress | None = None) -> Iterator[None]:
    """Turn an ``OSError`` raised in the block into a :class:`SocketIoError`."""
    try:
        yield
    except OSError as err:
        raise SocketIoError(err, operation, address) from err


def _to_native(address: SocketAddress) -> tuple[str, int]:
    ip, port = address
    return str(ip), port


def _from_native(raw: object) -> SocketAddress | None:
    if not isinstance(raw, tuple) or len(raw) < 2:
        return None
    host, port = raw[0], raw[1]
    if not isinstance(host, str):
        return None
    try:
        return ip_address(host.split("%", 1)[0]), int(port)
    except ValueError:
        return None


def _internet_checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def for_address(addr: IpAddress) -> PlatformIpv4FieldByteOrder:
    """Discover the byte order required for IPv4 length and fragment fields.

    Linux accepts either order, so network order is returned without a check.
    Elsewhere a test packet is sent to localhost with the length in network
    order and, if the system rejects it as invalid, in swapped order.
    """
    if sys.platform.startswith("linux") or isinstance(addr, IPv6Address):
        return PlatformIpv4FieldByteOrder.NETWORK
    try:
        _test_send_local_ip4_packet(addr, _TEST_PACKET_LENGTH)
    except SocketIoError as err:
        if err.errno != errno.EINVAL:
            raise
        swapped = int.from_bytes(_TEST_PACKET_LENGTH.to_bytes(2, "big"), "little")
        _test_send_local_ip4_packet(addr, swapped)
        return PlatformIpv4FieldByteOrder.HOST
    return PlatformIpv4FieldByteOrder.NETWORK


def _test_send_local_ip4_packet(src_addr: IPv4Address, total_length: int) -> None:
    """Send a 256 byte ICMP packet to localhost with the given ``total_length``."""
    icmp = bytearray(struct.pack("!BBHHH", 8, 0, 0, 0, 0))
    struct.pack_into("!H", icmp, 2, _internet_checksum(bytes(icmp)))
    header = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        total_length,
        0,
        0,
        255,
        socket.IPPROTO_ICMP,
        0,
        src_addr.packed,
        _LOCALHOST_V4.packed,
    )
    packet = (header + bytes(icmp)).ljust(_TEST_PACKET_LENGTH, b"\x00")
    try:
        probe_socket = SocketImpl._new(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_ICMP)
    except SocketIoError:
        probe_socket = SocketImpl._new(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_RAW)
    with probe_socket:
        probe_socket.set_header_included(True)
        probe_socket.send_to(packet, (_LOCALHOST_V4, 0))


def _lookup_interface_addr(
    name: str, family: int, make: Callable[[str], IpAddress]
) -> IpAddress:
    try:
        interfaces = psutil.net_if_addrs()
    except Exception as err:
        raise UnknownInterfaceError(name) from err
    for entry in interfaces.get(name, ()):
        if entry.family == family:
            try:
                return make(entry.address.split("%", 1)[0])
            except ValueError:
                continue
    raise UnknownInterfaceError(name)


def lookup_interface_addr_ipv4(name: str) -> IpAddress:
    """Return the first IPv4 address of the named interface."""
    return _lookup_interface_addr(name, socket.AF_INET, IPv4Address)


def lookup_interface_addr_ipv6(name: str) -> IpAddress:
    """Return the first IPv6 address of the named interface."""
    return _lookup_interface_addr(name, socket.AF_INET6, IPv6Address)


def startup() -> None:
    """Prepare the platform's networking; nothing is needed on Unix."""


def is_not_in_progress_error(code: int | None) -> bool:
    return code != errno.EINPROGRESS


def is_conn_refused_error(code: int | None) -> bool:
    return code == errno.ECONNREFUSED


def is_host_unreachable_error(code: int | None) -> bool:
    return False


def discover_local_addr(target_addr: IpAddress, port: int) -> IpAddress:
    """Return the local address used to reach ``target_addr``; sends nothing."""
    factory = (
        SocketImpl.new_udp_dgram_socket_ipv4
        if isinstance(target_addr, IPv4Address)
        else SocketImpl.new_udp_dgram_socket_ipv6
    )
    with factory() as sock:
        sock.connect((target_addr, port))
        local = sock.local_addr()
    if local is None:
        raise SocketIoError(
            OSError(errno.EADDRNOTAVAIL, os.strerror(errno.EADDRNOTAVAIL)),
            IoOperation.LOCAL_ADDR,
        )
    return local[0]


class SocketImpl(Socket):
    """A network socket backed by the operating system."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock

    @classmethod
    def _new(cls, family: int, kind: int, proto: int) -> SocketImpl:
        with _io(IoOperation.NEW_SOCKET):
            return cls(socket.socket(family, kind, proto))

    def _set_nonblocking(self) -> None:
        with _io(IoOperation.SET_NON_BLOCKING):
            self._sock.setblocking(False)

    @classmethod
    def new_icmp_send_socket_ipv4(cls) -> SocketImpl:
        sock = cls._new(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_RAW)
        sock._set_nonblocking()
        sock.set_header_included(True)
        return sock

    @classmethod
    def new_icmp_send_socket_ipv6(cls) -> SocketImpl:
        sock = cls._new(socket.AF_INET6, socket.SOCK_RAW, socket.IPPROTO_ICMPV6)
        sock._set_nonblocking()
        return sock

    @classmethod
    def new_udp_send_socket_ipv4(cls) -> SocketImpl:
        sock = cls._new(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_RAW)
        sock._set_nonblocking()
        sock.set_header_included(True)
        return sock

    @classmethod
    def new_udp_send_socket_ipv6(cls) -> SocketImpl:
        sock = cls._new(socket.AF_INET6, socket.SOCK_RAW, socket.IPPROTO_UDP)
        sock._set_nonblocking()
        return sock

    @classmethod
    def new_recv_socket_ipv4(cls, addr: IPv4Address) -> SocketImpl:
        sock = cls._new(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        sock._set_nonblocking()
        sock.set_header_included(True)
        return sock

    @classmethod
    def new_recv_socket_ipv6(cls, addr: IPv6Address) -> SocketImpl:
        sock = cls._new(socket.AF_INET6, socket.SOCK_RAW, socket.IPPROTO_ICMPV6)
        sock._set_nonblocking()
        return sock

    @classmethod
    def new_stream_socket_ipv4(cls) -> SocketImpl:
        sock = cls._new(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        sock._set_nonblocking()
        sock.set_reuse_port(True)
        return sock

    @classmethod
    def new_stream_socket_ipv6(cls) -> SocketImpl:
        sock = cls._new(socket.AF_INET6, socket.SOCK_STREAM, socket.IPPROTO_TCP)
        sock._set_nonblocking()
        sock.set_reuse_port(True)
        return sock

    @classmethod
    def new_udp_dgram_socket_ipv4(cls) -> SocketImpl:
        return cls._new(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)

    @classmethod
    def new_udp_dgram_socket_ipv6(cls) -> SocketImpl:
        return cls._new(socket.AF_INET6, socket.SOCK_DGRAM, socket.IPPROTO_UDP)

    def local_addr(self) -> SocketAddress | None:
        """Return the address the socket is bound to."""
        with _io(IoOperation.LOCAL_ADDR):
            return _from_native(self._sock.getsockname())

    def bind(self, address: SocketAddress) -> None:
        with _io(IoOperation.BIND, address):
            self._sock.bind(_to_native(address))

    def set_tos(self, tos: int) -> None:
        with _io(IoOperation.SET_TOS):
            self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, tos)

    def set_ttl(self, ttl: int) -> None:
        with _io(IoOperation.SET_TTL):
            self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, ttl)

    def set_reuse_port(self, reuse: bool) -> None:
        option = getattr(socket, "SO_REUSEPORT", None)
        with _io(IoOperation.SET_REUSE_PORT):
            if option is None:
                raise OSError(errno.ENOPROTOOPT, "SO_REUSEPORT is not supported")
            self._sock.setsockopt(socket.SOL_SOCKET, option, int(reuse))

    def set_header_included(self, included: bool) -> None:
        with _io(IoOperation.SET_HEADER_INCLUDED):
            self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_HDRINCL, int(included))

    def set_unicast_hops_v6(self, hops: int) -> None:
        with _io(IoOperation.SET_UNICAST_HOPS_V6):
            self._sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, hops)

    def connect(self, address: SocketAddress) -> None:
        with _io(IoOperation.CONNECT, address):
            self._sock.connect(_to_native(address))

    def send_to(self, data: bytes, address: SocketAddress) -> None:
        with _io(IoOperation.SEND_TO, address):
            self._sock.sendto(data, _to_native(address))

    def is_readable(self, timeout: float) -> bool:
        try:
            readable, _, _ = select.select([self._sock], [], [], timeout)
        except InterruptedError:
            return False
        except (OSError, ValueError) as err:
            error = err if isinstance(err, OSError) else OSError(errno.EBADF, str(err))
            raise SocketIoError(error, IoOperation.SELECT) from err
        return bool(readable)

    def is_writable(self) -> bool:
        try:
            _, writable, _ = select.select([], [self._sock], [], 0)
        except InterruptedError:
            return False
        except (OSError, ValueError) as err:
            error = err if isinstance(err, OSError) else OSError(errno.EBADF, str(err))
            raise SocketIoError(error, IoOperation.SELECT) from err
        return bool(writable)

    def recv_from(self) -> tuple[bytes, SocketAddress | None]:
        with _io(IoOperation.RECV_FROM):
            data, raw = self._sock.recvfrom(_MAX_PACKET_SIZE)
        return data, _from_native(raw)

    def read(self) -> bytes:
        with _io(IoOperation.READ):
            return self._sock.recv(_MAX_PACKET_SIZE)

    def shutdown(self) -> None:
        with _io(IoOperation.SHUTDOWN):
            self._sock.shutdown(socket.SHUT_RDWR)

    def peer_addr(self) -> SocketAddress | None:
        with _io(IoOperation.PEER_ADDR):
            return _from_native(self._sock.getpeername())

    def take_error(self) -> OSError | None:
        with _io(IoOperation.TAKE_ERROR):
            code = self._sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        return OSError(code, os.strerror(code)) if code else None

    def icmp_error_info(self) -> IpAddress:
        return IPv4Address(0)

    def close(self) -> None:
        with _io(IoOperation.CLOSE):
            self._sock.close()