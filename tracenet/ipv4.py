"""Building IPv4 probe packets and parsing the ICMPv4 responses they provoke."""

from __future__ import annotations

import contextlib
import errno
import struct
import time
from collections.abc import Callable
from ipaddress import IPv4Address
from typing import Any

from . import platform
from .byte_order import PlatformIpv4FieldByteOrder
from .probe import (
    MultipathStrategy,
    Probe,
    ProbeResponse,
    ProbeResponseKind,
    ProbeResponseSeq,
    ProbeResponseSeqIcmp,
    ProbeResponseSeqTcp,
    ProbeResponseSeqUdp,
    TracerProtocol,
)
from .protocol import IpProtocol
from .socket import (
    AddressNotAvailableError,
    InvalidPacketSizeError,
    IpAddress,
    Socket,
    SocketAddress,
    SocketIoError,
    TracerError,
)

# The maximum size of the IP packet we allow.
MAX_PACKET_SIZE = 1024

IPV4_HEADER_SIZE = 20
ICMP_HEADER_SIZE = 8
UDP_HEADER_SIZE = 8
TCP_HEADER_SIZE = 20

# Value of the IPv4 `flags_and_fragment_offset` field with the "don't fragment" bit set.
DONT_FRAGMENT = 0x4000

_ICMP_ECHO_REPLY = 0
_ICMP_DESTINATION_UNREACHABLE = 3
_ICMP_ECHO_REQUEST = 8
_ICMP_TIME_EXCEEDED = 11


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise TracerError(f"{what} too short: {len(data)} bytes, need {size}")


def _ipv4_header_len(data: bytes) -> int:
    _require(data, IPV4_HEADER_SIZE, "IPv4 packet")
    return (data[0] & 0x0F) * 4


def _check_packet_size(packet_size: int) -> None:
    if packet_size > MAX_PACKET_SIZE:
        raise InvalidPacketSizeError(packet_size)


def internet_checksum(data: bytes) -> int:
    """Return the 16 bit ones' complement checksum of ``data``."""
    if len(data) % 2:
        data = bytes(data) + b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def icmp_ipv4_checksum(data: bytes) -> int:
    """Checksum of an ICMPv4 packet, ignoring its current checksum field."""
    _require(data, ICMP_HEADER_SIZE, "ICMP packet")
    return internet_checksum(bytes(data[:2]) + b"\x00\x00" + bytes(data[4:]))


def udp_ipv4_checksum(data: bytes, src_addr: IPv4Address, dest_addr: IPv4Address) -> int:
    """Checksum of a UDP packet over the IPv4 pseudo header, ignoring its checksum field."""
    _require(data, UDP_HEADER_SIZE, "UDP packet")
    pseudo = struct.pack(
        "!4s4sBBH",
        IPv4Address(src_addr).packed,
        IPv4Address(dest_addr).packed,
        0,
        IpProtocol.UDP.id(),
        len(data),
    )
    return internet_checksum(pseudo + bytes(data[:6]) + b"\x00\x00" + bytes(data[8:]))


def make_echo_request_icmp_packet(
    identifier: int, sequence: int, payload_size: int, payload_pattern: int
) -> bytes:
    """Create an ICMP echo request whose payload repeats ``payload_pattern``."""
    packet = bytearray(
        struct.pack("!BBHHH", _ICMP_ECHO_REQUEST, 0, 0, identifier, sequence)
    )
    packet += bytes([payload_pattern]) * payload_size
    struct.pack_into("!H", packet, 2, icmp_ipv4_checksum(packet))
    return bytes(packet)


def make_udp_packet(
    src_addr: IPv4Address,
    dest_addr: IPv4Address,
    src_port: int,
    dest_port: int,
    payload: bytes,
) -> bytes:
    """Create a UDP packet with a valid checksum."""
    length = UDP_HEADER_SIZE + len(payload)
    packet = bytearray(struct.pack("!HHHH", src_port, dest_port, length, 0))
    packet += payload
    struct.pack_into("!H", packet, 6, udp_ipv4_checksum(packet, src_addr, dest_addr))
    return bytes(packet)


def make_ipv4_packet(
    byte_order: PlatformIpv4FieldByteOrder,
    protocol: IpProtocol,
    src_addr: IPv4Address,
    dest_addr: IPv4Address,
    ttl: int,
    identification: int,
    payload: bytes,
) -> bytes:
    """Create an IPv4 packet with the "don't fragment" bit set.

    The header checksum is left zero for the operating system to fill in.
    """
    total_length = IPV4_HEADER_SIZE + len(payload)
    header = struct.pack(
        "!BBHHHBBH4s4s",
        0x45,
        0,
        byte_order.adjust_length(total_length),
        identification,
        byte_order.adjust_length(DONT_FRAGMENT),
        ttl,
        protocol.id(),
        0,
        IPv4Address(src_addr).packed,
        IPv4Address(dest_addr).packed,
    )
    return header + bytes(payload)


def icmp_payload_size(packet_size: int) -> int:
    """The ICMP payload size that makes an IPv4 packet of ``packet_size`` bytes."""
    size = packet_size - ICMP_HEADER_SIZE - IPV4_HEADER_SIZE
    if size < 0:
        raise InvalidPacketSizeError(packet_size)
    return size


def udp_payload_size(packet_size: int) -> int:
    """The UDP payload size that makes an IPv4 packet of ``packet_size`` bytes."""
    size = packet_size - UDP_HEADER_SIZE - IPV4_HEADER_SIZE
    if size < 0:
        raise InvalidPacketSizeError(packet_size)
    return size


def dispatch_icmp_probe(
    sock: Socket,
    probe: Probe,
    src_addr: IPv4Address,
    dest_addr: IPv4Address,
    packet_size: int,
    payload_pattern: int,
    byte_order: PlatformIpv4FieldByteOrder,
) -> None:
    """Send an ICMP echo request probe."""
    _check_packet_size(packet_size)
    src_addr, dest_addr = IPv4Address(src_addr), IPv4Address(dest_addr)
    echo_request = make_echo_request_icmp_packet(
        probe.identifier,
        probe.sequence,
        icmp_payload_size(packet_size),
        payload_pattern,
    )
    packet = make_ipv4_packet(
        byte_order, IpProtocol.ICMP, src_addr, dest_addr, probe.ttl, 0, echo_request
    )
    sock.send_to(packet, (dest_addr, 0))


def _swap_checksum_and_payload(udp: bytes) -> bytes:
    """Swap the checksum with a two byte payload."""
    return udp[:6] + udp[8:10] + udp[6:8]


def dispatch_udp_probe(
    sock: Socket,
    probe: Probe,
    src_addr: IPv4Address,
    dest_addr: IPv4Address,
    packet_size: int,
    payload_pattern: int,
    multipath_strategy: MultipathStrategy,
    byte_order: PlatformIpv4FieldByteOrder,
) -> None:
    """Send a UDP probe.

    With the Paris strategy the sequence travels in the UDP checksum field so
    that the flow identifying fields stay the same for every probe.
    """
    _check_packet_size(packet_size)
    src_addr, dest_addr = IPv4Address(src_addr), IPv4Address(dest_addr)
    paris = multipath_strategy is MultipathStrategy.PARIS
    if paris:
        payload = probe.sequence.to_bytes(2, "big")
    else:
        payload = bytes([payload_pattern]) * udp_payload_size(packet_size)
    udp = make_udp_packet(src_addr, dest_addr, probe.src_port, probe.dest_port, payload)
    if paris:
        udp = _swap_checksum_and_payload(udp)
    packet = make_ipv4_packet(
        byte_order,
        IpProtocol.UDP,
        src_addr,
        dest_addr,
        probe.ttl,
        probe.identifier,
        udp,
    )
    sock.send_to(packet, (dest_addr, probe.dest_port))


def _tolerate_in_progress(address: SocketAddress, action: Callable[[], None]) -> None:
    try:
        action()
    except SocketIoError as err:
        code = err.errno
        if code is None or not platform.is_not_in_progress_error(code):
            if code is None:
                raise
            return
        if code in (errno.EADDRINUSE, errno.EADDRNOTAVAIL):
            raise AddressNotAvailableError(address) from err
        raise


def dispatch_tcp_probe(
    socket_type: Any,
    probe: Probe,
    src_addr: IPv4Address,
    dest_addr: IPv4Address,
    tos: int,
) -> Socket:
    """Start a non-blocking TCP connection as a probe and return its socket."""
    src_addr, dest_addr = IPv4Address(src_addr), IPv4Address(dest_addr)
    sock = socket_type.new_stream_socket_ipv4()
    try:
        local_addr = (src_addr, probe.src_port)
        _tolerate_in_progress(local_addr, lambda: sock.bind(local_addr))
        sock.set_ttl(probe.ttl)
        sock.set_tos(tos)
        remote_addr = (dest_addr, probe.dest_port)
        _tolerate_in_progress(remote_addr, lambda: sock.connect(remote_addr))
    except BaseException:
        with contextlib.suppress(TracerError):
            sock.close()
        raise
    return sock


def _would_block(err: SocketIoError) -> bool:
    return isinstance(err.error, BlockingIOError) or err.errno in (
        errno.EAGAIN,
        errno.EWOULDBLOCK,
    )


def recv_icmp_probe(recv_socket: Socket, protocol: TracerProtocol) -> ProbeResponse | None:
    """Read one ICMP packet and turn it into a probe response, if it is one."""
    try:
        data = recv_socket.read()
    except SocketIoError as err:
        if _would_block(err):
            return None
        raise
    _require(data, IPV4_HEADER_SIZE, "IPv4 packet")
    return extract_probe_resp(protocol, data)


def recv_tcp_socket(
    tcp_socket: Socket, sequence: int, dest_addr: IpAddress
) -> ProbeResponse | None:
    """Produce a response for a TCP probe socket that has connected or failed."""
    resp_seq = ProbeResponseSeqIcmp(0, sequence)
    error = tcp_socket.take_error()
    if error is None:
        peer = tcp_socket.peer_addr()
        if peer is None:
            raise TracerError("connected TCP socket has no peer address")
        tcp_socket.shutdown()
        return ProbeResponse(ProbeResponseKind.TCP_REPLY, peer[0], resp_seq)
    code = error.errno
    if code is not None:
        if platform.is_conn_refused_error(code):
            return ProbeResponse(ProbeResponseKind.TCP_REFUSED, dest_addr, resp_seq)
        if platform.is_host_unreachable_error(code):
            return ProbeResponse(
                ProbeResponseKind.TIME_EXCEEDED, tcp_socket.icmp_error_info(), resp_seq
            )
    return None


def extract_probe_resp(protocol: TracerProtocol, packet: bytes) -> ProbeResponse | None:
    """Interpret an IPv4 packet carrying ICMP as a probe response, if it is one."""
    received = time.time()
    header_len = _ipv4_header_len(packet)
    src = IPv4Address(bytes(packet[12:16]))
    icmp = packet[header_len:]
    _require(icmp, ICMP_HEADER_SIZE, "ICMP packet")
    icmp_type = icmp[0]
    if icmp_type == _ICMP_TIME_EXCEEDED:
        kind = ProbeResponseKind.TIME_EXCEEDED
        resp_seq = _extract_probe_resp_seq(icmp[ICMP_HEADER_SIZE:], protocol)
    elif icmp_type == _ICMP_DESTINATION_UNREACHABLE:
        kind = ProbeResponseKind.DESTINATION_UNREACHABLE
        resp_seq = _extract_probe_resp_seq(icmp[ICMP_HEADER_SIZE:], protocol)
    elif icmp_type == _ICMP_ECHO_REPLY:
        if protocol is not TracerProtocol.ICMP:
            return None
        kind = ProbeResponseKind.ECHO_REPLY
        identifier, sequence = struct.unpack_from("!HH", icmp, 4)
        resp_seq = ProbeResponseSeqIcmp(identifier, sequence)
    else:
        return None
    return ProbeResponse(kind, src, resp_seq, received)


def _extract_probe_resp_seq(payload: bytes, protocol: TracerProtocol) -> ProbeResponseSeq:
    """Identify the original probe from the packet embedded in an ICMP error."""
    header_len = _ipv4_header_len(payload)
    nested = payload[header_len:]
    if protocol is TracerProtocol.ICMP:
        _require(nested, ICMP_HEADER_SIZE, "embedded echo request")
        identifier, sequence = struct.unpack_from("!HH", nested, 4)
        return ProbeResponseSeqIcmp(identifier, sequence)
    if protocol is TracerProtocol.UDP:
        _require(nested, UDP_HEADER_SIZE, "embedded UDP packet")
        src_port, dest_port, _, checksum = struct.unpack_from("!HHHH", nested)
        (identification,) = struct.unpack_from("!H", payload, 4)
        return ProbeResponseSeqUdp(identification, src_port, dest_port, checksum)
    # ICMP errors need only carry the first 8 bytes of the original TCP header.
    tcp = bytes(nested).ljust(TCP_HEADER_SIZE, b"\x00")
    src_port, dest_port = struct.unpack_from("!HH", tcp)
    return ProbeResponseSeqTcp(src_port, dest_port)