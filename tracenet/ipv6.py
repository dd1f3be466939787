"""Building IPv6 probe packets and parsing the ICMPv6 responses they provoke."""

from __future__ import annotations

import contextlib
import errno
import struct
import time
from collections.abc import Callable
from ipaddress import IPv6Address
from typing import Any

from . import platform
from .ipv4 import MAX_PACKET_SIZE, internet_checksum
from .probe import (
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

IPV6_HEADER_SIZE = 40
ICMP_HEADER_SIZE = 8
UDP_HEADER_SIZE = 8
TCP_HEADER_SIZE = 20

# The largest payloads that fit in a packet of MAX_PACKET_SIZE bytes.
MAX_ICMP_PAYLOAD = MAX_PACKET_SIZE - IPV6_HEADER_SIZE - ICMP_HEADER_SIZE
MAX_UDP_PAYLOAD = MAX_PACKET_SIZE - IPV6_HEADER_SIZE - UDP_HEADER_SIZE

_ICMPV6_DESTINATION_UNREACHABLE = 1
_ICMPV6_TIME_EXCEEDED = 3
_ICMPV6_ECHO_REQUEST = 128
_ICMPV6_ECHO_REPLY = 129


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise TracerError(f"{what} too short: {len(data)} bytes, need {size}")


def _check_packet_size(packet_size: int) -> None:
    if packet_size > MAX_PACKET_SIZE:
        raise InvalidPacketSizeError(packet_size)


def _check_payload_size(payload_size: int, limit: int) -> None:
    if not 0 <= payload_size <= limit:
        raise ValueError(f"payload size out of range: {payload_size}")


def _pseudo_header(
    src_addr: IPv6Address, dest_addr: IPv6Address, length: int, next_header: int
) -> bytes:
    return struct.pack(
        "!16s16sI3xB",
        IPv6Address(src_addr).packed,
        IPv6Address(dest_addr).packed,
        length,
        next_header,
    )


def icmp_ipv6_checksum(data: bytes, src_addr: IPv6Address, dest_addr: IPv6Address) -> int:
    """Checksum of an ICMPv6 packet over the IPv6 pseudo header, ignoring its checksum field."""
    _require(data, ICMP_HEADER_SIZE, "ICMPv6 packet")
    pseudo = _pseudo_header(src_addr, dest_addr, len(data), IpProtocol.ICMPV6.id())
    return internet_checksum(pseudo + bytes(data[:2]) + b"\x00\x00" + bytes(data[4:]))


def udp_ipv6_checksum(data: bytes, src_addr: IPv6Address, dest_addr: IPv6Address) -> int:
    """Checksum of a UDP packet over the IPv6 pseudo header, ignoring its checksum field."""
    _require(data, UDP_HEADER_SIZE, "UDP packet")
    pseudo = _pseudo_header(src_addr, dest_addr, len(data), IpProtocol.UDP.id())
    return internet_checksum(pseudo + bytes(data[:6]) + b"\x00\x00" + bytes(data[8:]))


def make_echo_request_icmp_packet(
    src_addr: IPv6Address,
    dest_addr: IPv6Address,
    identifier: int,
    sequence: int,
    payload_size: int,
    payload_pattern: int,
) -> bytes:
    """Create an ICMPv6 echo request whose payload repeats ``payload_pattern``."""
    _check_payload_size(payload_size, MAX_ICMP_PAYLOAD)
    packet = bytearray(
        struct.pack("!BBHHH", _ICMPV6_ECHO_REQUEST, 0, 0, identifier, sequence)
    )
    packet += bytes([payload_pattern]) * payload_size
    struct.pack_into("!H", packet, 2, icmp_ipv6_checksum(packet, src_addr, dest_addr))
    return bytes(packet)


def make_udp_packet(
    src_addr: IPv6Address,
    dest_addr: IPv6Address,
    src_port: int,
    dest_port: int,
    payload_size: int,
    payload_pattern: int,
) -> bytes:
    """Create a UDP packet whose payload repeats ``payload_pattern``."""
    _check_payload_size(payload_size, MAX_UDP_PAYLOAD)
    length = UDP_HEADER_SIZE + payload_size
    packet = bytearray(struct.pack("!HHHH", src_port, dest_port, length, 0))
    packet += bytes([payload_pattern]) * payload_size
    struct.pack_into("!H", packet, 6, udp_ipv6_checksum(packet, src_addr, dest_addr))
    return bytes(packet)


def icmp_payload_size(packet_size: int) -> int:
    """The ICMPv6 payload size that makes an IPv6 packet of ``packet_size`` bytes."""
    size = packet_size - ICMP_HEADER_SIZE - IPV6_HEADER_SIZE
    if size < 0:
        raise InvalidPacketSizeError(packet_size)
    return size


def udp_payload_size(packet_size: int) -> int:
    """The UDP payload size that makes an IPv6 packet of ``packet_size`` bytes."""
    size = packet_size - UDP_HEADER_SIZE - IPV6_HEADER_SIZE
    if size < 0:
        raise InvalidPacketSizeError(packet_size)
    return size


def dispatch_icmp_probe(
    sock: Socket,
    probe: Probe,
    src_addr: IPv6Address,
    dest_addr: IPv6Address,
    packet_size: int,
    payload_pattern: int,
) -> None:
    """Send an ICMPv6 echo request probe."""
    _check_packet_size(packet_size)
    src_addr, dest_addr = IPv6Address(src_addr), IPv6Address(dest_addr)
    echo_request = make_echo_request_icmp_packet(
        src_addr,
        dest_addr,
        probe.identifier,
        probe.sequence,
        icmp_payload_size(packet_size),
        payload_pattern,
    )
    sock.set_unicast_hops_v6(probe.ttl)
    sock.send_to(echo_request, (dest_addr, 0))


def dispatch_udp_probe(
    sock: Socket,
    probe: Probe,
    src_addr: IPv6Address,
    dest_addr: IPv6Address,
    packet_size: int,
    payload_pattern: int,
) -> None:
    """Send a UDP probe."""
    _check_packet_size(packet_size)
    src_addr, dest_addr = IPv6Address(src_addr), IPv6Address(dest_addr)
    udp = make_udp_packet(
        src_addr,
        dest_addr,
        probe.src_port,
        probe.dest_port,
        udp_payload_size(packet_size),
        payload_pattern,
    )
    sock.set_unicast_hops_v6(probe.ttl)
    # The target port travels in the UDP header; naming it here too makes the send fail.
    sock.send_to(udp, (dest_addr, 0))


def _tolerate_in_progress(address: SocketAddress, action: Callable[[], None]) -> None:
    try:
        action()
    except SocketIoError as err:
        code = err.errno
        if code is None:
            raise
        if not platform.is_not_in_progress_error(code):
            return
        if code in (errno.EADDRINUSE, errno.EADDRNOTAVAIL):
            raise AddressNotAvailableError(address) from err
        raise


def dispatch_tcp_probe(
    socket_type: Any,
    probe: Probe,
    src_addr: IPv6Address,
    dest_addr: IPv6Address,
) -> Socket:
    """Start a non-blocking TCP connection as a probe and return its socket."""
    src_addr, dest_addr = IPv6Address(src_addr), IPv6Address(dest_addr)
    sock = socket_type.new_stream_socket_ipv6()
    try:
        local_addr = (src_addr, probe.src_port)
        _tolerate_in_progress(local_addr, lambda: sock.bind(local_addr))
        sock.set_unicast_hops_v6(probe.ttl)
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
    """Read one ICMPv6 packet and turn it into a probe response, if it is one."""
    try:
        data, addr = recv_socket.recv_from()
    except SocketIoError as err:
        if _would_block(err):
            return None
        raise
    _require(data, ICMP_HEADER_SIZE, "ICMPv6 packet")
    if addr is None:
        raise TracerError("received ICMPv6 packet has no source address")
    src = addr[0]
    if not isinstance(src, IPv6Address):
        raise TracerError(f"received ICMPv6 packet from non IPv6 address: {src}")
    return extract_probe_resp(protocol, data, src)


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


def extract_probe_resp(
    protocol: TracerProtocol, icmp_packet: bytes, src: IPv6Address
) -> ProbeResponse | None:
    """Interpret an ICMPv6 packet from ``src`` as a probe response, if it is one."""
    received = time.time()
    src = IPv6Address(src)
    _require(icmp_packet, ICMP_HEADER_SIZE, "ICMPv6 packet")
    icmp_type = icmp_packet[0]
    if icmp_type == _ICMPV6_TIME_EXCEEDED:
        kind = ProbeResponseKind.TIME_EXCEEDED
        resp_seq = _extract_probe_resp_seq(icmp_packet[ICMP_HEADER_SIZE:], protocol)
    elif icmp_type == _ICMPV6_DESTINATION_UNREACHABLE:
        kind = ProbeResponseKind.DESTINATION_UNREACHABLE
        resp_seq = _extract_probe_resp_seq(icmp_packet[ICMP_HEADER_SIZE:], protocol)
    elif icmp_type == _ICMPV6_ECHO_REPLY:
        if protocol is not TracerProtocol.ICMP:
            return None
        kind = ProbeResponseKind.ECHO_REPLY
        identifier, sequence = struct.unpack_from("!HH", icmp_packet, 4)
        resp_seq = ProbeResponseSeqIcmp(identifier, sequence)
    else:
        return None
    return ProbeResponse(kind, src, resp_seq, received)


def _extract_probe_resp_seq(payload: bytes, protocol: TracerProtocol) -> ProbeResponseSeq:
    """Identify the original probe from the IPv6 packet embedded in an ICMPv6 error."""
    _require(payload, IPV6_HEADER_SIZE, "embedded IPv6 packet")
    nested = payload[IPV6_HEADER_SIZE:]
    if protocol is TracerProtocol.ICMP:
        _require(nested, ICMP_HEADER_SIZE, "embedded echo request")
        identifier, sequence = struct.unpack_from("!HH", nested, 4)
        return ProbeResponseSeqIcmp(identifier, sequence)
    if protocol is TracerProtocol.UDP:
        _require(nested, UDP_HEADER_SIZE, "embedded UDP packet")
        src_port, dest_port = struct.unpack_from("!HH", nested)
        return ProbeResponseSeqUdp(0, src_port, dest_port, 0)
    # ICMPv6 errors carry as much of the original packet as fits the minimum MTU,
    # so a complete TCP header is expected here.
    _require(nested, TCP_HEADER_SIZE, "embedded TCP packet")
    src_port, dest_port = struct.unpack_from("!HH", nested)
    return ProbeResponseSeqTcp(src_port, dest_port)