"""A channel for sending probes and receiving their responses."""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass
from ipaddress import IPv4Address
from types import TracebackType

from . import ipv4, ipv6, platform
from .byte_order import PlatformIpv4FieldByteOrder
from .ipv4 import MAX_PACKET_SIZE
from .platform import SocketImpl
from .probe import Probe, ProbeResponse, TracerChannelConfig, TracerProtocol
from .socket import InvalidPacketSizeError, Socket, TracerError

# The maximum number of TCP probes in flight at once.
MAX_TCP_PROBES = 256


@dataclass(eq=False)
class _TcpProbe:
    socket: Socket
    sequence: int
    start: float


def _close_quietly(sock: Socket) -> None:
    with contextlib.suppress(TracerError):
        sock.close()


class TracerChannel:
    """Sends probes of the configured protocol and receives their responses."""

    def __init__(
        self,
        config: TracerChannelConfig,
        recv_socket: Socket,
        send_socket: Socket | None = None,
        byte_order: PlatformIpv4FieldByteOrder = PlatformIpv4FieldByteOrder.NETWORK,
        socket_type: type[Socket] = SocketImpl,
    ) -> None:
        self._config = config
        self._recv_socket = recv_socket
        self._send_socket = send_socket
        self._byte_order = byte_order
        self._socket_type = socket_type
        self._tcp_probes: list[_TcpProbe] = []

    @classmethod
    def connect(
        cls, config: TracerChannelConfig, socket_type: type[Socket] = SocketImpl
    ) -> TracerChannel:
        """Create a channel, opening the sockets it needs."""
        if config.packet_size > MAX_PACKET_SIZE:
            raise InvalidPacketSizeError(config.packet_size)
        platform.startup()
        byte_order = platform.for_address(config.source_addr)
        is_v4 = isinstance(config.source_addr, IPv4Address)
        send_socket: Socket | None
        if config.protocol is TracerProtocol.ICMP:
            send_socket = (
                socket_type.new_icmp_send_socket_ipv4()
                if is_v4
                else socket_type.new_icmp_send_socket_ipv6()
            )
        elif config.protocol is TracerProtocol.UDP:
            send_socket = (
                socket_type.new_udp_send_socket_ipv4()
                if is_v4
                else socket_type.new_udp_send_socket_ipv6()
            )
        else:
            send_socket = None
        try:
            if is_v4:
                recv_socket = socket_type.new_recv_socket_ipv4(config.source_addr)
            else:
                recv_socket = socket_type.new_recv_socket_ipv6(config.source_addr)
        except BaseException:
            if send_socket is not None:
                _close_quietly(send_socket)
            raise
        return cls(config, recv_socket, send_socket, byte_order, socket_type)

    def send_probe(self, probe: Probe) -> None:
        """Send a single probe."""
        cfg = self._config
        if cfg.protocol is TracerProtocol.TCP:
            self._dispatch_tcp_probe(probe)
            return
        sock = self._send_socket
        if sock is None:
            raise TracerError("channel has no socket for sending probes")
        is_v4 = isinstance(cfg.source_addr, IPv4Address)
        if cfg.protocol is TracerProtocol.ICMP:
            if is_v4:
                ipv4.dispatch_icmp_probe(
                    sock,
                    probe,
                    cfg.source_addr,
                    cfg.target_addr,
                    cfg.packet_size,
                    cfg.payload_pattern,
                    self._byte_order,
                )
            else:
                ipv6.dispatch_icmp_probe(
                    sock,
                    probe,
                    cfg.source_addr,
                    cfg.target_addr,
                    cfg.packet_size,
                    cfg.payload_pattern,
                )
        elif is_v4:
            ipv4.dispatch_udp_probe(
                sock,
                probe,
                cfg.source_addr,
                cfg.target_addr,
                cfg.packet_size,
                cfg.payload_pattern,
                cfg.multipath_strategy,
                self._byte_order,
            )
        else:
            ipv6.dispatch_udp_probe(
                sock,
                probe,
                cfg.source_addr,
                cfg.target_addr,
                cfg.packet_size,
                cfg.payload_pattern,
            )

    def recv_probe(self) -> ProbeResponse | None:
        """Return the next available probe response, if any."""
        if self._config.protocol is TracerProtocol.TCP:
            resp = self._recv_tcp_sockets()
            if resp is not None:
                return resp
        return self._recv_icmp_probe()

    def _dispatch_tcp_probe(self, probe: Probe) -> None:
        if len(self._tcp_probes) >= MAX_TCP_PROBES:
            raise TracerError(f"too many TCP probes in flight (limit {MAX_TCP_PROBES})")
        cfg = self._config
        if isinstance(cfg.source_addr, IPv4Address):
            sock = ipv4.dispatch_tcp_probe(
                self._socket_type, probe, cfg.source_addr, cfg.target_addr, cfg.tos
            )
        else:
            sock = ipv6.dispatch_tcp_probe(
                self._socket_type, probe, cfg.source_addr, cfg.target_addr
            )
        self._tcp_probes.append(_TcpProbe(sock, probe.sequence, time.monotonic()))

    def _recv_icmp_probe(self) -> ProbeResponse | None:
        if not self._recv_socket.is_readable(self._config.read_timeout):
            return None
        if isinstance(self._config.target_addr, IPv4Address):
            return ipv4.recv_icmp_probe(self._recv_socket, self._config.protocol)
        return ipv6.recv_icmp_probe(self._recv_socket, self._config.protocol)

    def _recv_tcp_sockets(self) -> ProbeResponse | None:
        """Report the first TCP probe that connected or failed.

        Probes older than the connect timeout are dropped first.
        """
        now = time.monotonic()
        live = []
        for probe in self._tcp_probes:
            if max(now - probe.start, 0.0) < self._config.tcp_connect_timeout:
                live.append(probe)
            else:
                _close_quietly(probe.socket)
        self._tcp_probes = live
        found = next((probe for probe in live if self._writable(probe.socket)), None)
        if found is None:
            return None
        self._tcp_probes.remove(found)
        target = self._config.target_addr
        try:
            if isinstance(target, IPv4Address):
                return ipv4.recv_tcp_socket(found.socket, found.sequence, target)
            return ipv6.recv_tcp_socket(found.socket, found.sequence, target)
        finally:
            _close_quietly(found.socket)

    @staticmethod
    def _writable(sock: Socket) -> bool:
        try:
            return sock.is_writable()
        except TracerError:
            return False

    def close(self) -> None:
        """Close every socket held by the channel."""
        for probe in self._tcp_probes:
            _close_quietly(probe.socket)
        self._tcp_probes = []
        if self._send_socket is not None:
            _close_quietly(self._send_socket)
        _close_quietly(self._recv_socket)

    def __enter__(self) -> TracerChannel:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()