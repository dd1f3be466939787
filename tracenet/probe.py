"""Probe, probe response and tracer channel configuration types."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address, ip_address

IpAddress = IPv4Address | IPv6Address


def _check_range(name: str, value: int, bits: int) -> None:
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{name} out of {bits} bit range: {value}")


def _as_ip(value: IpAddress | str) -> IpAddress:
    return value if isinstance(value, (IPv4Address, IPv6Address)) else ip_address(value)


class TracerProtocol(enum.Enum):
    """The protocol used for tracing."""

    ICMP = "icmp"
    UDP = "udp"
    TCP = "tcp"


class MultipathStrategy(enum.Enum):
    """How probes are constructed with respect to multipath routing."""

    CLASSIC = "classic"
    PARIS = "paris"


@dataclass(frozen=True)
class Probe:
    """A single probe to send."""

    sequence: int
    identifier: int
    src_port: int
    dest_port: int
    ttl: int

    def __post_init__(self) -> None:
        _check_range("sequence", self.sequence, 16)
        _check_range("identifier", self.identifier, 16)
        _check_range("src_port", self.src_port, 16)
        _check_range("dest_port", self.dest_port, 16)
        _check_range("ttl", self.ttl, 8)


@dataclass(frozen=True)
class ProbeResponseSeqIcmp:
    """Identifies an ICMP probe from its response."""

    identifier: int
    sequence: int


@dataclass(frozen=True)
class ProbeResponseSeqUdp:
    """Identifies a UDP probe from its response."""

    identifier: int
    src_port: int
    dest_port: int
    checksum: int


@dataclass(frozen=True)
class ProbeResponseSeqTcp:
    """Identifies a TCP probe from its response."""

    src_port: int
    dest_port: int


ProbeResponseSeq = ProbeResponseSeqIcmp | ProbeResponseSeqUdp | ProbeResponseSeqTcp


class ProbeResponseKind(enum.Enum):
    """What kind of response was received for a probe."""

    TIME_EXCEEDED = "time_exceeded"
    DESTINATION_UNREACHABLE = "destination_unreachable"
    ECHO_REPLY = "echo_reply"
    TCP_REPLY = "tcp_reply"
    TCP_REFUSED = "tcp_refused"


@dataclass(frozen=True)
class ProbeResponse:
    """A response to a probe: its kind, sender and identifying sequence."""

    kind: ProbeResponseKind
    addr: IpAddress
    resp_seq: ProbeResponseSeq
    received: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TracerChannelConfig:
    """Configuration of a tracer channel; timeouts are in seconds."""

    protocol: TracerProtocol
    source_addr: IpAddress
    target_addr: IpAddress
    packet_size: int
    read_timeout: float
    tcp_connect_timeout: float
    payload_pattern: int = 0
    multipath_strategy: MultipathStrategy = MultipathStrategy.CLASSIC
    tos: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_addr", _as_ip(self.source_addr))
        object.__setattr__(self, "target_addr", _as_ip(self.target_addr))
        if self.source_addr.version != self.target_addr.version:
            raise ValueError("source and target addresses must be of the same family")
        _check_range("packet_size", self.packet_size, 16)
        _check_range("payload_pattern", self.payload_pattern, 8)
        _check_range("tos", self.tos, 8)
        if self.read_timeout < 0 or self.tcp_connect_timeout < 0:
            raise ValueError("timeouts must not be negative")