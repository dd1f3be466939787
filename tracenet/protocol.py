"""IP protocol identifiers and payload formatting helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class IpProtocol:
    """An IP protocol number, optionally one of the well known protocols.

    Well known protocols carry a ``name``; any other protocol number is
    represented with ``name`` set to ``None`` and compares unequal to the
    well known protocol of the same number.
    """

    number: int
    name: str | None = None

    ICMP: ClassVar[IpProtocol]
    ICMPV6: ClassVar[IpProtocol]
    UDP: ClassVar[IpProtocol]
    TCP: ClassVar[IpProtocol]

    def __post_init__(self) -> None:
        if not 0 <= self.number <= 0xFF:
            raise ValueError(f"protocol number out of range: {self.number}")

    @classmethod
    def from_id(cls, value: int) -> IpProtocol:
        """Map a protocol number to a well known protocol where there is one."""
        known = _KNOWN.get(value)
        return known if known is not None else cls(value)

    @classmethod
    def other(cls, value: int) -> IpProtocol:
        """Create an unnamed protocol for the given number."""
        return cls(value)

    def id(self) -> int:
        """Return the protocol number."""
        return self.number

    @property
    def is_other(self) -> bool:
        return self.name is None


IpProtocol.ICMP = IpProtocol(1, "icmp")
IpProtocol.ICMPV6 = IpProtocol(58, "icmpv6")
IpProtocol.UDP = IpProtocol(17, "udp")
IpProtocol.TCP = IpProtocol(6, "tcp")

_KNOWN: dict[int, IpProtocol] = {
    proto.number: proto
    for proto in (IpProtocol.ICMP, IpProtocol.ICMPV6, IpProtocol.UDP, IpProtocol.TCP)
}


def fmt_payload(data: bytes) -> str:
    """Format bytes as space separated two digit lower case hex."""
    return " ".join(f"{byte:02x}" for byte in data)