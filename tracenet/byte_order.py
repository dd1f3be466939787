"""Byte order of the IPv4 total length and fragment fields."""

from __future__ import annotations

import enum


class PlatformIpv4FieldByteOrder(enum.Enum):
    """How the IPv4 ``total_length``, ``flags`` and ``fragment_offset`` fields are encoded.

    The required order differs between operating systems: some want these
    fields in host byte order, others in network byte order.
    """

    HOST = "host"
    NETWORK = "network"

    def adjust_length(self, ipv4_total_length: int) -> int:
        """Adjust a 16 bit header field value for this byte order."""
        if not 0 <= ipv4_total_length <= 0xFFFF:
            raise ValueError(f"value out of 16 bit range: {ipv4_total_length}")
        if self is PlatformIpv4FieldByteOrder.HOST:
            return int.from_bytes(ipv4_total_length.to_bytes(2, "big"), "little")
        return ipv4_total_length