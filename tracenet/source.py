"""Discovery and validation of the local source address."""

from __future__ import annotations

from ipaddress import IPv4Address

from . import platform
from .platform import SocketImpl
from .socket import InvalidSourceAddrError, IpAddress, SocketIoError

# Port used for local address discovery when no destination port is known.
DISCOVERY_PORT = 80


def discover_source_addr(
    target_addr: IpAddress, dest_port: int | None, interface: str | None
) -> IpAddress:
    """Find the local address to use for reaching ``target_addr``.

    If ``interface`` is given, its address of the target's family is used;
    otherwise the routing table decides.
    """
    if interface is not None:
        return _lookup_interface_addr(target_addr, interface)
    port = dest_port if dest_port is not None else DISCOVERY_PORT
    return platform.discover_local_addr(target_addr, port)


def validate_source_addr(source_addr: IpAddress) -> IpAddress:
    """Check that ``source_addr`` can be bound and return it."""
    sock = udp_socket_for_addr_family(source_addr)
    try:
        sock.bind((source_addr, 0))
    except SocketIoError as err:
        sock.close()
        raise InvalidSourceAddrError(source_addr) from err
    sock.close()
    return source_addr


def udp_socket_for_addr_family(addr: IpAddress) -> SocketImpl:
    """Create a plain UDP socket of the address family of ``addr``."""
    if isinstance(addr, IPv4Address):
        return SocketImpl.new_udp_dgram_socket_ipv4()
    return SocketImpl.new_udp_dgram_socket_ipv6()


def _lookup_interface_addr(addr: IpAddress, name: str) -> IpAddress:
    if isinstance(addr, IPv4Address):
        return platform.lookup_interface_addr_ipv4(name)
    return platform.lookup_interface_addr_ipv6(name)