"""Tracer errors and the abstract socket interface used by the tracer."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from ipaddress import IPv4Address, IPv6Address
from types import TracebackType

IpAddress = IPv4Address | IPv6Address
SocketAddress = tuple[IPv4Address | IPv6Address, int]


class IoOperation(enum.Enum):
    """The socket operation during which an I/O error occurred."""

    NEW_SOCKET = "new socket"
    STARTUP = "startup"
    SET_NON_BLOCKING = "set non-blocking"
    LOCAL_ADDR = "local addr"
    BIND = "bind"
    CONNECT = "connect"
    SEND_TO = "send to"
    SET_TOS = "set tos"
    SET_TTL = "set ttl"
    SET_REUSE_PORT = "set reuse port"
    SET_HEADER_INCLUDED = "set header included"
    SET_UNICAST_HOPS_V6 = "set unicast hops v6"
    SELECT = "select"
    RECV_FROM = "recv from"
    READ = "read"
    SHUTDOWN = "shutdown"
    PEER_ADDR = "peer addr"
    TAKE_ERROR = "take error"
    CLOSE = "close"


class TracerError(Exception):
    """Base class for all tracer errors."""


class InvalidPacketSizeError(TracerError):
    """The requested packet size exceeds what is allowed."""

    def __init__(self, size: int) -> None:
        super().__init__(f"invalid packet size: {size}")
        self.size = size


class AddressNotAvailableError(TracerError):
    """A local or remote socket address could not be used."""

    def __init__(self, address: SocketAddress) -> None:
        super().__init__(f"address not available: {address[0]}:{address[1]}")
        self.address = address


class InvalidSourceAddrError(TracerError):
    """The source address could not be bound."""

    def __init__(self, addr: IpAddress) -> None:
        super().__init__(f"invalid source IP address: {addr}")
        self.addr = addr


class UnknownInterfaceError(TracerError):
    """No usable address was found for the named interface."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown interface: {name}")
        self.name = name


class SocketIoError(TracerError):
    """An operating system error raised by a socket operation."""

    def __init__(
        self,
        error: OSError,
        operation: IoOperation,
        address: SocketAddress | None = None,
    ) -> None:
        where = f" {address[0]}:{address[1]}" if address is not None else ""
        super().__init__(f"{operation.value} failed{where}: {error}")
        self.error = error
        self.operation = operation
        self.address = address

    @property
    def errno(self) -> int | None:
        """The raw OS error code, if any."""
        return self.error.errno


class Socket(ABC):
    """A socket able to send probes and receive their responses.

    Failing operations raise :class:`SocketIoError`.
    """

    @classmethod
    @abstractmethod
    def new_icmp_send_socket_ipv4(cls) -> Socket:
        """Create an IPv4 socket for sending ICMP probes."""

    @classmethod
    @abstractmethod
    def new_icmp_send_socket_ipv6(cls) -> Socket:
        """Create an IPv6 socket for sending ICMP probes."""

    @classmethod
    @abstractmethod
    def new_udp_send_socket_ipv4(cls) -> Socket:
        """Create an IPv4 socket for sending UDP probes."""

    @classmethod
    @abstractmethod
    def new_udp_send_socket_ipv6(cls) -> Socket:
        """Create an IPv6 socket for sending UDP probes."""

    @classmethod
    @abstractmethod
    def new_recv_socket_ipv4(cls, addr: IPv4Address) -> Socket:
        """Create an IPv4 socket for receiving probe responses."""

    @classmethod
    @abstractmethod
    def new_recv_socket_ipv6(cls, addr: IPv6Address) -> Socket:
        """Create an IPv6 socket for receiving probe responses."""

    @classmethod
    @abstractmethod
    def new_stream_socket_ipv4(cls) -> Socket:
        """Create an IPv4 TCP socket for sending TCP probes."""

    @classmethod
    @abstractmethod
    def new_stream_socket_ipv6(cls) -> Socket:
        """Create an IPv6 TCP socket for sending TCP probes."""

    @classmethod
    @abstractmethod
    def new_udp_dgram_socket_ipv4(cls) -> Socket:
        """Create a plain IPv4 UDP socket for local address validation."""

    @classmethod
    @abstractmethod
    def new_udp_dgram_socket_ipv6(cls) -> Socket:
        """Create a plain IPv6 UDP socket for local address validation."""

    @abstractmethod
    def bind(self, address: SocketAddress) -> None: ...

    @abstractmethod
    def set_tos(self, tos: int) -> None: ...

    @abstractmethod
    def set_ttl(self, ttl: int) -> None: ...

    @abstractmethod
    def set_reuse_port(self, reuse: bool) -> None: ...

    @abstractmethod
    def set_header_included(self, included: bool) -> None: ...

    @abstractmethod
    def set_unicast_hops_v6(self, hops: int) -> None: ...

    @abstractmethod
    def connect(self, address: SocketAddress) -> None: ...

    @abstractmethod
    def send_to(self, data: bytes, address: SocketAddress) -> None: ...

    @abstractmethod
    def is_readable(self, timeout: float) -> bool:
        """Return True if the socket becomes readable within ``timeout`` seconds."""

    @abstractmethod
    def is_writable(self) -> bool:
        """Return True if the socket is currently writable."""

    @abstractmethod
    def recv_from(self) -> tuple[bytes, SocketAddress | None]:
        """Receive one datagram and the address it came from."""

    @abstractmethod
    def read(self) -> bytes:
        """Receive one datagram."""

    @abstractmethod
    def shutdown(self) -> None: ...

    @abstractmethod
    def peer_addr(self) -> SocketAddress | None: ...

    @abstractmethod
    def take_error(self) -> OSError | None:
        """Return and clear the pending socket error, if any."""

    @abstractmethod
    def icmp_error_info(self) -> IpAddress:
        """Return the address that sent the ICMP error for this socket."""

    @abstractmethod
    def close(self) -> None: ...

    def __enter__(self) -> Socket:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()