# tracenet

`tracenet` is the network layer of a traceroute tool. It builds probe packets,
sends them with a chosen TTL over ICMP, UDP or TCP on IPv4 or IPv6, and turns
the ICMP replies (time exceeded, destination unreachable, echo reply) and the
outcome of TCP connection attempts into `ProbeResponse` objects.

## Installation

```
pip install tracenet
```

The `test` extra installs pytest for running the test suite.

Sending raw packets needs elevated privileges. On Linux that means root or the
`CAP_NET_RAW` capability. The socket implementation targets Unix-like systems.

## Modules

- `tracenet.protocol`: `IpProtocol` (with `ICMP`, `ICMPV6`, `UDP`, `TCP`,
  `from_id` and `id`) and `fmt_payload`, which renders bytes as space separated
  hex.
- `tracenet.socket`: the abstract `Socket` interface, `IoOperation`, and the
  errors `TracerError`, `InvalidPacketSizeError`, `AddressNotAvailableError`,
  `InvalidSourceAddrError`, `UnknownInterfaceError` and `SocketIoError`. Every
  error derives from `TracerError`.
- `tracenet.byte_order`: `PlatformIpv4FieldByteOrder` (`HOST` or `NETWORK`),
  whose `adjust_length` encodes the IPv4 total length and fragment fields.
- `tracenet.probe`: `TracerProtocol`, `MultipathStrategy` (`CLASSIC` or
  `PARIS`), `Probe`, `ProbeResponse`, `ProbeResponseKind`,
  `ProbeResponseSeqIcmp`, `ProbeResponseSeqUdp`, `ProbeResponseSeqTcp` and
  `TracerChannelConfig`.
- `tracenet.platform`: `SocketImpl`, the operating-system socket, and the
  helpers `for_address`, `discover_local_addr`, `lookup_interface_addr_ipv4`,
  `lookup_interface_addr_ipv6` and `startup`.
- `tracenet.source`: `discover_source_addr`, `validate_source_addr` and
  `udp_socket_for_addr_family`.
- `tracenet.ipv4` and `tracenet.ipv6`: checksums, packet construction, probe
  dispatch and response parsing for each address family.
- `tracenet.channel`: `TracerChannel`, which opens the sockets for a
  configuration, sends probes and receives responses.

## Example

```python
from ipaddress import ip_address

from tracenet.channel import TracerChannel
from tracenet.probe import Probe, TracerChannelConfig, TracerProtocol
from tracenet.source import discover_source_addr

target = ip_address("192.0.2.1")
source = discover_source_addr(target, None, None)

config = TracerChannelConfig(
    protocol=TracerProtocol.ICMP,
    source_addr=source,
    target_addr=target,
    packet_size=84,
    read_timeout=0.01,
    tcp_connect_timeout=1.0,
)

with TracerChannel.connect(config) as channel:
    channel.send_probe(Probe(sequence=33000, identifier=1234, src_port=0, dest_port=0, ttl=1))
    response = channel.recv_probe()
    if response is not None:
        print(response.kind, response.addr, response.resp_seq)
```

Timeouts are in seconds. `recv_probe` returns `None` when no response arrives
within `read_timeout`. A packet size above 1024 bytes raises
`InvalidPacketSizeError`. For TCP, each probe is a non-blocking connection
attempt; at most 256 may be in flight, and those older than
`tcp_connect_timeout` are dropped. With `MultipathStrategy.PARIS`, IPv4 UDP
probes carry their sequence in the UDP checksum field.

## What this package does not do

`tracenet` sends single probes and decodes single responses. It has no
command-line program, no interactive display, no loop that drives a trace hop
by hop, no round-trip statistics and no reverse DNS lookups; a caller builds
those on top of `TracerChannel`.