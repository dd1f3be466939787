from ipaddress import IPv4Address, IPv6Address

import pytest

from tracenet.probe import (
    MultipathStrategy,
    Probe,
    ProbeResponse,
    ProbeResponseKind,
    ProbeResponseSeqIcmp,
    ProbeResponseSeqTcp,
    ProbeResponseSeqUdp,
    TracerChannelConfig,
    TracerProtocol,
)


def make_config(**overrides):
    values = dict(
        protocol=TracerProtocol.ICMP,
        source_addr="192.0.2.1",
        target_addr="198.51.100.1",
        packet_size=84,
        read_timeout=0.01,
        tcp_connect_timeout=1.0,
    )
    values.update(overrides)
    return TracerChannelConfig(**values)


def test_probe_fields():
    probe = Probe(sequence=33000, identifier=1234, src_port=5000, dest_port=80, ttl=5)
    assert probe.sequence == 33000
    assert probe.ttl == 5
    assert probe == Probe(33000, 1234, 5000, 80, 5)


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(sequence=65536, identifier=0, src_port=0, dest_port=0, ttl=1),
        dict(sequence=0, identifier=-1, src_port=0, dest_port=0, ttl=1),
        dict(sequence=0, identifier=0, src_port=70000, dest_port=0, ttl=1),
        dict(sequence=0, identifier=0, src_port=0, dest_port=0, ttl=256),
    ],
)
def test_probe_out_of_range(kwargs):
    with pytest.raises(ValueError):
        Probe(**kwargs)


def test_probe_is_frozen():
    probe = Probe(1, 2, 3, 4, 5)
    with pytest.raises(AttributeError):
        probe.ttl = 9
    assert probe.ttl == 5
    assert probe == Probe(1, 2, 3, 4, 5)


def test_probe_response_holds_values():
    seq = ProbeResponseSeqUdp(identifier=7, src_port=5000, dest_port=33434, checksum=99)
    resp = ProbeResponse(ProbeResponseKind.TIME_EXCEEDED, IPv4Address("192.0.2.5"), seq)
    assert resp.kind is ProbeResponseKind.TIME_EXCEEDED
    assert resp.resp_seq.dest_port == 33434
    assert resp.received > 0


def test_response_seq_equality():
    assert ProbeResponseSeqIcmp(1, 2) == ProbeResponseSeqIcmp(1, 2)
    assert ProbeResponseSeqIcmp(1, 2) != ProbeResponseSeqIcmp(2, 1)
    assert ProbeResponseSeqTcp(5000, 80) == ProbeResponseSeqTcp(5000, 80)


def test_config_converts_addresses():
    config = make_config()
    assert config.source_addr == IPv4Address("192.0.2.1")
    assert config.target_addr == IPv4Address("198.51.100.1")
    assert config.multipath_strategy is MultipathStrategy.CLASSIC
    assert config.payload_pattern == 0


def test_config_ipv6():
    config = make_config(source_addr="2001:db8::1", target_addr=IPv6Address("2001:db8::2"))
    assert config.source_addr == IPv6Address("2001:db8::1")


def test_config_family_mismatch():
    with pytest.raises(ValueError):
        make_config(target_addr="2001:db8::2")


@pytest.mark.parametrize(
    "overrides",
    [
        dict(packet_size=-1),
        dict(payload_pattern=256),
        dict(tos=300),
        dict(read_timeout=-0.5),
        dict(tcp_connect_timeout=-1),
    ],
)
def test_config_invalid_values(overrides):
    with pytest.raises(ValueError):
        make_config(**overrides)


def test_config_invalid_address():
    with pytest.raises(ValueError):
        make_config(source_addr="not-an-address")