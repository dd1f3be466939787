import pytest

from tracenet.protocol import IpProtocol, fmt_payload


@pytest.mark.parametrize(
    "number, expected",
    [
        (1, IpProtocol.ICMP),
        (58, IpProtocol.ICMPV6),
        (17, IpProtocol.UDP),
        (6, IpProtocol.TCP),
    ],
)
def test_from_id_known(number, expected):
    assert IpProtocol.from_id(number) == expected
    assert IpProtocol.from_id(number).is_other is False


def test_from_id_unknown_is_other():
    proto = IpProtocol.from_id(200)
    assert proto.is_other
    assert proto.id() == 200


def test_round_trip_all_numbers():
    for number in range(256):
        assert IpProtocol.from_id(number).id() == number


def test_other_differs_from_known():
    assert IpProtocol.other(1) != IpProtocol.ICMP
    assert IpProtocol.other(1).id() == IpProtocol.ICMP.id()


@pytest.mark.parametrize("number", [-1, 256])
def test_out_of_range(number):
    with pytest.raises(ValueError):
        IpProtocol.from_id(number)


def test_fmt_payload():
    assert fmt_payload(bytes([0x0A, 0xFF, 0x00])) == "0a ff 00"


def test_fmt_payload_empty():
    assert fmt_payload(b"") == ""


def test_fmt_payload_parses_back():
    data = bytes(range(0, 256, 7))
    assert bytes.fromhex(fmt_payload(data)) == data