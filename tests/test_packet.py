import pytest

from mctpstack.packet import (
    HEADER_SIZE,
    MCTP_BTU,
    HDR_FLAG_EOM,
    HDR_FLAG_SOM,
    HDR_FLAG_TO,
    HDR_SEQ_SHIFT,
    MctpHeader,
    MessageType,
    PacketBuffer,
    PacketBufferError,
    packet_size,
)


def test_packet_size_adds_header():
    assert packet_size(MCTP_BTU) == MCTP_BTU + HEADER_SIZE
    assert packet_size(0) == HEADER_SIZE


def test_header_wire_bytes():
    hdr = MctpHeader(ver=0x01, dest=0x08, src=0x09, flags_seq_tag=0xC8)
    assert hdr.pack() == bytes([0x01, 0x08, 0x09, 0xC8])


def test_header_flags_decoding():
    hdr = MctpHeader(ver=0x01, dest=0x08, src=0x09, flags_seq_tag=0xC8)
    assert hdr.som and hdr.eom and hdr.tag_owner
    assert hdr.tag == 0
    assert hdr.seq == 0
    assert hdr.version == 1


def test_header_seq_and_tag():
    flags = (2 << HDR_SEQ_SHIFT) | HDR_FLAG_SOM | 5
    hdr = MctpHeader(flags_seq_tag=flags)
    assert hdr.seq == 2
    assert hdr.tag == 5
    assert hdr.som and not hdr.eom and not hdr.tag_owner


@pytest.mark.parametrize(
    "hdr",
    [
        MctpHeader(1, 9, 10, HDR_FLAG_SOM | HDR_FLAG_EOM),
        MctpHeader(1, 0xFF, 0, HDR_FLAG_TO | 7),
        MctpHeader(0, 0, 0, 0),
    ],
)
def test_header_round_trip(hdr):
    assert MctpHeader.unpack(hdr.pack()) == hdr


def test_header_unpack_ignores_trailing_bytes():
    raw = bytes([0x01, 0x08, 0x09, 0xC8, 0x00, 0x81])
    assert MctpHeader.unpack(raw) == MctpHeader(1, 8, 9, 0xC8)


def test_header_unpack_too_short():
    with pytest.raises(PacketBufferError):
        MctpHeader.unpack(bytes([0x01, 0x08, 0x09]))


def test_header_pack_rejects_out_of_range():
    with pytest.raises(ValueError):
        MctpHeader(dest=256).pack()


def test_message_type_from_payload_byte():
    payload = bytes([0x7E, 0x00])
    assert MessageType(payload[0]) is MessageType.VDPCI


def test_new_buffer_layout():
    pkt = PacketBuffer(packet_size(MCTP_BTU) + 16, pad=16, length=5)
    assert len(pkt) == 5
    assert pkt.start == pkt.mctp_hdr_off == 16
    assert pkt.end == 21


def test_buffer_rejects_length_beyond_capacity():
    with pytest.raises(PacketBufferError):
        PacketBuffer(8, pad=4, length=5)


def test_set_header_and_payload_round_trip():
    pkt = PacketBuffer(packet_size(MCTP_BTU), length=HEADER_SIZE + 3)
    hdr = MctpHeader(1, 9, 8, HDR_FLAG_SOM | HDR_FLAG_EOM)
    pkt.set_header(hdr)
    pkt.set_payload(b"\x00\x8a\x0b")
    assert pkt.header() == hdr
    assert pkt.payload() == b"\x00\x8a\x0b"
    assert pkt.header_bytes() == hdr.pack() + b"\x00\x8a\x0b"


def test_set_payload_beyond_length_raises():
    pkt = PacketBuffer(packet_size(MCTP_BTU), length=HEADER_SIZE + 1)
    with pytest.raises(PacketBufferError):
        pkt.set_payload(b"\x01\x02")


def test_push_appends_and_grows():
    pkt = PacketBuffer(packet_size(MCTP_BTU))
    pkt.push(MctpHeader(1, 8, 9, 0xC8).pack())
    pkt.push(b"\x01\x02")
    assert len(pkt) == HEADER_SIZE + 2
    assert pkt.header().src == 9
    assert pkt.payload() == b"\x01\x02"


def test_push_to_exact_capacity_then_overflow():
    pkt = PacketBuffer(packet_size(MCTP_BTU))
    pkt.push(bytes(packet_size(MCTP_BTU)))
    assert len(pkt) == pkt.size
    with pytest.raises(PacketBufferError):
        pkt.push(b"\x00")


def test_push_failure_leaves_packet_unchanged():
    pkt = PacketBuffer(6, length=4)
    with pytest.raises(PacketBufferError):
        pkt.push(b"\x01\x02\x03")
    assert pkt.end == 4


def test_alloc_start_uses_headroom():
    pkt = PacketBuffer(20, pad=8, length=4)
    view = pkt.alloc_start(8)
    view[:] = bytes([0xAA] * 8)
    assert pkt.start == 0
    assert len(pkt) == 12
    assert bytes(pkt.data[:8]) == bytes([0xAA] * 8)
    assert pkt.mctp_hdr_off == 8


def test_alloc_start_beyond_headroom_raises():
    pkt = PacketBuffer(20, pad=2, length=4)
    with pytest.raises(PacketBufferError):
        pkt.alloc_start(3)
    assert pkt.start == 2


def test_alloc_end_extends_tail():
    pkt = PacketBuffer(10, length=4)
    view = pkt.alloc_end(2)
    view[:] = b"\x11\x22"
    assert pkt.end == 6
    assert bytes(pkt.data[4:6]) == b"\x11\x22"


def test_alloc_end_requires_spare_room():
    pkt = PacketBuffer(10, length=4)
    with pytest.raises(PacketBufferError):
        pkt.alloc_end(6)
    assert pkt.end == 4