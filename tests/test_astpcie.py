import select
import struct
from collections import deque

import pytest

from mctpstack import astpcie
from mctpstack.astpcie import (
    AstPcieBinding,
    AstPcieDevice,
    PcieHeader,
    PciePacketPrivate,
    Routing,
)
from mctpstack.core import Mctp, MctpError

PACKET_SIZE = 16 + 64


def _pkt(values):
    return bytes(values).ljust(PACKET_SIZE, b"\0")


RX_ROUTING1 = _pkt([0x73, 0x00, 0x10, 0x01, 0x00, 0x92, 0x10, 0x7F, 0x01, 0x00,
                    0x1A, 0xB4, 0x01, 0xFF, 0x50, 0xD9, 0x00, 0x8A, 0x0B])
RX_ROUTING2 = _pkt([0x72, 0x00, 0x10, 0x01, 0x00, 0x34, 0x10, 0x7F, 0x01, 0x00,
                    0x1A, 0xB4, 0x01, 0xFF, 0x50, 0xD9, 0x00, 0x8A, 0x0B])
RX_ROUTING3 = _pkt([0x70, 0x00, 0x10, 0x01, 0x00, 0x34, 0x10, 0x7F, 0x01, 0x00,
                    0x1A, 0xB4, 0x01, 0xFF, 0x50, 0xD9, 0x7E, 0x8A, 0x0B])
RX_PAYLOAD2 = _pkt([0x72, 0x00, 0x10, 0x06, 0x00, 0xB0, 0x20, 0x7F, 0x07, 0x00,
                    0x1A, 0xB4, 0x01, 0x00, 0x50, 0xD0, 0x00, 0x00, 0x0A, 0x00,
                    0xFF, 0x02, 0x01, 0x60, 0x00, 0x02, 0x08, 0x02, 0x07, 0x00,
                    0x01, 0x20, 0x00, 0x02, 0x08, 0x02, 0x06, 0x01])
RX_TAG = _pkt([0x72, 0x00, 0x10, 0x01, 0x00, 0x92, 0x10, 0x7F, 0x01, 0x00,
               0x1A, 0xB4, 0x01, 0xFF, 0x50, 0xDF, 0x00, 0x8A, 0x0B])
RX_BAD_ROUTING = _pkt([0x71, 0x00, 0x10, 0x01, 0x00, 0x92, 0x10, 0x7F, 0x01, 0x00,
                       0x1A, 0xB4, 0x01, 0xFF, 0x50, 0xD9, 0x00, 0x8A, 0x0B])


class FakeDevice:
    def __init__(self, packets=(), bdf=0x100, medium_id=0x9, fail_bdf=False):
        self.fd = 3
        self.packets = deque(packets)
        self.bdf = bdf
        self.medium_id = medium_id
        self.fail_bdf = fail_bdf
        self.writes = []
        self.ioctls = []
        self.closed = False

    def read(self, size):
        return self.packets.popleft()[:size]

    def write(self, data):
        self.writes.append(bytes(data))
        return 0

    def ioctl(self, request, arg=None):
        self.ioctls.append((request, None if arg is None else bytes(arg)))
        if request == astpcie.IOCTL_GET_BDF:
            if self.fail_bdf:
                raise OSError(5, "I/O error")
            return struct.pack("@H", self.bdf)
        if request == astpcie.IOCTL_GET_MEDIUM_ID:
            return bytes([self.medium_id])
        if request == astpcie.IOCTL_GET_EID_INFO:
            reply = bytearray(arg)
            requested = struct.unpack_from("@H", reply, 8)[0]
            struct.pack_into("@H", reply, 8, min(requested, 2))
            return bytes(reply)
        return b"" if arg is None else bytes(arg)

    def poll(self, timeout):
        return select.POLLIN

    def close(self):
        self.closed = True
        self.fd = -1


def make_stack(packets=()):
    device = FakeDevice(packets)
    mctp = Mctp()
    binding = AstPcieBinding(device_factory=lambda: device)
    assert binding.name == "astpcie"
    assert binding.version == 1
    mctp.register_bus_dynamic_eid(binding)
    received = []
    mctp.set_rx_all(
        lambda src, msg, tag_owner, tag, prv: received.append((src, msg, tag_owner, tag, prv))
    )
    return mctp, binding, device, received


def run_rx(packet):
    _, binding, _, received = make_stack([packet])
    if binding.poll(1000) & select.POLLIN:
        binding.rx()
    return received


def test_start_reads_bdf_and_medium_id():
    _, binding, device, _ = make_stack()
    assert binding.bdf == 0x100
    assert binding.medium_id == 0x9
    assert binding.fileno() == 3
    assert [req for req, _ in device.ioctls] == [
        astpcie.IOCTL_GET_BDF,
        astpcie.IOCTL_GET_MEDIUM_ID,
    ]


@pytest.mark.parametrize(
    "packet, routing",
    [
        (RX_ROUTING1, Routing.BROADCAST_FROM_RC),
        (RX_ROUTING2, Routing.ROUTE_BY_ID),
        (RX_ROUTING3, Routing.ROUTE_TO_RC),
    ],
)
def test_rx_routing(packet, routing):
    received = run_rx(packet)
    assert len(received) == 1
    assert received[0][4].routing == routing


@pytest.mark.parametrize("packet, remote_id", [(RX_ROUTING1, 0x92), (RX_ROUTING2, 0x34)])
def test_rx_remote_id(packet, remote_id):
    received = run_rx(packet)
    assert len(received) == 1
    assert received[0][4].remote_id == remote_id


def test_rx_verify_payload1():
    received = run_rx(RX_ROUTING1)
    assert received[0][1] == bytes([0x00, 0x8A, 0x0B])


def test_rx_verify_payload2():
    received = run_rx(RX_PAYLOAD2)
    assert received[0][1] == bytes([
        0x00, 0x00, 0x0A, 0x00, 0xFF, 0x02, 0x01, 0x60, 0x00, 0x02, 0x08,
        0x02, 0x07, 0x00, 0x01, 0x20, 0x00, 0x02, 0x08, 0x02, 0x06, 0x01,
    ])


def test_rx_tag():
    received = run_rx(RX_TAG)
    assert received[0][3] == 7
    assert received[0][2] is True
    assert received[0][0] == 0x50


def test_rx_unsupported_routing_is_rejected():
    _, binding, _, received = make_stack([RX_BAD_ROUTING])
    with pytest.raises(MctpError):
        binding.rx()
    assert received == []


def test_rx_wrong_size_is_rejected():
    _, binding, _, received = make_stack([RX_ROUTING1[:40]])
    with pytest.raises(MctpError):
        binding.rx()
    assert received == []


def test_rx_oversized_payload_is_rejected():
    packet = bytearray(RX_ROUTING1)
    packet[2] = 0x10
    packet[3] = 0x00  # 0 dwords means 1024
    _, binding, _, received = make_stack([bytes(packet)])
    with pytest.raises(MctpError):
        binding.rx()
    assert received == []


def test_header_unpack_fields():
    hdr = PcieHeader.unpack(RX_ROUTING1)
    assert hdr.routing == 3
    assert hdr.requester == 0x92
    assert hdr.target == 0x100
    assert hdr.data_len == 1
    assert hdr.pad_len == 1
    assert hdr.payload_size == 3
    assert hdr.code == 0x7F
    assert hdr.pack() == RX_ROUTING1[:12]


def test_header_defaults_are_template():
    assert PcieHeader().pack() == bytes(
        [0x70, 0x00, 0x10, 0x00, 0x00, 0x00, 0x00, 0x7F, 0x00, 0x00, 0x1A, 0xB4]
    )


def test_header_zero_length_means_1024_dwords():
    assert PcieHeader(attr_length=0x1000).payload_size == 4096


def test_header_unpack_too_short():
    with pytest.raises(ValueError):
        PcieHeader.unpack(b"\x70\x00")


def test_tx_writes_vdm_frame():
    mctp, binding, device, _ = make_stack()
    binding.set_tx_enabled(True)
    done = mctp.message_tx(
        9, b"\x01\x02\x03", True, 0, PciePacketPrivate(Routing.ROUTE_BY_ID, 0x34)
    )
    assert done is True
    assert device.writes == [bytes([
        0x72, 0x00, 0x10, 0x01, 0x01, 0x00, 0x10, 0x7F, 0x00, 0x34, 0x1A, 0xB4,
        0x01, 0x09, 0x00, 0xC8, 0x01, 0x02, 0x03, 0x00,
    ])]


def test_tx_full_packet_has_no_padding():
    mctp, binding, device, _ = make_stack()
    binding.set_tx_enabled(True)
    mctp.message_tx(9, bytes(range(64)), False, 0, PciePacketPrivate(Routing.ROUTE_TO_RC, 0x34))
    assert len(device.writes) == 1
    frame = device.writes[0]
    assert len(frame) == 80
    assert frame[3] == 16
    assert frame[6] == 0x00
    assert frame[16:] == bytes(range(64))


def test_tx_to_own_bdf_fails():
    mctp, binding, device, _ = make_stack()
    binding.set_tx_enabled(True)
    with pytest.raises(MctpError):
        mctp.message_tx(9, b"\x01", True, 0, PciePacketPrivate(Routing.ROUTE_BY_ID, 0x100))
    assert device.writes == []


def test_start_failure_closes_device():
    device = FakeDevice(fail_bdf=True)
    binding = AstPcieBinding(device_factory=lambda: device)
    with pytest.raises(MctpError):
        Mctp().register_bus_dynamic_eid(binding)
    assert device.closed is True
    assert binding.fileno() == -1


def test_open_failure_raises():
    def factory():
        raise FileNotFoundError(2, "missing")

    binding = AstPcieBinding(device_factory=factory)
    with pytest.raises(MctpError):
        Mctp().register_bus_dynamic_eid(binding)


def test_type_handler_ioctls():
    _, binding, device, _ = make_stack()
    binding.register_default_handler()
    binding.register_type_handler(0x7E, 0x8086, 0x1234, 0xFFFF)
    binding.unregister_type_handler(0x7E, 0x8086, 0x1234, 0xFFFF)
    assert device.ioctls[2] == (astpcie.IOCTL_REGISTER_DEFAULT_HANDLER, None)
    request, arg = device.ioctls[3]
    assert request == astpcie.IOCTL_REGISTER_TYPE_HANDLER
    assert struct.unpack("@BHHH", arg) == (0x7E, 0x8086, 0x1234, 0xFFFF)
    assert device.ioctls[4][0] == astpcie.IOCTL_UNREGISTER_TYPE_HANDLER


def test_get_eid_info_returns_driver_count():
    _, binding, device, _ = make_stack()
    entries = binding.get_eid_info(5, 10)
    assert entries == [(0, 0), (0, 0)]
    request, arg = device.ioctls[-1]
    assert request == astpcie.IOCTL_GET_EID_INFO
    assert len(arg) == 16
    _, count, start = struct.unpack_from("@QHB", arg)
    assert (count, start) == (5, 10)


def test_set_eid_info_passes_count():
    _, binding, device, _ = make_stack()
    binding.set_eid_info([(8, 0x100), (9, 0x200)])
    request, arg = device.ioctls[-1]
    assert request == astpcie.IOCTL_SET_EID_INFO
    assert struct.unpack_from("@QH", arg)[1] == 2


def test_close_releases_device():
    _, binding, device, _ = make_stack()
    binding.close()
    assert device.closed is True
    assert binding.fileno() == -1
    with pytest.raises(MctpError):
        binding.rx()


def test_device_file_read_write_poll(tmp_path):
    path = tmp_path / "dev"
    path.write_bytes(b"abcd")
    device = AstPcieDevice(str(path))
    try:
        assert device.read(4) == b"abcd"
        assert device.write(b"xy") == 2
        assert device.poll(0) & select.POLLIN
    finally:
        device.close()
    assert device.fd == -1
    assert path.read_bytes() == b"abcdxy"
    device.close()
    assert device.fd == -1