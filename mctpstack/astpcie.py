"""MCTP binding over PCIe vendor defined messages through the ASPEED MCTP driver."""

from __future__ import annotations

import enum
import fcntl
import os
import select
import struct
from array import array
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from .core import Binding, MctpError
from .log import get_logger, trace_rx, trace_tx
from .packet import HEADER_SIZE, MCTP_BTU, PacketBuffer, PacketBufferError, packet_size

logger = get_logger("astpcie")

AST_DRV_FILE = "/dev/aspeed-mctp"

# PCIe VDM header (12 bytes) followed by the MCTP header (4 bytes).
VDM_HDR_SIZE = 16
PCIE_HDR_SIZE = 12
ASTPCIE_PACKET_SIZE = VDM_HDR_SIZE + MCTP_BTU
READ_BUFFER_SIZE = 1024 * 4
EID_INFO_MAX = 256

PCIE_MAX_DATA_LEN_DW = 1024
PCIE_MAX_DATA_LEN = PCIE_MAX_DATA_LEN_DW * 4

# Template values of DSP0238, expressed as big-endian wire values.
MSG_4DW_HDR = 0x70
MCTP_PCIE_VDM_ATTR = 0x1000
MSG_CODE_VDM_TYPE_1 = 0x7F
VENDOR_ID_DMTF_VDM = 0x1AB4

_ROUTING_MASK = 0x7
_DATA_LEN_MASK = 0x3FF
_PAD_LEN_SHIFT = 4
_PAD_LEN_MASK = 0x3

_PCIE_HDR = struct.Struct(">BBHHBBHH")

# Driver ioctl interface.
_IOC_NONE = 0
_IOC_WRITE = 1
_IOC_READ = 2
IOCTL_BASE = 0x4D
_IOCTL_PTR_STRUCT_SIZE = 16


def _ioc(direction: int, nr: int, size: int) -> int:
    return (direction << 30) | (size << 16) | (IOCTL_BASE << 8) | nr


IOCTL_FILTER_EID = _ioc(_IOC_WRITE, 0, 2)
IOCTL_GET_BDF = _ioc(_IOC_READ, 1, 2)
IOCTL_GET_MEDIUM_ID = _ioc(_IOC_READ, 2, 1)
IOCTL_GET_MTU = _ioc(_IOC_READ, 3, 1)
IOCTL_REGISTER_DEFAULT_HANDLER = _ioc(_IOC_NONE, 4, 0)
IOCTL_REGISTER_TYPE_HANDLER = _ioc(_IOC_WRITE, 6, 8)
IOCTL_UNREGISTER_TYPE_HANDLER = _ioc(_IOC_WRITE, 7, 8)
IOCTL_GET_EID_INFO = _ioc(_IOC_READ | _IOC_WRITE, 8, _IOCTL_PTR_STRUCT_SIZE)
IOCTL_SET_EID_INFO = _ioc(_IOC_WRITE, 9, _IOCTL_PTR_STRUCT_SIZE)

_BDF = struct.Struct("@H")
_MEDIUM_ID = struct.Struct("@B")
_TYPE_HANDLER = struct.Struct("@BHHH")
_EID_INFO = struct.Struct("@BH")
_GET_EID_INFO = struct.Struct("@QHB")
_SET_EID_INFO = struct.Struct("@QH")


class Routing(enum.IntEnum):
    """PCIe message routing types supported by the binding."""

    ROUTE_TO_RC = 0
    ROUTE_BY_ID = 2
    BROADCAST_FROM_RC = 3


@dataclass
class PcieHeader:
    """The PCIe VDM header that precedes the MCTP header on the wire."""

    fmt_type: int = MSG_4DW_HDR
    mbz: int = 0
    attr_length: int = MCTP_PCIE_VDM_ATTR
    requester: int = 0
    tag: int = 0
    code: int = MSG_CODE_VDM_TYPE_1
    target: int = 0
    vendor: int = VENDOR_ID_DMTF_VDM

    @property
    def routing(self) -> int:
        return self.fmt_type & _ROUTING_MASK

    @property
    def data_len(self) -> int:
        """Payload length in dwords as stored (0 stands for 1024)."""
        return self.attr_length & _DATA_LEN_MASK

    @property
    def pad_len(self) -> int:
        return (self.tag >> _PAD_LEN_SHIFT) & _PAD_LEN_MASK

    @property
    def payload_size(self) -> int:
        """Payload bytes after the MCTP header, padding removed."""
        len_dw = self.data_len or PCIE_MAX_DATA_LEN_DW
        return len_dw * 4 - self.pad_len

    def pack(self) -> bytes:
        """Encode the header to its wire form."""
        try:
            return _PCIE_HDR.pack(
                self.fmt_type,
                self.mbz,
                self.attr_length,
                self.requester,
                self.tag,
                self.code,
                self.target,
                self.vendor,
            )
        except struct.error as exc:
            raise ValueError(f"PCIe header field out of range: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes | bytearray | memoryview) -> PcieHeader:
        """Decode a header from the first twelve bytes of ``data``."""
        if len(data) < PCIE_HDR_SIZE:
            raise ValueError(
                f"PCIe header needs {PCIE_HDR_SIZE} bytes, got {len(data)}"
            )
        return cls(*_PCIE_HDR.unpack_from(bytes(data[:PCIE_HDR_SIZE])))


@dataclass
class PciePacketPrivate:
    """Per-packet data: routing type and the remote PCIe ID."""

    routing: int = Routing.ROUTE_TO_RC
    remote_id: int = 0


class _Device(Protocol):
    fd: int

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def ioctl(self, request: int, arg: Optional[bytes] = None) -> bytes: ...

    def poll(self, timeout: int) -> int: ...

    def close(self) -> None: ...


class AstPcieDevice:
    """The driver's character device."""

    def __init__(self, path: str = AST_DRV_FILE):
        self.path = path
        self.fd = os.open(path, os.O_RDWR)

    def __repr__(self) -> str:
        return f"AstPcieDevice(path={self.path!r}, fd={self.fd})"

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes."""
        return os.read(self.fd, size)

    def write(self, data: bytes | bytearray | memoryview) -> int:
        """Write ``data``; return the number of bytes written."""
        return os.write(self.fd, bytes(data))

    def ioctl(self, request: int, arg: Optional[bytes] = None) -> bytes:
        """Issue ``request``; return the argument buffer as the driver left it."""
        if arg is None:
            fcntl.ioctl(self.fd, request)
            return b""
        buf = bytearray(arg)
        fcntl.ioctl(self.fd, request, buf, True)
        return bytes(buf)

    def poll(self, timeout: int) -> int:
        """Wait up to ``timeout`` ms; return the events, 0 on timeout."""
        poller = select.poll()
        poller.register(self.fd, select.POLLIN | select.POLLOUT)
        events = poller.poll(timeout)
        return events[0][1] if events else 0

    def close(self) -> None:
        """Close the device; closing twice is harmless."""
        if self.fd >= 0:
            os.close(self.fd)
            self.fd = -1


class AstPcieBinding(Binding):
    """Binding that carries MCTP packets in PCIe VDMs via the ASPEED driver.

    The device is opened when the binding is started by the core.
    """

    def __init__(self, device_factory: Callable[[], _Device] = AstPcieDevice):
        super().__init__(
            name="astpcie",
            version=1,
            pkt_size=packet_size(MCTP_BTU),
            pkt_pad=PCIE_HDR_SIZE,
        )
        if self.pkt_size - HEADER_SIZE > PCIE_MAX_DATA_LEN:
            raise MctpError("packet size exceeds the PCIe payload limit")
        self._device_factory = device_factory
        self.device: Optional[_Device] = None
        self.bdf = 0
        self.medium_id = 0

    def _new_private(self) -> PciePacketPrivate:
        return PciePacketPrivate()

    @property
    def _dev(self) -> _Device:
        if self.device is None:
            raise MctpError("device is not open")
        return self.device

    def _ioctl(self, request: int, arg: Optional[bytes] = None) -> bytes:
        try:
            return self._dev.ioctl(request, arg)
        except OSError as exc:
            raise MctpError(f"ioctl 0x{request:x} failed: {exc}") from exc

    def start(self) -> None:
        """Open the driver and read the BDF and medium identifier."""
        try:
            self.device = self._device_factory()
        except OSError as exc:
            logger.error("cannot open %s: %s", AST_DRV_FILE, exc)
            raise MctpError(f"cannot open {AST_DRV_FILE}: {exc}") from exc
        try:
            self.get_bdf()
            reply = self._ioctl(IOCTL_GET_MEDIUM_ID, bytes(_MEDIUM_ID.size))
            (self.medium_id,) = _MEDIUM_ID.unpack_from(reply)
        except (MctpError, struct.error) as exc:
            self.close()
            if isinstance(exc, MctpError):
                raise
            raise MctpError(f"malformed ioctl reply: {exc}") from exc

    def close(self) -> None:
        """Close the driver."""
        if self.device is not None:
            self.device.close()
            self.device = None

    def fileno(self) -> int:
        """The driver's file descriptor, or -1 when closed."""
        return -1 if self.device is None else self.device.fd

    def get_bdf(self) -> int:
        """Read the controller's PCI bus/device/function from the driver."""
        reply = self._ioctl(IOCTL_GET_BDF, bytes(_BDF.size))
        (self.bdf,) = _BDF.unpack_from(reply)
        return self.bdf

    def register_default_handler(self) -> None:
        """Receive every message no other client has registered for."""
        self._ioctl(IOCTL_REGISTER_DEFAULT_HANDLER)

    def register_type_handler(
        self, mctp_type: int, pci_vendor_id: int, vendor_type: int, vendor_type_mask: int
    ) -> None:
        """Receive messages of one MCTP type or PCI vendor defined type."""
        arg = _TYPE_HANDLER.pack(mctp_type, pci_vendor_id, vendor_type, vendor_type_mask)
        self._ioctl(IOCTL_REGISTER_TYPE_HANDLER, arg)

    def unregister_type_handler(
        self, mctp_type: int, pci_vendor_id: int, vendor_type: int, vendor_type_mask: int
    ) -> None:
        """Stop receiving messages registered with register_type_handler."""
        arg = _TYPE_HANDLER.pack(mctp_type, pci_vendor_id, vendor_type, vendor_type_mask)
        self._ioctl(IOCTL_UNREGISTER_TYPE_HANDLER, arg)

    def get_eid_info(self, count: int, start_eid: int) -> list[tuple[int, int]]:
        """Read up to ``count`` (eid, bdf) mappings starting at ``start_eid``."""
        if not 0 <= count <= 0xFFFF:
            raise ValueError(f"count out of range: {count}")
        buf = array("B", bytes(count * _EID_INFO.size))
        address = buf.buffer_info()[0]
        request = _GET_EID_INFO.pack(address, count, start_eid).ljust(
            _IOCTL_PTR_STRUCT_SIZE, b"\0"
        )
        reply = self._ioctl(IOCTL_GET_EID_INFO, request)
        _, returned, _ = _GET_EID_INFO.unpack_from(reply)
        returned = min(returned, count)
        raw = buf.tobytes()[: returned * _EID_INFO.size]
        return list(_EID_INFO.iter_unpack(raw))

    def set_eid_info(self, eid_info: Iterable[tuple[int, int]]) -> None:
        """Replace the driver's (eid, bdf) mappings."""
        entries = list(eid_info)
        if len(entries) > 0xFFFF:
            raise ValueError(f"too many EID mappings: {len(entries)}")
        buf = array("B", b"".join(_EID_INFO.pack(eid, bdf) for eid, bdf in entries))
        address = buf.buffer_info()[0]
        request = _SET_EID_INFO.pack(address, len(entries)).ljust(
            _IOCTL_PTR_STRUCT_SIZE, b"\0"
        )
        self._ioctl(IOCTL_SET_EID_INFO, request)

    def tx(self, pkt: PacketBuffer) -> None:
        """Prefix the PCIe VDM header and write the packet to the driver."""
        private = pkt.binding_private
        if not isinstance(private, PciePacketPrivate):
            private = PciePacketPrivate()
        if private.remote_id == self.bdf:
            logger.error("invalid target ID (matches own BDF)")
            raise MctpError("invalid target ID (matches own BDF)")

        size = len(pkt)
        aligned = (size + 3) & ~3
        payload_dw = aligned // 4 - HEADER_SIZE // 4
        pad = aligned - size
        logger.debug("TX, len: %d, pad: %d", payload_dw, pad)

        hdr = PcieHeader(
            fmt_type=MSG_4DW_HDR | (int(private.routing) & _ROUTING_MASK),
            attr_length=MCTP_PCIE_VDM_ATTR | (payload_dw & _DATA_LEN_MASK),
            requester=self.bdf,
            tag=(pad & _PAD_LEN_MASK) << _PAD_LEN_SHIFT,
            target=private.remote_id,
        )
        offset = pkt.mctp_hdr_off - PCIE_HDR_SIZE
        if offset < 0:
            raise MctpError("packet has no room for the PCIe header")
        pkt.data[offset : offset + PCIE_HDR_SIZE] = hdr.pack()

        length = payload_dw * 4 + VDM_HDR_SIZE
        frame = bytes(pkt.data[offset : offset + length])
        trace_tx(logger, frame)
        try:
            self._dev.write(frame)
        except OSError as exc:
            logger.error("TX error: %s", exc)
            raise MctpError(f"TX error: {exc}") from exc

    def poll(self, timeout: int) -> int:
        """Wait for the driver; return its poll events, 0 on timeout."""
        try:
            return self._dev.poll(timeout)
        except OSError as exc:
            logger.warning("poll returned error status (errno=%s)", exc.errno)
            raise MctpError(f"poll failed: {exc}") from exc

    def rx(self) -> None:
        """Read one packet from the driver and hand it to the core."""
        try:
            data = self._dev.read(READ_BUFFER_SIZE)
        except OSError as exc:
            raise MctpError(f"reading RX data failed (errno = {exc.errno})") from exc
        trace_rx(logger, data)

        if len(data) != ASTPCIE_PACKET_SIZE:
            logger.error("incorrect packet size: %d", len(data))
            raise MctpError(f"incorrect packet size: {len(data)}")

        hdr = PcieHeader.unpack(data)
        try:
            routing = Routing(hdr.routing)
        except ValueError as exc:
            logger.error("unsupported routing value: %d", hdr.routing)
            raise MctpError(f"unsupported routing value: {hdr.routing}") from exc

        wanted = hdr.payload_size + HEADER_SIZE
        chunk = data[PCIE_HDR_SIZE : PCIE_HDR_SIZE + wanted]
        pkt = self.alloc_packet(0)
        if len(chunk) < wanted:
            raise MctpError("cannot push to pktbuf")
        try:
            pkt.push(chunk)
        except PacketBufferError as exc:
            logger.error("cannot push to pktbuf")
            raise MctpError("cannot push to pktbuf") from exc

        pkt.binding_private = PciePacketPrivate(routing, hdr.requester)
        self.bus_rx(pkt)