"""MCTP binding over an LPC shared-memory window signalled through KCS."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from .core import Binding, MctpError
from .log import get_logger
from .packet import HEADER_SIZE, MCTP_BTU, PacketBuffer, packet_size

logger = get_logger("astlpc")

MCTP_MAGIC = 0x4D435450
BMC_VER_MIN = 1
BMC_VER_CUR = 1

# Layout of the transmit/receive areas in the LPC window, seen from the host:
# the BMC writes into the host's RX area and reads from its TX area.
RX_OFFSET = 0x100
RX_SIZE = 0x100
TX_OFFSET = 0x200
TX_SIZE = 0x100

LPC_WIN_SIZE = 1024 * 1024

_LEN_FIELD = struct.Struct(">I")
_HEADER = struct.Struct(">IHHHHHHIIII")
_NEGOTIATED_VER_OFFSET = 12

CMD_INIT_CHANNEL = 0x00
CMD_RX_START = 0x01
CMD_TX_COMPLETE = 0x02
CMD_DUMMY = 0xFF

LpcMap = Union[bytearray, memoryview]


class KcsRegister(enum.IntEnum):
    """KCS interface registers."""

    DATA = 0
    STATUS = 1


class KcsStatus(enum.IntFlag):
    """Bits of the KCS status register."""

    OBF = 0x01
    IBF = 0x02
    CHANNEL_ACTIVE = 0x40
    BMC_READY = 0x80


class _LpcOps(Protocol):
    def kcs_read(self, reg: KcsRegister) -> int: ...

    def kcs_write(self, reg: KcsRegister, value: int) -> None: ...

    def lpc_read(self, offset: int, length: int) -> bytes: ...

    def lpc_write(self, offset: int, data: bytes) -> None: ...


@dataclass
class LpcMapHeader:
    """The control header at the start of the LPC window (big endian)."""

    magic: int = 0
    bmc_ver_min: int = 0
    bmc_ver_cur: int = 0
    host_ver_min: int = 0
    host_ver_cur: int = 0
    negotiated_ver: int = 0
    pad0: int = 0
    rx_offset: int = 0
    rx_size: int = 0
    tx_offset: int = 0
    tx_size: int = 0

    def pack(self) -> bytes:
        """Encode the header as it is laid out in the window."""
        return _HEADER.pack(
            self.magic,
            self.bmc_ver_min,
            self.bmc_ver_cur,
            self.host_ver_min,
            self.host_ver_cur,
            self.negotiated_ver,
            self.pad0,
            self.rx_offset,
            self.rx_size,
            self.tx_offset,
            self.tx_size,
        )


class AstlpcBinding(Binding):
    """BMC side of the LPC binding.

    ``ops`` provides ``kcs_read(reg)``, ``kcs_write(reg, value)`` and, unless
    ``lpc_map`` is given for direct access to the window, ``lpc_read(offset,
    length)`` and ``lpc_write(offset, data)``. Failing operations raise
    ``OSError`` or ``MctpError``.
    """

    def __init__(self, ops: _LpcOps, lpc_map: Optional[LpcMap] = None):
        super().__init__(
            name="astlpc", version=1, pkt_size=packet_size(MCTP_BTU), pkt_pad=0
        )
        self.ops = ops
        self.lpc_map = lpc_map
        # In indirect mode a private copy of the header is synced through ops.
        self.priv_hdr: Optional[LpcMapHeader] = None if lpc_map is not None else LpcMapHeader()

    @property
    def direct(self) -> bool:
        return self.lpc_map is not None

    # window access

    def _lpc_read(self, offset: int, length: int) -> bytes:
        if self.lpc_map is not None:
            return bytes(self.lpc_map[offset : offset + length])
        return bytes(self.ops.lpc_read(offset, length))

    def _lpc_write(self, offset: int, data: bytes) -> None:
        if self.lpc_map is not None:
            self.lpc_map[offset : offset + len(data)] = data
        else:
            self.ops.lpc_write(offset, data)

    # KCS access

    def _kcs_read(self, reg: KcsRegister, what: str) -> int:
        try:
            return int(self.ops.kcs_read(reg)) & 0xFF
        except (OSError, MctpError) as exc:
            logger.warning("%s failed", what)
            raise MctpError(f"{what} failed: {exc}") from exc

    def _kcs_write(self, reg: KcsRegister, value: int, what: str) -> None:
        try:
            self.ops.kcs_write(reg, value & 0xFF)
        except (OSError, MctpError) as exc:
            logger.warning("%s failed", what)
            raise MctpError(f"{what} failed: {exc}") from exc

    def _kcs_set_status(self, status: int) -> None:
        # Some hardware only interrupts the host on a data write, so follow
        # the status update with a dummy byte the host ignores.
        self._kcs_write(KcsRegister.STATUS, status | KcsStatus.OBF, "KCS status write")
        self._kcs_write(KcsRegister.DATA, CMD_DUMMY, "KCS dummy data write")

    def _kcs_send(self, data: int) -> None:
        while self._kcs_read(KcsRegister.STATUS, "KCS status read") & KcsStatus.OBF:
            pass
        self._kcs_write(KcsRegister.DATA, data, "KCS data write")

    def _notify(self, data: int) -> None:
        try:
            self._kcs_send(data)
        except MctpError as exc:
            logger.warning("KCS notification 0x%x not sent: %s", data, exc)

    # binding interface

    def start(self) -> None:
        """Publish the window header and flag the BMC as ready."""
        if self.lpc_map is not None:
            struct.pack_into(">IHH", self.lpc_map, 0, MCTP_MAGIC, BMC_VER_MIN, BMC_VER_CUR)
            struct.pack_into(
                ">IIII", self.lpc_map, 16, RX_OFFSET, RX_SIZE, TX_OFFSET, TX_SIZE
            )
        else:
            hdr = self.priv_hdr
            hdr.magic = MCTP_MAGIC
            hdr.bmc_ver_min = BMC_VER_MIN
            hdr.bmc_ver_cur = BMC_VER_CUR
            hdr.rx_offset = RX_OFFSET
            hdr.rx_size = RX_SIZE
            hdr.tx_offset = TX_OFFSET
            hdr.tx_size = TX_SIZE
            self.ops.lpc_write(0, hdr.pack())

        self._kcs_write(
            KcsRegister.STATUS, KcsStatus.BMC_READY | KcsStatus.OBF, "KCS write"
        )

    def tx(self, pkt: PacketBuffer) -> None:
        """Place a packet in the host's RX area and signal the host."""
        data = pkt.header_bytes()
        hdr = pkt.header()
        logger.debug(
            "transmitting %d-byte packet (%d, %d, 0x%x)",
            len(data),
            hdr.src,
            hdr.dest,
            hdr.flags_seq_tag,
        )
        if len(data) > RX_SIZE - 4:
            logger.warning("invalid TX len 0x%x", len(data))
            raise MctpError(f"invalid TX len 0x{len(data):x}")

        self._lpc_write(RX_OFFSET, _LEN_FIELD.pack(len(data)))
        self._lpc_write(RX_OFFSET + 4, data)

        self.set_tx_enabled(False)
        self._notify(CMD_RX_START)

    def _init_channel(self) -> None:
        self._lpc_write(_NEGOTIATED_VER_OFFSET, struct.pack(">H", 1))
        if self.priv_hdr is not None:
            self.priv_hdr.negotiated_ver = 1
        try:
            self._kcs_set_status(
                KcsStatus.BMC_READY | KcsStatus.CHANNEL_ACTIVE | KcsStatus.OBF
            )
        except MctpError as exc:
            logger.warning("channel status not updated: %s", exc)
        self.set_tx_enabled(True)

    def _rx_start(self) -> None:
        (length,) = _LEN_FIELD.unpack(self._lpc_read(TX_OFFSET, _LEN_FIELD.size))

        if length < HEADER_SIZE or length > TX_SIZE - 4 or length > self.pkt_size:
            logger.warning("invalid RX len 0x%x", length)
            return

        pkt = self.alloc_packet(length)
        offset = pkt.mctp_hdr_off
        pkt.data[offset : offset + length] = self._lpc_read(TX_OFFSET + 4, length)
        self.bus_rx(pkt)

        self._notify(CMD_TX_COMPLETE)

    def _tx_complete(self) -> None:
        self.set_tx_enabled(True)

    def poll(self) -> Optional[int]:
        """Handle one pending KCS command; return it, or None if none was pending."""
        status = self._kcs_read(KcsRegister.STATUS, "KCS read")
        logger.debug("status: 0x%x", status)
        if not status & KcsStatus.IBF:
            return None

        data = self._kcs_read(KcsRegister.DATA, "KCS data read")
        logger.debug("data: 0x%x", data)

        if data == CMD_INIT_CHANNEL:
            self._init_channel()
        elif data == CMD_RX_START:
            self._rx_start()
        elif data == CMD_TX_COMPLETE:
            self._tx_complete()
        elif data == CMD_DUMMY:
            pass
        else:
            logger.warning("unknown message 0x%x", data)
        return data