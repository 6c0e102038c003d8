"""MCTP transport header and packet buffer."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

MCTP_VERSION = 1
MCTP_BTU = 64
HEADER_SIZE = 4

MCTP_EID_NULL = 0x00
MCTP_EID_BROADCAST = 0xFF

HDR_FLAG_SOM = 0x80
HDR_FLAG_EOM = 0x40
HDR_FLAG_TO = 0x08
HDR_SEQ_SHIFT = 4
HDR_SEQ_MASK = 0x3
HDR_TAG_SHIFT = 0
HDR_TAG_MASK = 0x7
HDR_VER_MASK = 0xF

_HEADER = struct.Struct("BBBB")


class MessageType(enum.IntEnum):
    """MCTP message type codes (DSP0239)."""

    MCTP_CTRL = 0x00
    PLDM = 0x01
    NCSI = 0x02
    ETHERNET = 0x03
    NVME = 0x04
    SPDM = 0x05
    SECUREDMSG = 0x06
    VDPCI = 0x7E
    VDIANA = 0x7F


class PacketBufferError(ValueError):
    """Raised when a packet buffer operation does not fit its bounds."""


def packet_size(btu: int) -> int:
    """Size of a packet carrying ``btu`` payload bytes plus the MCTP header."""
    return btu + HEADER_SIZE


@dataclass
class MctpHeader:
    """The four-byte MCTP transport header."""

    ver: int = 0
    dest: int = 0
    src: int = 0
    flags_seq_tag: int = 0

    @property
    def version(self) -> int:
        return self.ver & HDR_VER_MASK

    @property
    def som(self) -> bool:
        return bool(self.flags_seq_tag & HDR_FLAG_SOM)

    @property
    def eom(self) -> bool:
        return bool(self.flags_seq_tag & HDR_FLAG_EOM)

    @property
    def tag_owner(self) -> bool:
        return bool(self.flags_seq_tag & HDR_FLAG_TO)

    @property
    def seq(self) -> int:
        return (self.flags_seq_tag >> HDR_SEQ_SHIFT) & HDR_SEQ_MASK

    @property
    def tag(self) -> int:
        return (self.flags_seq_tag >> HDR_TAG_SHIFT) & HDR_TAG_MASK

    def pack(self) -> bytes:
        """Encode the header to its wire form."""
        fields = (self.ver, self.dest, self.src, self.flags_seq_tag)
        if any(not 0 <= value <= 0xFF for value in fields):
            raise ValueError(f"header fields must be bytes: {fields}")
        return _HEADER.pack(*fields)

    @classmethod
    def unpack(cls, data: bytes | bytearray | memoryview) -> MctpHeader:
        """Decode a header from the first four bytes of ``data``."""
        if len(data) < HEADER_SIZE:
            raise PacketBufferError(
                f"need {HEADER_SIZE} bytes for an MCTP header, got {len(data)}"
            )
        return cls(*_HEADER.unpack_from(bytes(data[:HEADER_SIZE])))


class PacketBuffer:
    """A fixed-capacity packet with headroom for binding-specific headers.

    ``data`` spans the whole capacity; the packet occupies ``data[start:end]``
    and the MCTP header sits at ``mctp_hdr_off``.
    """

    def __init__(self, size: int, pad: int = 0, length: int = 0, binding_private=None):
        if size < 0 or pad < 0 or length < 0:
            raise PacketBufferError("sizes must not be negative")
        if pad + length > size:
            raise PacketBufferError(
                f"packet of {length} bytes after {pad} bytes of padding "
                f"exceeds capacity {size}"
            )
        self.size = size
        self.data = bytearray(size)
        self.start = pad
        self.end = pad + length
        self.mctp_hdr_off = pad
        self.binding_private = binding_private

    def __len__(self) -> int:
        return self.end - self.start

    def __repr__(self) -> str:
        return (
            f"PacketBuffer(size={self.size}, start={self.start}, end={self.end}, "
            f"mctp_hdr_off={self.mctp_hdr_off})"
        )

    @property
    def _payload_off(self) -> int:
        return self.mctp_hdr_off + HEADER_SIZE

    def header(self) -> MctpHeader:
        """Decode the MCTP header stored in the buffer."""
        return MctpHeader.unpack(self.data[self.mctp_hdr_off : self._payload_off])

    def set_header(self, header: MctpHeader) -> None:
        """Store ``header`` at the MCTP header position."""
        if self._payload_off > self.size:
            raise PacketBufferError("no room for an MCTP header")
        self.data[self.mctp_hdr_off : self._payload_off] = header.pack()

    def header_bytes(self) -> bytes:
        """The packet from the MCTP header to the end, header included."""
        return bytes(self.data[self.mctp_hdr_off : self.end])

    def payload(self) -> bytes:
        """The packet bytes that follow the MCTP header."""
        return bytes(self.data[self._payload_off : self.end])

    def set_payload(self, data: bytes | bytearray | memoryview) -> None:
        """Copy ``data`` into the buffer right after the MCTP header."""
        stop = self._payload_off + len(data)
        if stop > self.end:
            raise PacketBufferError(
                f"payload of {len(data)} bytes does not fit the packet length"
            )
        self.data[self._payload_off : stop] = data

    def push(self, data: bytes | bytearray | memoryview) -> None:
        """Append ``data`` to the end of the packet."""
        if self.end + len(data) > self.size:
            raise PacketBufferError(
                f"cannot push {len(data)} bytes: {self.size - self.end} free"
            )
        self.data[self.end : self.end + len(data)] = data
        self.end += len(data)

    def alloc_start(self, size: int) -> memoryview:
        """Grow the packet into its headroom and return the new leading bytes."""
        if size < 0 or size > self.start:
            raise PacketBufferError(f"cannot take {size} bytes of {self.start} headroom")
        self.start -= size
        return memoryview(self.data)[self.start : self.start + size]

    def alloc_end(self, size: int) -> memoryview:
        """Grow the packet at its tail and return the new trailing bytes."""
        if size < 0 or size >= self.size - self.end:
            raise PacketBufferError(
                f"cannot take {size} bytes of {self.size - self.end} tailroom"
            )
        old_end = self.end
        self.end += size
        return memoryview(self.data)[old_end : self.end]