"""MCTP binding over an I3C device file."""

from __future__ import annotations

import os
import select
from dataclasses import dataclass

from .core import Binding, MctpError
from .log import get_logger, trace_rx, trace_tx
from .packet import HEADER_SIZE, MCTP_BTU, PacketBuffer, PacketBufferError, packet_size

logger = get_logger("asti3c")

# One byte beyond the largest packet so that oversized reads are noticed.
_READ_SIZE = packet_size(MCTP_BTU) + 1


@dataclass
class I3cPacketPrivate:
    """Per-packet data: the device file a packet came from or goes to."""

    fd: int = -1


def poll(fd: int, timeout: int) -> int:
    """Wait up to ``timeout`` ms for ``fd``; return its events, 0 on timeout."""
    poller = select.poll()
    poller.register(fd, select.POLLIN | select.POLLOUT)
    try:
        events = poller.poll(timeout)
    except OSError as exc:
        logger.warning("poll returned error status (errno=%s)", exc.errno)
        raise
    return events[0][1] if events else 0


class AstI3cBinding(Binding):
    """Binding that exchanges whole MCTP packets with an I3C device.

    PEC bytes are handled by the hardware and never appear here.
    """

    def __init__(self) -> None:
        super().__init__(name="asti3c", version=1, pkt_size=packet_size(MCTP_BTU))

    def _new_private(self) -> I3cPacketPrivate:
        return I3cPacketPrivate()

    def tx(self, pkt: PacketBuffer) -> None:
        """Write one packet to the device named in its private data."""
        private = pkt.binding_private
        fd = private.fd if isinstance(private, I3cPacketPrivate) else -1
        if fd < 0:
            raise MctpError("invalid file descriptor passed")
        data = bytes(pkt.data[pkt.start : pkt.end])
        logger.debug("transmitting packet, len: %d", len(data))
        trace_tx(logger, data)
        try:
            written = os.write(fd, data)
        except OSError as exc:
            raise MctpError(f"TX error: {exc}") from exc
        if written != len(data):
            raise MctpError(f"TX error: wrote {written} of {len(data)} bytes")

    def rx(self, fd: int) -> None:
        """Read one packet from ``fd`` and hand it to the core."""
        if fd < 0:
            raise MctpError("invalid file descriptor")
        try:
            data = os.read(fd, _READ_SIZE)
        except OSError as exc:
            raise MctpError(f"reading RX data failed (errno = {exc.errno})") from exc
        trace_rx(logger, data)

        if len(data) > MCTP_BTU + HEADER_SIZE or len(data) < HEADER_SIZE:
            raise MctpError(f"incorrect packet size: {len(data)}")

        pkt = self.alloc_packet(0)
        try:
            pkt.push(data)
        except PacketBufferError as exc:
            raise MctpError("cannot push to pktbuf") from exc
        pkt.binding_private = I3cPacketPrivate(fd)
        self.bus_rx(pkt)