"""MCTP core: bus registration, packetisation, reassembly and routing."""

from __future__ import annotations

import copy
import enum
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

from .log import get_logger
from .packet import (
    HDR_FLAG_EOM,
    HDR_FLAG_SOM,
    HDR_FLAG_TO,
    HDR_SEQ_MASK,
    HDR_SEQ_SHIFT,
    HDR_TAG_MASK,
    HDR_VER_MASK,
    HEADER_SIZE,
    MCTP_BTU,
    MCTP_EID_BROADCAST,
    MCTP_EID_NULL,
    MCTP_VERSION,
    MctpHeader,
    MessageType,
    PacketBuffer,
    packet_size,
)

logger = get_logger("core")

MAX_MESSAGE_SIZE = 65536
MESSAGE_CONTEXTS = 16
_CONTEXT_INITIAL_ALLOC = 4096

CTRL_HDR_SIZE = 3
CTRL_HDR_MSG_TYPE = int(MessageType.MCTP_CTRL)
CTRL_HDR_FLAG_REQUEST = 0x80
CTRL_CMD_FIRST_TRANSPORT = 0xF0
CTRL_CMD_LAST_TRANSPORT = 0xFF

# fn(src_eid, message, tag_owner, tag, binding_private)
RxCallback = Callable[[int, bytes, bool, int, Any], None]
# fn(packet_from_mctp_header, binding_private)
RawRxCallback = Callable[[bytes, Any], None]


class MctpError(Exception):
    """Raised when the stack cannot carry out a request."""


class TxDisabledError(MctpError):
    """Raised by a binding that cannot transmit right now."""


class RoutePolicy(enum.Enum):
    """How received messages are handled."""

    ENDPOINT = "endpoint"
    BRIDGE = "bridge"


def is_ctrl_message(buf: bytes | bytearray | memoryview) -> bool:
    """True if ``buf`` is long enough to be a control message and has its type."""
    return len(buf) >= CTRL_HDR_SIZE and buf[0] == CTRL_HDR_MSG_TYPE


def ctrl_msg_is_request(buf: bytes | bytearray | memoryview) -> bool:
    """True if the control message in ``buf`` is a request."""
    if len(buf) < CTRL_HDR_SIZE:
        raise ValueError(
            f"control message needs {CTRL_HDR_SIZE} bytes, got {len(buf)}"
        )
    return buf[0] == CTRL_HDR_MSG_TYPE and bool(buf[1] & CTRL_HDR_FLAG_REQUEST)


class Binding:
    """A transport binding: moves packets between the core and a medium.

    Subclasses override :meth:`tx` (or pass ``transmit``) and optionally
    :meth:`start`.
    """

    def __init__(
        self,
        name: str = "",
        version: int = MCTP_VERSION,
        pkt_size: Optional[int] = None,
        pkt_pad: int = 0,
        info: int = 0,
        transmit: Optional[Callable[[PacketBuffer], None]] = None,
    ):
        self.name = name
        self.version = version
        self.pkt_size = packet_size(MCTP_BTU) if pkt_size is None else pkt_size
        self.pkt_pad = pkt_pad
        self.info = info
        self.control_rx: Optional[RxCallback] = None
        self.bus: Optional[Bus] = None
        self.mctp: Optional[Mctp] = None
        self._transmit = transmit

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, version={self.version})"

    def _new_private(self) -> Any:
        """Binding-specific per-packet data for a freshly allocated packet."""
        return None

    def start(self) -> None:
        """Bring the medium up once the binding is registered."""
        logger.debug("binding %s started", self.name)

    def tx(self, pkt: PacketBuffer) -> None:
        """Transmit one packet; raise MctpError or OSError on failure."""
        if self._transmit is None:
            raise MctpError(f"binding {self.name!r} has no transmitter")
        self._transmit(pkt)

    def alloc_packet(self, length: int) -> PacketBuffer:
        """Allocate a packet of ``length`` bytes with this binding's headroom."""
        return PacketBuffer(
            self.pkt_size + self.pkt_pad,
            self.pkt_pad,
            length,
            self._new_private(),
        )

    def _attached(self) -> tuple[Mctp, Bus]:
        if self.bus is None or self.mctp is None:
            raise MctpError(f"binding {self.name!r} is not registered on a bus")
        return self.mctp, self.bus

    def set_tx_enabled(self, enable: bool) -> None:
        """Allow or stop transmission; enabling flushes the queued packets."""
        _, bus = self._attached()
        bus.tx_enabled = enable
        if enable:
            try:
                bus._send_queue()
            except (MctpError, OSError) as exc:
                logger.warning("transmit on %s failed: %s", self.name, exc)

    def bus_rx(self, pkt: PacketBuffer) -> None:
        """Hand a received packet to the core."""
        mctp, bus = self._attached()
        mctp._bus_rx(bus, pkt)


@dataclass(eq=False)
class Bus:
    """A binding registered with the core, with its address and queue."""

    binding: Binding
    eid: int = 0
    has_static_eid: bool = False
    tx_enabled: bool = False
    tx_queue: deque = field(default_factory=deque)

    def _flush_all(self) -> None:
        self.tx_queue.clear()

    def _flush_message(self) -> None:
        """Drop queued packets up to and including the next end of message."""
        while self.tx_queue:
            pkt = self.tx_queue.popleft()
            if pkt.header().eom:
                break

    def _send_queue(self) -> bool:
        """Send queued packets; False if transmission is deferred."""
        error: Optional[BaseException] = None
        while self.tx_queue:
            if not self.tx_enabled:
                return False
            pkt = self.tx_queue[0]
            try:
                self.binding.tx(pkt)
            except TxDisabledError:
                return False
            except (MctpError, OSError) as exc:
                logger.error("failed to transmit packet, flushing message: %s", exc)
                self._flush_message()
                error = exc
                continue
            error = None
            self.tx_queue.popleft()
        if error is not None:
            raise error if isinstance(error, MctpError) else MctpError(str(error))
        return True


@dataclass
class _MessageContext:
    src: int = 0
    dest: int = 0
    tag_owner: bool = False
    tag: int = 0
    last_seq: int = 0
    buf: bytearray = field(default_factory=bytearray)
    alloc_size: int = 0

    def matches(self, src: int, dest: int, tag: int) -> bool:
        return self.src == src and self.dest == dest and self.tag == tag

    def claim(self, src: int, dest: int, tag_owner: bool, tag: int) -> None:
        self.src = src
        self.dest = dest
        self.tag_owner = tag_owner
        self.tag = tag
        self.buf.clear()

    def reset(self) -> None:
        self.buf.clear()

    def drop(self) -> None:
        self.src = 0

    def add(self, pkt: PacketBuffer, max_size: int) -> bool:
        if len(pkt) < HEADER_SIZE:
            return False
        payload = pkt.payload()
        needed = len(self.buf) + len(payload)
        while needed > self.alloc_size:
            new_size = (
                _CONTEXT_INITIAL_ALLOC if not self.alloc_size else self.alloc_size * 2
            )
            if new_size > max_size:
                logger.debug("cannot grow reassembly buffer beyond %d", max_size)
                return False
            self.alloc_size = new_size
        self.buf += payload
        return True


def _eid_is_valid(eid: int) -> bool:
    return eid not in (MCTP_EID_NULL, MCTP_EID_BROADCAST) and eid >= 8


class Mctp:
    """An MCTP endpoint or bridge."""

    def __init__(self) -> None:
        self.busses: list[Bus] = []
        self.message_rx: Optional[RxCallback] = None
        self.message_rx_raw: Optional[RawRxCallback] = None
        self.control_rx: Optional[RxCallback] = None
        self.route_policy = RoutePolicy.ENDPOINT
        self.uuid = UUID(int=0)
        self.max_message_size = MAX_MESSAGE_SIZE
        self._contexts = [_MessageContext() for _ in range(MESSAGE_CONTEXTS)]

    def set_max_message_size(self, size: int) -> None:
        """Limit the reassembly buffer of one message."""
        self.max_message_size = size

    def set_rx_all(self, fn: Optional[RxCallback]) -> None:
        """Set the callback for every message addressed to this endpoint."""
        self.message_rx = fn

    def set_rx_raw(self, fn: Optional[RawRxCallback]) -> None:
        """Set the callback for packets not addressed to this endpoint."""
        self.message_rx_raw = fn

    def set_rx_ctrl(self, fn: Optional[RxCallback]) -> None:
        """Set the callback for non-transport control requests."""
        self.control_rx = fn

    def _attach(self, binding: Binding, bus: Bus) -> None:
        binding.bus = bus
        binding.mctp = self

    def _register(self, binding: Binding) -> Bus:
        if self.busses:
            raise MctpError("a bus is already registered")
        bus = Bus(binding)
        self.busses.append(bus)
        self._attach(binding, bus)
        self.route_policy = RoutePolicy.ENDPOINT
        binding.start()
        return bus

    def register_bus(self, binding: Binding, eid: int) -> Bus:
        """Register ``binding`` as this endpoint's bus with a static EID."""
        if not _eid_is_valid(eid):
            raise MctpError(f"EID {eid} cannot be assigned to an endpoint")
        bus = self._register(binding)
        bus.has_static_eid = True
        bus.eid = eid
        return bus

    def register_bus_dynamic_eid(self, binding: Binding) -> Bus:
        """Register ``binding`` with an EID to be assigned later."""
        return self._register(binding)

    def set_dynamic_eid(self, binding: Binding, eid: int) -> None:
        """Assign the EID of a bus registered without a static one."""
        _, bus = binding._attached()
        if bus.has_static_eid:
            raise MctpError("bus has a static EID")
        bus.eid = eid

    def bridge_busses(self, b1: Binding, b2: Binding) -> None:
        """Forward every message received on one binding to the other."""
        if self.busses:
            raise MctpError("busses are already registered")
        self.busses = [Bus(b1), Bus(b2)]
        self._attach(b1, self.busses[0])
        self._attach(b2, self.busses[1])
        self.route_policy = RoutePolicy.BRIDGE
        for binding in (b1, b2):
            try:
                binding.start()
            except (MctpError, OSError) as exc:
                logger.warning("starting binding %s failed: %s", binding.name, exc)

    def bus_for_eid(self, eid: int) -> Bus:
        """The bus used to reach ``eid``; currently always the first one."""
        if not self.busses:
            raise MctpError("no bus registered")
        return self.busses[0]

    def set_uuid(self, uuid: UUID | bytes) -> None:
        """Set the endpoint UUID reported to Get Endpoint UUID."""
        self.uuid = uuid if isinstance(uuid, UUID) else UUID(bytes=bytes(uuid))

    # reassembly

    def _ctx_lookup(self, src: int, dest: int, tag: int) -> Optional[_MessageContext]:
        return next((c for c in self._contexts if c.matches(src, dest, tag)), None)

    def _ctx_create(
        self, src: int, dest: int, tag_owner: bool, tag: int
    ) -> Optional[_MessageContext]:
        ctx = next((c for c in self._contexts if not c.src), None)
        if ctx is not None:
            ctx.claim(src, dest, tag_owner, tag)
        return ctx

    def _bus_rx(self, bus: Bus, pkt: PacketBuffer) -> None:
        binding = bus.binding
        hdr = pkt.header()

        if self.route_policy is RoutePolicy.ENDPOINT and (
            hdr.dest not in (bus.eid, MCTP_EID_NULL, MCTP_EID_BROADCAST)
            or hdr.version != binding.version & HDR_VER_MASK
        ):
            if self.message_rx_raw is not None:
                self.message_rx_raw(pkt.header_bytes(), pkt.binding_private)
            return

        tag_owner = hdr.tag_owner
        tag = hdr.tag
        seq = hdr.seq
        private = pkt.binding_private

        if hdr.som and hdr.eom:
            self._rx(bus, hdr.src, hdr.dest, pkt.payload(), tag_owner, tag, private)
            return

        if hdr.som:
            ctx = self._ctx_lookup(hdr.src, hdr.dest, tag)
            if ctx is not None:
                ctx.reset()
            else:
                ctx = self._ctx_create(hdr.src, hdr.dest, tag_owner, tag)
                if ctx is None:
                    logger.error("context buffers exhausted")
                    return
            if ctx.add(pkt, self.max_message_size):
                ctx.last_seq = seq
            else:
                ctx.drop()
            return

        ctx = self._ctx_lookup(hdr.src, hdr.dest, tag)
        if ctx is None:
            return
        expected = (ctx.last_seq + 1) % 4
        if expected != seq:
            logger.debug("sequence number %d does not match expected %d", seq, expected)
            ctx.drop()
            return

        if hdr.eom:
            if ctx.add(pkt, self.max_message_size):
                self._rx(
                    bus, ctx.src, ctx.dest, bytes(ctx.buf), tag_owner, tag, private
                )
            ctx.drop()
        elif ctx.add(pkt, self.max_message_size):
            ctx.last_seq = seq
        else:
            ctx.drop()

    def _rx(
        self,
        bus: Bus,
        src: int,
        dest: int,
        buf: bytes,
        tag_owner: bool,
        tag: int,
        binding_private: Any,
    ) -> None:
        if self.route_policy is RoutePolicy.ENDPOINT and dest in (
            bus.eid,
            MCTP_EID_NULL,
            MCTP_EID_BROADCAST,
        ):
            if (
                is_ctrl_message(buf)
                and ctrl_msg_is_request(buf)
                and self.ctrl_handle_msg(
                    bus, src, dest, buf, tag_owner, tag, binding_private
                )
            ):
                return
            if self.message_rx is not None:
                self.message_rx(src, buf, tag_owner, tag, binding_private)
            return

        if self.route_policy is RoutePolicy.BRIDGE:
            for dest_bus in self.busses:
                if dest_bus is bus:
                    continue
                try:
                    self._message_tx_on_bus(
                        dest_bus, src, dest, buf, tag_owner, tag, None
                    )
                except MctpError as exc:
                    logger.warning("bridging message failed: %s", exc)

    def ctrl_handle_msg(
        self,
        bus: Bus,
        src: int,
        dest: int,
        buf: bytes,
        tag_owner: bool,
        tag: int,
        binding_private: Any,
    ) -> bool:
        """Dispatch a control request; False if no handler took it."""
        command = buf[2]
        if CTRL_CMD_FIRST_TRANSPORT <= command <= CTRL_CMD_LAST_TRANSPORT:
            if bus.binding.control_rx is not None:
                bus.binding.control_rx(src, buf, tag_owner, tag, binding_private)
                return True
        elif self.control_rx is not None:
            self.control_rx(src, buf, tag_owner, tag, binding_private)
            return True
        return False

    # transmission

    def _message_tx_on_bus(
        self,
        bus: Bus,
        src: int,
        dest: int,
        msg: bytes | bytearray | memoryview,
        tag_owner: bool,
        tag: int,
        binding_private: Any,
    ) -> bool:
        binding = bus.binding
        max_payload = binding.pkt_size - HEADER_SIZE
        if max_payload <= 0:
            raise MctpError(f"binding {binding.name!r} packets cannot carry a payload")
        msg = bytes(msg)
        logger.debug(
            "generating packets for %d byte message from %d to %d", len(msg), src, dest
        )

        offsets = range(0, len(msg), max_payload)
        for index, offset in enumerate(offsets):
            chunk = msg[offset : offset + max_payload]
            pkt = binding.alloc_packet(len(chunk) + HEADER_SIZE)
            if binding_private is not None:
                pkt.binding_private = copy.copy(binding_private)

            flags = tag & HDR_TAG_MASK
            if tag_owner:
                flags |= HDR_FLAG_TO
            if index == 0:
                flags |= HDR_FLAG_SOM
            if offset + len(chunk) >= len(msg):
                flags |= HDR_FLAG_EOM
            flags |= (index & HDR_SEQ_MASK) << HDR_SEQ_SHIFT

            pkt.set_header(
                MctpHeader(
                    ver=binding.version & HDR_VER_MASK,
                    dest=dest,
                    src=src,
                    flags_seq_tag=flags,
                )
            )
            pkt.set_payload(chunk)
            bus.tx_queue.append(pkt)

        logger.debug("enqueued %d packets", len(offsets))
        return bus._send_queue()

    def message_tx(
        self,
        eid: int,
        msg: bytes | bytearray | memoryview,
        tag_owner: bool = False,
        tag: int = 0,
        binding_private: Any = None,
    ) -> bool:
        """Send a message to ``eid``; False if packets wait for tx to be enabled."""
        bus = self.bus_for_eid(eid)
        return self._message_tx_on_bus(
            bus, bus.eid, eid, msg, tag_owner, tag, binding_private
        )

    def message_raw_tx(
        self, msg: bytes | bytearray | memoryview, binding_private: Any = None
    ) -> bool:
        """Send one ready-made packet, MCTP header included."""
        msg = bytes(msg)
        if len(msg) < HEADER_SIZE:
            raise MctpError(f"raw packet of {len(msg)} bytes has no MCTP header")
        bus = self.bus_for_eid(msg[1])
        if len(msg) > bus.binding.pkt_size:
            raise MctpError(
                f"{len(msg)} bytes cannot be transferred in a single bridge packet"
            )
        pkt = bus.binding.alloc_packet(len(msg))
        if binding_private is not None:
            pkt.binding_private = copy.copy(binding_private)
        pkt.data[pkt.mctp_hdr_off : pkt.mctp_hdr_off + len(msg)] = msg
        bus.tx_queue.append(pkt)
        return bus._send_queue()