"""MCTP control protocol: request encoders and endpoint responses."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

from .core import CTRL_HDR_FLAG_REQUEST, CTRL_HDR_MSG_TYPE, CTRL_HDR_SIZE, Mctp, RoutePolicy
from .packet import MCTP_EID_BROADCAST, MCTP_EID_NULL

INSTANCE_ID_MASK = 0x1F
DATAGRAM_FLAG = 0x40
NO_MORE_ENTRIES = 0xFF

EID_ASSIGNMENT_STATUS_SHIFT = 4
EID_ASSIGNMENT_STATUS_MASK = 0x3
EID_ACCEPTED = 0
EID_REJECTED = 1

ENDPOINT_TYPE_SHIFT = 4
ENDPOINT_TYPE_MASK = 0x3
ENDPOINT_ID_TYPE_MASK = 0x3
ENDPOINT_TYPE_BUS_OWNER_BRIDGE = 1
ENDPOINT_ID_TYPE_STATIC = 1


class CtrlCommand(enum.IntEnum):
    """MCTP control command codes (DSP0236)."""

    RESERVED = 0x00
    SET_ENDPOINT_ID = 0x01
    GET_ENDPOINT_ID = 0x02
    GET_ENDPOINT_UUID = 0x03
    GET_VERSION_SUPPORT = 0x04
    GET_MESSAGE_TYPE_SUPPORT = 0x05
    GET_VENDOR_MESSAGE_SUPPORT = 0x06
    RESOLVE_ENDPOINT_ID = 0x07
    ALLOCATE_ENDPOINT_IDS = 0x08
    ROUTING_INFO_UPDATE = 0x09
    GET_ROUTING_TABLE_ENTRIES = 0x0A
    PREPARE_ENDPOINT_DISCOVERY = 0x0B
    ENDPOINT_DISCOVERY = 0x0C
    DISCOVERY_NOTIFY = 0x0D
    GET_NETWORK_ID = 0x0E
    QUERY_HOP = 0x0F
    RESOLVE_UUID = 0x10


class CompletionCode(enum.IntEnum):
    """Control message completion codes."""

    SUCCESS = 0x00
    ERROR = 0x01
    ERROR_INVALID_DATA = 0x02
    ERROR_INVALID_LENGTH = 0x03
    ERROR_NOT_READY = 0x04
    ERROR_UNSUPPORTED_CMD = 0x05


class SetEidOperation(enum.IntEnum):
    """Operations of the Set Endpoint ID command."""

    SET_EID = 0
    FORCE_EID = 1
    RESET_EID = 2
    SET_DISCOVERED_FLAG = 3


class AllocateEidsOperation(enum.IntEnum):
    """Operations of the Allocate Endpoint IDs command."""

    ALLOCATE_EIDS = 0
    FORCE_ALLOCATION = 1
    GET_ALLOCATION_INFO = 2


def _byte(name: str, value: int) -> int:
    value = int(value)
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must fit in a byte, got {value}")
    return value


@dataclass
class CtrlHeader:
    """The three-byte header that starts every control message."""

    ic_msg_type: int = CTRL_HDR_MSG_TYPE
    rq_dgram_inst: int = 0
    command_code: int = 0

    @property
    def is_request(self) -> bool:
        return bool(self.rq_dgram_inst & CTRL_HDR_FLAG_REQUEST)

    @property
    def is_datagram(self) -> bool:
        return bool(self.rq_dgram_inst & DATAGRAM_FLAG)

    @property
    def instance_id(self) -> int:
        return self.rq_dgram_inst & INSTANCE_ID_MASK

    def pack(self) -> bytes:
        """Encode the header to its wire form."""
        return bytes(
            (
                _byte("message type", self.ic_msg_type),
                _byte("request/instance byte", self.rq_dgram_inst),
                _byte("command code", self.command_code),
            )
        )

    @classmethod
    def unpack(cls, data: bytes | bytearray | memoryview) -> CtrlHeader:
        """Decode a header from the first three bytes of ``data``."""
        if len(data) < CTRL_HDR_SIZE:
            raise ValueError(
                f"control header needs {CTRL_HDR_SIZE} bytes, got {len(data)}"
            )
        return cls(data[0], data[1], data[2])


@dataclass
class RoutingTableEntry:
    """One routing table entry with its physical address."""

    eid_range_size: int
    starting_eid: int
    entry_type: int
    phys_transport_binding_id: int = 0
    phys_media_type_id: int = 0
    phys_address: bytes = b""

    @property
    def phys_address_size(self) -> int:
        return len(self.phys_address)

    def pack(self) -> bytes:
        """Encode as in a Get Routing Table Entries response."""
        return (
            bytes(
                (
                    _byte("EID range size", self.eid_range_size),
                    _byte("starting EID", self.starting_eid),
                    _byte("entry type", self.entry_type),
                    _byte("transport binding id", self.phys_transport_binding_id),
                    _byte("media type id", self.phys_media_type_id),
                    _byte("physical address size", self.phys_address_size),
                )
            )
            + bytes(self.phys_address)
        )


@dataclass
class SetEidResponse:
    """Response to Set Endpoint ID."""

    completion_code: CompletionCode
    eid_set: int = 0
    status: int = 0
    eid_pool_size: int = 0

    @property
    def assignment_accepted(self) -> bool:
        status = (self.status >> EID_ASSIGNMENT_STATUS_SHIFT) & EID_ASSIGNMENT_STATUS_MASK
        return status == EID_ACCEPTED


@dataclass
class GetEidResponse:
    """Response to Get Endpoint ID."""

    completion_code: CompletionCode
    eid: int = 0
    eid_type: int = 0
    medium_data: int = 0

    @property
    def is_bus_owner(self) -> bool:
        endpoint_type = (self.eid_type >> ENDPOINT_TYPE_SHIFT) & ENDPOINT_TYPE_MASK
        return endpoint_type == ENDPOINT_TYPE_BUS_OWNER_BRIDGE

    @property
    def has_static_eid(self) -> bool:
        return (self.eid_type & ENDPOINT_ID_TYPE_MASK) == ENDPOINT_ID_TYPE_STATIC


@dataclass
class GetUuidResponse:
    """Response to Get Endpoint UUID."""

    completion_code: CompletionCode
    uuid: UUID = field(default_factory=lambda: UUID(int=0))


def _request(instance: int, command: CtrlCommand, *fields: int) -> bytes:
    header = CtrlHeader(CTRL_HDR_MSG_TYPE, _byte("instance", instance), command)
    return header.pack() + bytes(_byte("field", value) for value in fields)


def encode_set_eid(instance: int, op: int, eid: int) -> bytes:
    """Encode a Set Endpoint ID request."""
    return _request(instance, CtrlCommand.SET_ENDPOINT_ID, op, eid)


def encode_get_eid(instance: int) -> bytes:
    """Encode a Get Endpoint ID request."""
    return _request(instance, CtrlCommand.GET_ENDPOINT_ID)


def encode_get_uuid(instance: int) -> bytes:
    """Encode a Get Endpoint UUID request."""
    return _request(instance, CtrlCommand.GET_ENDPOINT_UUID)


def encode_get_ver_support(instance: int, msg_type_number: int) -> bytes:
    """Encode a Get MCTP Version Support request."""
    return _request(instance, CtrlCommand.GET_VERSION_SUPPORT, msg_type_number)


def encode_get_msg_type_support(instance: int) -> bytes:
    """Encode a Get Message Type Support request."""
    return _request(instance, CtrlCommand.GET_MESSAGE_TYPE_SUPPORT)


def encode_get_vdm_support(instance: int, selector: int) -> bytes:
    """Encode a Get Vendor Defined Message Support request."""
    return _request(instance, CtrlCommand.GET_VENDOR_MESSAGE_SUPPORT, selector)


def encode_discovery_notify(instance: int) -> bytes:
    """Encode a Discovery Notify request."""
    return _request(instance, CtrlCommand.DISCOVERY_NOTIFY)


def encode_get_routing_table(instance: int, entry_handle: int) -> bytes:
    """Encode a Get Routing Table Entries request."""
    return _request(instance, CtrlCommand.GET_ROUTING_TABLE_ENTRIES, entry_handle)


def encode_allocate_eids(instance: int, op: int, pool_size: int, eid: int) -> bytes:
    """Encode an Allocate Endpoint IDs request."""
    return _request(instance, CtrlCommand.ALLOCATE_ENDPOINT_IDS, op, pool_size, eid)


def encode_routing_info_update(
    instance: int, entries: Iterable[RoutingTableEntry]
) -> bytes:
    """Encode a Routing Information Update request carrying ``entries``."""
    entries = list(entries)
    if not entries:
        raise ValueError("a routing information update needs at least one entry")
    if len(entries) > 0xFF:
        raise ValueError(f"too many routing entries: {len(entries)}")
    body = bytearray(_request(instance, CtrlCommand.ROUTING_INFO_UPDATE, len(entries)))
    for entry in entries:
        body += bytes(
            (
                _byte("entry type", entry.entry_type),
                _byte("EID range size", entry.eid_range_size),
                _byte("starting EID", entry.starting_eid),
            )
        )
        body += bytes(entry.phys_address)
    return bytes(body)


def encode_query_hop(instance: int, eid: int, msg_type: int) -> bytes:
    """Encode a Query Hop request."""
    return _request(instance, CtrlCommand.QUERY_HOP, eid, msg_type)


def encode_get_routing_table_response(entries: Iterable[RoutingTableEntry]) -> bytes:
    """Encode the body of a Get Routing Table Entries response.

    All entries fit in one response, so the next entry handle marks the end.
    """
    entries = list(entries)
    if len(entries) > 0xFF:
        raise ValueError(f"too many routing entries: {len(entries)}")
    head = bytes((CompletionCode.SUCCESS, NO_MORE_ENTRIES, len(entries)))
    return head + b"".join(entry.pack() for entry in entries)


def set_endpoint_id(mctp: Mctp, dest_eid: int, op: int, eid: int) -> SetEidResponse:
    """Apply a Set Endpoint ID request and build its response."""
    bus = mctp.bus_for_eid(dest_eid)
    eid = _byte("EID", eid)
    if eid in (MCTP_EID_BROADCAST, MCTP_EID_NULL):
        return SetEidResponse(CompletionCode.ERROR_INVALID_DATA, eid_set=bus.eid)

    if op == SetEidOperation.SET_EID:
        if len(mctp.busses) == 1 or bus.eid == 0:
            bus.eid = eid
            status = EID_ACCEPTED << EID_ASSIGNMENT_STATUS_SHIFT
            return SetEidResponse(CompletionCode.SUCCESS, eid_set=eid, status=status)
        status = EID_REJECTED << EID_ASSIGNMENT_STATUS_SHIFT
        return SetEidResponse(CompletionCode.SUCCESS, eid_set=bus.eid, status=status)

    if op == SetEidOperation.FORCE_EID:
        bus.eid = eid
        return SetEidResponse(CompletionCode.SUCCESS, eid_set=eid)

    return SetEidResponse(CompletionCode.ERROR_INVALID_DATA)


def get_endpoint_id(mctp: Mctp, dest_eid: int, bus_owner: bool) -> GetEidResponse:
    """Build the response to Get Endpoint ID."""
    bus = mctp.bus_for_eid(dest_eid)
    eid_type = 0
    if mctp.route_policy is RoutePolicy.BRIDGE or bus_owner:
        eid_type |= ENDPOINT_TYPE_BUS_OWNER_BRIDGE << ENDPOINT_TYPE_SHIFT
    if bus.has_static_eid:
        eid_type |= ENDPOINT_ID_TYPE_STATIC
    return GetEidResponse(
        CompletionCode.SUCCESS,
        eid=bus.eid,
        eid_type=eid_type,
        medium_data=bus.binding.info,
    )


def get_endpoint_uuid(mctp: Mctp) -> GetUuidResponse:
    """Build the response to Get Endpoint UUID."""
    return GetUuidResponse(CompletionCode.SUCCESS, mctp.uuid)


def get_vdm_support(mctp: Mctp, src_eid: int) -> CompletionCode:
    """Completion code for Get Vendor Defined Message Support; no sets follow."""
    return CompletionCode.SUCCESS