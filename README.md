# mctpstack

A Python library for the Management Component Transport Protocol (MCTP,
DMTF DSP0236). It splits outgoing messages into packets and reassembles
incoming ones. It can bridge two busses, encode control requests and build
control responses. It also has transport bindings for ASPEED LPC/KCS, ASPEED
PCIe VDM and I3C device files.

It has no dependencies outside the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `mctpstack.packet` provides the transport header `MctpHeader`, with
  `pack()`, `unpack()` and the `som`, `eom`, `seq`, `tag` and `tag_owner`
  properties. It also provides `PacketBuffer`, a fixed-capacity packet with
  headroom for binding headers; `MessageType`; and `packet_size(btu)`.
  `PacketBuffer` operations that do not fit raise `PacketBufferError`.
- `mctpstack.core` provides the following:
  - `Mctp`, the stack.
  - `Binding`, the base class for transports. A binding overrides `tx()`
    or is given a `transmit` callable, and may override `start()`.
  - `Bus`, `RoutePolicy`, `MctpError` and `TxDisabledError`.
  - `is_ctrl_message()` and `ctrl_msg_is_request()`.
- `mctpstack.control` provides the control protocol:
  - Request encoders that return bytes, such as `encode_get_eid()`,
    `encode_set_eid()` and `encode_routing_info_update()`.
  - `encode_get_routing_table_response()`.
  - Responders `set_endpoint_id()`, `get_endpoint_id()`,
    `get_endpoint_uuid()` and `get_vdm_support()`.
  - The enums `CtrlCommand`, `CompletionCode`, `SetEidOperation` and
    `AllocateEidsOperation`.
- `mctpstack.astlpc` provides `AstlpcBinding`, the BMC side of the LPC
  binding.
- `mctpstack.astpcie` provides `AstPcieBinding` and `AstPcieDevice` for the
  `/dev/aspeed-mctp` driver.
- `mctpstack.asti3c` provides `AstI3cBinding` and `poll(fd, timeout)` for an
  I3C device file.
- `mctpstack.log` holds the logging helpers used for packet tracing. All
  loggers live under the `mctpstack` logger, which has a `NullHandler`
  attached.

## Sending and receiving

```python
from mctpstack.core import Binding, Mctp
from mctpstack.packet import packet_size


class LoopbackBinding(Binding):
    def tx(self, pkt):
        print("sending", pkt.header_bytes().hex())


mctp = Mctp()
mctp.set_rx_all(lambda src, msg, tag_owner, tag, private: print(src, msg))

binding = LoopbackBinding(name="loop", version=1, pkt_size=packet_size(64))
mctp.register_bus(binding, 8)
binding.set_tx_enabled(True)

mctp.message_tx(9, b"\x01\x02\x03", True, 0, None)
```

### Transmit queue

A bus starts with transmission disabled. Until `set_tx_enabled(True)` is
called, `message_tx()` queues the packets and returns `False`. Enabling
transmission sends everything in the queue.

If a binding's `tx()` raises `TxDisabledError`, the packet stays at the head
of the queue. If it raises any other `MctpError`, or an `OSError`, the stack
drops the rest of that message and raises `MctpError`.

### Received packets

Pass received packets to `Binding.bus_rx()`. Messages addressed to the
endpoint's EID, the null EID or the broadcast EID are reassembled and handed
to the `set_rx_all()` callback. Packets for other EIDs go to the
`set_rx_raw()` callback, as do packets with another header version.

Control requests are dispatched first:
- Transport-specific commands (0xF0–0xFF) go to `Binding.control_rx`.
- All other commands go to the `set_rx_ctrl()` callback.

If the relevant handler is not set, the request goes to the message
callback.

### Bridging

`Mctp.bridge_busses(b1, b2)` forwards every message received on one binding
to the other.

## Control commands

```python
from mctpstack.control import SetEidOperation, encode_get_eid, set_endpoint_id

request = encode_get_eid(0x80 | 5)  # b"\x00\x85\x02"
response = set_endpoint_id(mctp, 0, SetEidOperation.SET_EID, 10)
print(response.completion_code, response.eid_set, response.assignment_accepted)
```

## Bindings

### LPC (`AstlpcBinding`)

`AstlpcBinding(ops, lpc_map=None)` takes an `ops` object that provides
`kcs_read(reg)` and `kcs_write(reg, value)`.

- If `lpc_map` is a writable buffer holding the LPC window, the binding
  accesses the window directly.
- Otherwise, `ops` must also provide `lpc_read(offset, length)` and
  `lpc_write(offset, data)`.

When it starts, the binding writes the window header and sets the BMC-ready
status. Each `poll()` call handles one pending KCS command and returns it,
or returns `None` if no command was pending.

### PCIe (`AstPcieBinding`)

`AstPcieBinding` opens its device when the stack starts it, then reads the
BDF and the medium identifier. `rx()` reads one packet from the device.
`poll(timeout)` waits for the device. The handler and EID-mapping ioctls are
available as methods. A different device object can be supplied through
`device_factory`.

### I3C (`AstI3cBinding`)

`AstI3cBinding.rx(fd)` reads one packet from a device file. `tx()` writes
each packet to the file descriptor held in its `I3cPacketPrivate`.

## What it does not do

- It has no command-line tool and no daemon. It is a library to be driven by
  your own code.
- There is no serial or SMBus binding.
- The LPC binding covers only the BMC side. It does not open or map the LPC
  and KCS device files itself; you supply them through `ops` and `lpc_map`.
- An endpoint has a single bus, or two busses when bridging. There is no
  routing table: `bus_for_eid()` always returns the first bus.