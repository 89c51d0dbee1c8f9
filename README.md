# mctplink

Building blocks for the Management Component Transport Protocol (MCTP). The
package has the MCTP transport header and the packet that carries it. It also
has the framing that three transport bindings put around a packet: serial,
SMBus and PCIe vendor-defined messages (VDM).

## Modules

### `mctplink.packet`

- `MctpHeader` is the frozen four-byte header. Its fields are `ver`, `dest`,
  `src` and `flags_seq_tag`, and each must fit in one byte. It has `pack()`
  and `unpack(data)`. The properties `version`, `seq`, `tag`, `som`, `eom` and
  `tag_owner` decode the bit fields.
- `Packet` holds a `header`, a `payload` and an optional `binding_private`
  object. It has `to_bytes()`, `from_bytes(data, binding_private)` and
  `size()`. The size counts the header.
- `VdpciHeader` is the header of a PCI vendor-defined message. It holds a
  message type byte and a 16-bit vendor id, which is packed big-endian.
- `MessageType` lists the MCTP message type codes.
- `packet_size(unit)` gives the payload size plus the 4-byte header.
- `MctpError` is the base exception of the package.

### `mctplink.serial`

- `escape(data)` escapes the framing flag `0x7E` and the escape byte `0x7D`.
- `encode_frame(packet)` builds a whole frame: the flag, the revision and the
  unescaped length, then the escaped packet, then a trailer of two zero FCS
  bytes and the flag. It raises `MctpError` if the frame does not fit in 256
  bytes.
- `SerialBinding(deliver, write)` sends packets and receives them.
  - `tx(packet)` frames the packet and calls `write` until every byte has
    gone out.
  - `rx(data)` feeds bytes through the `RxState` machine. Each valid packet
    is passed to `deliver`.
  - `read(stream)` reads up to 1024 bytes from `stream` and processes them.
    It raises `EOFError` at end of stream.

### `mctplink.smbus`

- `crc8`, `pec_calculate(crc, data)` and `calculate_pec_byte(data, address)`
  compute the SMBus packet error code.
- `SmbusPacketPrivate` says where a packet goes. It holds a transport
  callable, a mux hold timeout, mux flags and a slave address.
- `SmbusBinding(deliver, transport)` is the binding. A transport is a callable
  that performs one combined I2C transfer of a list of `I2cMessage`. It
  raises `OSError` when the transfer fails.
  - `tx(packet, private)` adds the SMBus header and the PEC byte, then sends
    the frame. On the last packet of a message with mux flags set, it asks
    for a mux hold.
  - `read(stream, out_transport)` reads one frame from the start of
    `stream`. It returns the packet it delivered, or `None` if the frame was
    not meant for this endpoint. A short frame or a bad PEC raises
    `SmbusError`.
  - `init_pull_model(private)` and `exit_pull_model(private)` hold the mux
    and release it.
  - `close_mux(transport, address)` closes a mux.

### `mctplink.nupcie`

- `PcieVdmHeader` is the 12-byte PCIe VDM header. It has `pack()` and
  `unpack(data)`.
- `Routing` lists the PCIe routing types. `NupciePacketPrivate` holds the
  routing, the remote id and the own id.
- `pad_length(size)` and `payload_dwords(size)` give the dword alignment of
  a packet.
- `NupcieBinding(deliver, device)` talks to a device object. The object
  provides `read(size)` and `write(data)`, and may provide `get_errors()`
  and `clear_errors(mask)`.
  - `tx(packet, private)` writes one framed packet.
  - `rx(data)` decodes a frame, delivers its packet and returns it.
  - `read()` reads one frame from the device and processes it.
  - Invalid frames and device failures raise `NupcieError`.

## Installing

```
pip install .
```

Running the tests needs the `test` extra:

```
pip install .[test]
pytest
```

## Example

```python
from mctplink.packet import MctpHeader, Packet
from mctplink.serial import SerialBinding, encode_frame

received = []
sent = []
binding = SerialBinding(deliver=received.append, write=lambda data: sent.append(data) or len(data))

header = MctpHeader(ver=1, dest=9, src=8, flags_seq_tag=0xC0)
packet = Packet(header=header, payload=b"\x01\x02")

binding.tx(packet)
assert sent[0] == encode_frame(packet)

binding.rx(encode_frame(packet))
assert received[0].payload == b"\x01\x02"
```

## What it does not do

Each binding works one packet at a time and hands every packet it receives to
its `deliver` callable. The package has no MCTP core on top of that. It does
not split messages into packets or put them back together. It does not check
sequence numbers or endpoint IDs. It does not route between buses, and it does
not handle MCTP control commands. Opening the serial port, the I2C bus or the
VDM device is left to the caller. The package installs no command or daemon.