"""MCTP over SMBus/I2C: framing, PEC checking and mux hold handling."""

from __future__ import annotations

import errno
import logging
import struct
from dataclasses import dataclass, field, replace
from typing import BinaryIO, Callable, List, Optional

from .packet import BTU, HEADER_SIZE, MctpError, Packet, packet_size

log = logging.getLogger(__name__)

SMBUS_HEADER_SIZE = 4
SMBUS_PEC_BYTE_SIZE = 1
SMBUS_TX_BUFF_SIZE = HEADER_SIZE + SMBUS_HEADER_SIZE + BTU + SMBUS_PEC_BYTE_SIZE
RX_BUFFER_SIZE = 1024

IS_MUX_PORT = 0x80
PULL_MODEL_HOLD = 0x40
CLOSE_AFTER_RESPONSE = 0x20
CLOSE_IMMEDIATE = 0x10

MCTP_COMMAND_CODE = 0x0F
DEFAULT_SLAVE_ADDRESS = 0x21

I2C_M_HOLD = 0x0100
PULL_MODEL_HOLD_TIMEOUT = 0xFFFF

_TX_HEADER_SIZE = 3
_RX_HEADER_SIZE = 4
_HOLD = struct.Struct("<H")


class SmbusError(MctpError):
    """Raised when an SMBus transfer or frame is invalid or fails."""


@dataclass(frozen=True)
class I2cMessage:
    """One segment of a combined I2C transfer."""

    addr: int
    flags: int
    data: bytes


Transport = Callable[[List[I2cMessage]], None]


@dataclass
class SmbusPacketPrivate:
    """Per-packet SMBus routing data."""

    transport: Optional[Transport] = None
    mux_hold_timeout: int = 0
    mux_flags: int = 0
    slave_addr: int = 0


def crc8(value: int) -> int:
    """CRC-8 (polynomial x^8+x^2+x+1) step over a 16-bit value."""
    poly_check = 0x1070 << 3
    d = value & 0xFFFF
    for _ in range(8):
        if d & 0x8000:
            d ^= poly_check
        d = (d << 1) & 0xFFFF
    return (d >> 8) & 0xFF


def pec_calculate(crc: int, data: bytes) -> int:
    """Continue the SMBus PEC ``crc`` over ``data``."""
    for byte in bytes(data):
        crc = crc8((crc ^ byte) << 8)
    return crc


def calculate_pec_byte(data: bytes, address: int) -> int:
    """PEC of a frame sent to ``address`` (8-bit form) with body ``data``."""
    return pec_calculate(pec_calculate(0, bytes((address & 0xFF,))), data)


def _hold_message(timeout: int) -> I2cMessage:
    return I2cMessage(0, I2C_M_HOLD, _HOLD.pack(timeout & 0xFFFF))


def _transfer(transport: Optional[Transport], messages: List[I2cMessage]) -> None:
    if transport is None:
        raise SmbusError("no I2C transport available")
    try:
        transport(messages)
    except OSError as exc:
        if exc.errno == errno.EPERM:
            log.debug("I2C transfer not permitted")
        raise SmbusError(f"I2C transfer failed: {exc}") from exc


class SmbusBinding:
    """SMBus transport binding.

    ``deliver`` receives every valid received packet. ``transport`` performs a
    combined I2C transfer of a list of :class:`I2cMessage` and raises
    ``OSError`` on failure; it is used whenever a packet carries none of its own.
    """

    name = "smbus"
    version = 1

    def __init__(
        self,
        deliver: Callable[[Packet], None],
        transport: Optional[Transport] = None,
    ) -> None:
        self.deliver = deliver
        self.transport = transport
        self.pkt_size = packet_size(BTU)
        self.pkt_pad = SMBUS_HEADER_SIZE
        self.src_slave_addr = DEFAULT_SLAVE_ADDRESS
        self.pull_model_active = False
        self._active_mux = SmbusPacketPrivate()
        self._reserve_mux = SmbusPacketPrivate()

    # -- transmit -----------------------------------------------------------

    def tx(self, packet: Packet, private: Optional[SmbusPacketPrivate] = None) -> None:
        """Frame ``packet`` and send it to ``private.slave_addr``."""
        if private is None:
            private = packet.binding_private
        if private is None:
            log.error("Binding private information not available")
            raise SmbusError("binding private information not available")

        raw = packet.to_bytes()
        message_len = _TX_HEADER_SIZE + len(raw) + SMBUS_PEC_BYTE_SIZE
        if message_len > SMBUS_TX_BUFF_SIZE:
            log.error("tx message length exceeds max smbus message length")
            raise SmbusError("tx message length exceeds max smbus message length")

        body = (
            bytes((MCTP_COMMAND_CODE, (len(raw) + 1) & 0xFF, self.src_slave_addr))
            + raw
        )
        frame = body + bytes((calculate_pec_byte(body, private.slave_addr),))

        # Mux hold is requested only on the last packet of a message.
        mux_flags = private.mux_flags if packet.header.eom else 0
        transport = private.transport or self.transport

        if self.pull_model_active:
            self._model_mux(0)

        data_msg = I2cMessage(private.slave_addr >> 1, 0, frame)
        log.debug(">TX> %s", frame.hex(" "))
        if mux_flags:
            _transfer(transport, [data_msg, _hold_message(private.mux_hold_timeout)])
            self._active_mux = SmbusPacketPrivate(
                transport=transport,
                mux_flags=mux_flags,
                slave_addr=private.slave_addr,
            )
        else:
            _transfer(transport, [data_msg])

    # -- receive ------------------------------------------------------------

    def read(
        self, stream: BinaryIO, out_transport: Optional[Transport] = None
    ) -> Optional[Packet]:
        """Read one frame from the start of ``stream``.

        Returns the delivered packet, or ``None`` if the frame was not meant
        for this endpoint. Raises :class:`SmbusError` on read or PEC errors.
        """
        try:
            stream.seek(0)
        except (OSError, ValueError) as exc:
            log.error("Failed to seek")
            raise SmbusError("failed to seek") from exc
        try:
            data = stream.read(RX_BUFFER_SIZE)
        except (OSError, ValueError) as exc:
            log.error("Failed to read")
            raise SmbusError("failed to read") from exc
        data = bytes(data or b"")
        if len(data) < _RX_HEADER_SIZE:
            log.error("Failed to read")
            raise SmbusError(f"short SMBus frame of {len(data)} bytes")

        log.debug("<RX< %s", data.hex(" "))

        dest, command, byte_count, source = data[:_RX_HEADER_SIZE]
        if byte_count != len(data) - _RX_HEADER_SIZE:
            log.error(
                "Got smbus payload sized %d, expecting %d",
                len(data) - _RX_HEADER_SIZE,
                byte_count,
            )
            return None
        if dest != (self.src_slave_addr & ~1):
            log.error("Got bad slave address %d", dest)
            return None
        if command != MCTP_COMMAND_CODE:
            log.error("Got bad command code %d", command)
            return None

        rx_pec = pec_calculate(0, data[:-1])
        if rx_pec != data[-1]:
            log.error(
                "Invalid PEC value: expected: 0x%02x, found 0x%02x", rx_pec, data[-1]
            )
            raise SmbusError(
                f"invalid PEC: expected 0x{rx_pec:02x}, found 0x{data[-1]:02x}"
            )

        raw = data[_RX_HEADER_SIZE:-SMBUS_PEC_BYTE_SIZE]
        if len(raw) < HEADER_SIZE:
            raise SmbusError("received packet is shorter than an MCTP header")

        private = SmbusPacketPrivate(
            transport=out_transport if out_transport is not None else self.transport,
            slave_addr=source & ~1 & 0xFF,
        )
        packet = Packet.from_bytes(raw, private)
        self.deliver(packet)

        if packet.header.eom:
            try:
                self._unhold_bus(private.slave_addr)
            except SmbusError as exc:
                log.error("Can't hold mux")
                raise SmbusError("can't unhold mux") from exc
        return packet

    def _unhold_bus(self, source_addr: int) -> None:
        # A packet from a different slave leaves the mux held.
        if self._active_mux.slave_addr != source_addr:
            return
        _transfer(self._active_mux.transport, [_hold_message(0)])

    # -- pull model ---------------------------------------------------------

    def _model_mux(self, timeout: int) -> None:
        _transfer(self._reserve_mux.transport, [_hold_message(timeout)])

    def init_pull_model(self, private: SmbusPacketPrivate) -> None:
        """Hold the mux for the device in ``private`` until exit_pull_model."""
        if self.pull_model_active:
            log.error("pull model is already active.")
            raise SmbusError("pull model is already active")
        self._reserve_mux = replace(private, mux_hold_timeout=0)
        try:
            self._model_mux(PULL_MODEL_HOLD_TIMEOUT)
        except SmbusError:
            self._reserve_mux = SmbusPacketPrivate()
            log.error(
                "Failed to hold the bus for device address: 0X%x", private.slave_addr
            )
            raise
        self.pull_model_active = True

    def exit_pull_model(self, private: SmbusPacketPrivate) -> None:
        """Release the mux held by init_pull_model for the same device."""
        reserve = self._reserve_mux
        if not (
            self.pull_model_active
            and reserve.slave_addr == private.slave_addr
            and reserve.transport is private.transport
        ):
            log.error(
                "pull model is not active for device address: 0X%x.",
                private.slave_addr,
            )
            raise SmbusError(
                f"pull model is not active for device address 0x{private.slave_addr:x}"
            )
        try:
            self._model_mux(0)
        except SmbusError:
            log.error(
                "Failed to unhold the bus for device address: 0X%x",
                private.slave_addr,
            )
            raise
        self.pull_model_active = False
        self._reserve_mux = SmbusPacketPrivate()

    def close_mux(self, transport: Transport, address: int) -> None:
        """Send an empty two-byte write to ``address`` to close a mux."""
        _transfer(transport, [I2cMessage(address, 0, bytes(2))])