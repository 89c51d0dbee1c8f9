"""MCTP over serial: byte-stuffed framing and a receive state machine."""

from __future__ import annotations

import logging
from enum import Enum, auto
from typing import BinaryIO, Callable, Optional

from .packet import BTU, HEADER_SIZE, MctpError, Packet, packet_size

log = logging.getLogger(__name__)

REVISION = 0x01
FRAMING_FLAG = 0x7E
ESCAPE = 0x7D
TX_BUFFER_SIZE = 256
RX_BUFFER_SIZE = 1024

_FRAME_HEADER_SIZE = 3
_FRAME_TRAILER_SIZE = 3


class RxState(Enum):
    WAIT_SYNC_START = auto()
    WAIT_REVISION = auto()
    WAIT_LEN = auto()
    DATA = auto()
    DATA_ESCAPED = auto()
    WAIT_FCS1 = auto()
    WAIT_FCS2 = auto()
    WAIT_SYNC_END = auto()


def escape(data: bytes) -> bytes:
    """Byte-stuff the framing flag and escape characters."""
    out = bytearray()
    for c in data:
        if c in (FRAMING_FLAG, ESCAPE):
            out.append(ESCAPE)
            c ^= 0x20
        out.append(c)
    return bytes(out)


def encode_frame(packet: Packet) -> bytes:
    """Build the complete serial frame for ``packet``."""
    raw = packet.to_bytes()
    body = escape(raw)
    if len(body) + _FRAME_HEADER_SIZE + _FRAME_TRAILER_SIZE > TX_BUFFER_SIZE:
        raise MctpError("escaped packet does not fit in the serial transmit buffer")
    header = bytes((FRAMING_FLAG, REVISION, packet.size() & 0xFF))
    # The frame check sequence is not computed; both bytes are sent as zero.
    trailer = bytes((0, 0, FRAMING_FLAG))
    return header + body + trailer


class SerialBinding:
    """Serial transport binding.

    ``deliver`` receives each complete, valid packet; ``write`` sends bytes
    and returns the number written (``None`` meaning all of them).
    """

    name = "serial"
    version = 1

    def __init__(
        self,
        deliver: Callable[[Packet], None],
        write: Optional[Callable[[bytes], Optional[int]]] = None,
    ) -> None:
        self.deliver = deliver
        self.write = write
        self.pkt_size = packet_size(BTU)
        self.pkt_pad = 0
        self.state = RxState.WAIT_SYNC_START
        self.rx_fcs = 0
        self._rx_buf: Optional[bytearray] = None
        self._rx_exp_len = 0

    def tx(self, packet: Packet) -> None:
        """Frame ``packet`` and write all of it."""
        frame = encode_frame(packet)
        if self.write is None:
            raise MctpError("serial binding has no transmit function")
        remaining = memoryview(frame)
        while remaining:
            wrote = self.write(bytes(remaining))
            if wrote is None:
                break
            if wrote <= 0:
                raise MctpError("serial write failed")
            remaining = remaining[wrote:]

    def rx(self, data: bytes) -> None:
        """Feed received bytes into the framing state machine."""
        for c in bytes(data):
            self._consume(c)

    def read(self, stream: BinaryIO) -> None:
        """Read one chunk from ``stream`` and process it; EOF raises EOFError."""
        data = stream.read(RX_BUFFER_SIZE)
        if not data:
            raise EOFError("serial stream closed")
        self.rx(data)

    def _finish(self, valid: bool) -> None:
        buf = self._rx_buf
        self._rx_buf = None
        if valid and buf is not None:
            self.deliver(Packet.from_bytes(bytes(buf)))

    def _push(self, c: int) -> None:
        assert self._rx_buf is not None
        self._rx_buf.append(c)

    def _complete(self) -> bool:
        return self._rx_buf is not None and len(self._rx_buf) == self._rx_exp_len

    def _consume(self, c: int) -> None:
        state = self.state
        log.debug("state: %s, char 0x%02x", state.name, c)

        if state is RxState.WAIT_SYNC_START:
            if c != FRAMING_FLAG:
                log.debug("lost sync, dropping packet")
                if self._rx_buf is not None:
                    self._finish(False)
            else:
                self.state = RxState.WAIT_REVISION
        elif state is RxState.WAIT_REVISION:
            if c == REVISION:
                self.state = RxState.WAIT_LEN
            else:
                log.debug("invalid revision 0x%02x", c)
                self.state = RxState.WAIT_SYNC_START
        elif state is RxState.WAIT_LEN:
            if c > self.pkt_size or c < HEADER_SIZE:
                log.debug("invalid size %d", c)
                self.state = RxState.WAIT_SYNC_START
            else:
                self._rx_buf = bytearray()
                self._rx_exp_len = c
                self.state = RxState.DATA
        elif state is RxState.DATA:
            if c == ESCAPE:
                self.state = RxState.DATA_ESCAPED
            else:
                self._push(c)
                if self._complete():
                    self.state = RxState.WAIT_FCS1
        elif state is RxState.DATA_ESCAPED:
            self._push(c ^ 0x20)
            self.state = RxState.WAIT_FCS1 if self._complete() else RxState.DATA
        elif state is RxState.WAIT_FCS1:
            self.rx_fcs = c << 8
            self.state = RxState.WAIT_FCS2
        elif state is RxState.WAIT_FCS2:
            self.rx_fcs |= c
            self.state = RxState.WAIT_SYNC_END
        elif state is RxState.WAIT_SYNC_END:
            if c == FRAMING_FLAG:
                self._finish(True)
            else:
                log.debug("missing end frame marker")
                self._finish(False)
            self.state = RxState.WAIT_SYNC_START

        log.debug(" -> state: %s", self.state.name)