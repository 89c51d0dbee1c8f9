"""MCTP over PCIe vendor-defined messages through a VDM character device."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional

from .packet import BTU, HEADER_SIZE, MctpError, Packet, packet_size

log = logging.getLogger(__name__)

DEVICE_PATH = "/dev/vdm"
DEFAULT_BUFFER_DWORDS = 1024

MSG_4DW_HDR = 0x70
MCTP_PCIE_VDM_ATTR = 0x10
MSG_CODE_VDM_TYPE_1 = 0x7F
VENDOR_ID_DMTF_VDM = 0x1AB4

ROUTING_MASK = 0x7
DATA_LEN_MASK = 0x3FF
PAD_LEN_SHIFT = 4
PAD_LEN_MASK = 0x3

PCIE_HDR_SIZE = 12
MCTP_HDR_SIZE_DW = HEADER_SIZE // 4
PCIE_VDM_HDR_SIZE = PCIE_HDR_SIZE + HEADER_SIZE

ERR_HW_FIFO_OVERFLOW = 0x00000001
ERR_DMA_BUFFER_OVERFLOW = 0x00000002
ERR_USER_BUFFER_OVERFLOW = 0x00000004
ERR_BUS_RESET_OCCURED = 0x00000008

_ERROR_NAMES = (
    (ERR_HW_FIFO_OVERFLOW, "VDM HW FIFO OVERFLOW"),
    (ERR_DMA_BUFFER_OVERFLOW, "VDM DMA BUFFER OVERFLOW"),
    (ERR_USER_BUFFER_OVERFLOW, "VDM USER BUFFER OVERFLOW"),
    (ERR_BUS_RESET_OCCURED, "VDM BUS RESET OCCURED"),
)

_HEADER = struct.Struct(">BBBBHBBHH")


class NupcieError(MctpError):
    """Raised when a PCIe VDM frame is invalid or the device fails."""


class Routing(IntEnum):
    """PCIe message routing types."""

    ROUTE_TO_RC = 0
    RESERVED = 1
    ROUTE_BY_ID = 2
    BROADCAST_FROM_RC = 3


_SUPPORTED_ROUTING = frozenset(
    {Routing.ROUTE_TO_RC, Routing.ROUTE_BY_ID, Routing.BROADCAST_FROM_RC}
)


def _align4(size: int) -> int:
    return (size + 3) & ~3


def pad_length(size: int) -> int:
    """Bytes of padding needed to dword-align a packet of ``size`` bytes."""
    return _align4(size) - size


def payload_dwords(size: int) -> int:
    """Dwords of payload, excluding the MCTP header, for a packet of ``size`` bytes."""
    return _align4(size) // 4 - MCTP_HDR_SIZE_DW


@dataclass(frozen=True)
class PcieVdmHeader:
    """The 12-byte PCIe VDM header in network byte order."""

    routing: int = Routing.ROUTE_TO_RC
    data_len: int = 0
    requester: int = 0
    pad_len: int = 0
    target: int = 0
    vendor: int = VENDOR_ID_DMTF_VDM
    code: int = MSG_CODE_VDM_TYPE_1
    fmt_type: int = MSG_4DW_HDR
    attr: int = MCTP_PCIE_VDM_ATTR

    def pack(self) -> bytes:
        return _HEADER.pack(
            (self.fmt_type & ~ROUTING_MASK & 0xFF) | (self.routing & ROUTING_MASK),
            0,
            (self.attr & 0xFC) | ((self.data_len >> 8) & 0x3),
            self.data_len & 0xFF,
            self.requester & 0xFFFF,
            (self.pad_len & PAD_LEN_MASK) << PAD_LEN_SHIFT,
            self.code & 0xFF,
            self.target & 0xFFFF,
            self.vendor & 0xFFFF,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "PcieVdmHeader":
        if len(data) < PCIE_HDR_SIZE:
            raise NupcieError(
                f"PCIe VDM header needs {PCIE_HDR_SIZE} bytes, got {len(data)}"
            )
        fmt, _mbz, attr_len, len_lo, requester, tag, code, target, vendor = (
            _HEADER.unpack_from(data)
        )
        return cls(
            routing=fmt & ROUTING_MASK,
            data_len=((attr_len & 0x3) << 8) | len_lo,
            requester=requester,
            pad_len=(tag >> PAD_LEN_SHIFT) & PAD_LEN_MASK,
            target=target,
            vendor=vendor,
            code=code,
            fmt_type=fmt & ~ROUTING_MASK & 0xFF,
            attr=attr_len & 0xFC,
        )


@dataclass
class NupciePacketPrivate:
    """Per-packet PCIe routing data: remote is the source on rx, target on tx."""

    routing: Routing = Routing.ROUTE_TO_RC
    remote_id: int = 0
    own_id: int = 0


class NupcieBinding:
    """PCIe VDM transport binding.

    ``device`` provides ``read(size)`` and ``write(data)`` and may provide
    ``get_errors()`` and ``clear_errors(mask)``; failures raise ``OSError``.
    ``deliver`` receives every valid received packet.
    """

    name = "nupcie"
    version = 1

    def __init__(self, deliver: Callable[[Packet], None], device: Any) -> None:
        self.deliver = deliver
        self.device = device
        self.bdf = 0
        self.pkt_size = packet_size(BTU)
        self.pkt_pad = PCIE_HDR_SIZE

    def _report_errors(self) -> None:
        get_errors = getattr(self.device, "get_errors", None)
        clear_errors = getattr(self.device, "clear_errors", None)
        if get_errors is None:
            return
        try:
            error = get_errors()
        except OSError as exc:
            log.error("reading VDM errors failed: %s", exc)
            return
        for flag, text in _ERROR_NAMES:
            if error & flag:
                log.error("%s: %s", DEVICE_PATH, text)
        if clear_errors is None:
            return
        try:
            clear_errors(error)
        except OSError as exc:
            log.error("clearing VDM errors failed: %s", exc)

    def tx(
        self, packet: Packet, private: Optional[NupciePacketPrivate] = None
    ) -> None:
        """Frame ``packet`` with a PCIe VDM header and write it to the device."""
        if private is None:
            private = packet.binding_private
        if private is None:
            raise NupcieError("binding private information not available")

        size = packet.size()
        pad = pad_length(size)
        dwords = payload_dwords(size)
        header = PcieVdmHeader(
            routing=private.routing,
            data_len=dwords,
            requester=self.bdf,
            pad_len=pad,
            target=private.remote_id,
        )
        frame = header.pack() + packet.to_bytes() + bytes(pad)
        log.debug("TX, len: %d, pad: %d", dwords, pad)
        log.debug(">TX> %s", frame.hex(" "))
        try:
            self.device.write(frame)
        except OSError as exc:
            log.error("TX error")
            self._report_errors()
            raise NupcieError(f"VDM write failed: {exc}") from exc

    def rx(self, data: bytes) -> Packet:
        """Decode one received VDM frame, deliver its packet and return it."""
        data = bytes(data)
        log.debug("<RX< %s", data.hex(" "))
        header = PcieVdmHeader.unpack(data)
        payload_len = header.data_len * 4 - header.pad_len
        if payload_len < 0:
            raise NupcieError("PCIe VDM padding exceeds the data length")

        if header.routing not in _SUPPORTED_ROUTING:
            log.error("unsupported routing value: %d", header.routing)
            raise NupcieError(f"unsupported routing value: {header.routing}")

        raw_len = payload_len + HEADER_SIZE
        if raw_len > self.pkt_size:
            log.error("Cannot push to pktbuf")
            raise NupcieError(f"packet of {raw_len} bytes exceeds {self.pkt_size}")
        raw = data[PCIE_HDR_SIZE : PCIE_HDR_SIZE + raw_len]
        if len(raw) < raw_len:
            raise NupcieError(
                f"frame holds {len(raw)} packet bytes, header says {raw_len}"
            )

        private = NupciePacketPrivate(
            routing=Routing(header.routing),
            remote_id=header.requester,
            own_id=header.target,
        )
        packet = Packet.from_bytes(raw, private)
        self.deliver(packet)
        return packet

    def read(self) -> Packet:
        """Read one frame from the device and process it."""
        try:
            data = self.device.read(DEFAULT_BUFFER_DWORDS * 4)
        except OSError as exc:
            log.error("Reading RX data failed: %s", exc)
            self._report_errors()
            raise NupcieError(f"VDM read failed: {exc}") from exc
        return self.rx(data)