"""MCTP packet and header definitions shared by all transport bindings."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

EID_NULL = 0
EID_BROADCAST = 0xFF

FLAG_SOM = 1 << 7
FLAG_EOM = 1 << 6
FLAG_TO = 1 << 3

VER_SHIFT = 0
VER_MASK = 0xF
SEQ_SHIFT = 4
SEQ_MASK = 0x3
TAG_SHIFT = 0
TAG_MASK = 0x7

HEADER_SIZE = 4
BTU = 64

LOG_ERR = 3
LOG_WARNING = 4
LOG_NOTICE = 5
LOG_INFO = 6
LOG_DEBUG = 7

_HEADER = struct.Struct("BBBB")
_VDPCI = struct.Struct(">BH")


class MctpError(Exception):
    """Raised when an MCTP packet cannot be built, parsed or sent."""


class MessageType(IntEnum):
    """MCTP message type codes (DSP0239 table 1)."""

    MCTP_CTRL = 0x00
    PLDM = 0x01
    NCSI = 0x02
    ETHERNET = 0x03
    NVME = 0x04
    SPDM = 0x05
    SECUREDMSG = 0x06
    VDPCI = 0x7E
    VDIANA = 0x7F


def packet_size(unit: int) -> int:
    """Size of a packet carrying ``unit`` bytes of payload plus the MCTP header."""
    return unit + HEADER_SIZE


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise ValueError(f"{name} must fit in one byte, got {value!r}")


@dataclass(frozen=True)
class MctpHeader:
    """The four-byte MCTP transport header."""

    ver: int = 1
    dest: int = EID_NULL
    src: int = EID_NULL
    flags_seq_tag: int = 0

    def __post_init__(self) -> None:
        for name in ("ver", "dest", "src", "flags_seq_tag"):
            _check_byte(name, getattr(self, name))

    def pack(self) -> bytes:
        return _HEADER.pack(self.ver, self.dest, self.src, self.flags_seq_tag)

    @classmethod
    def unpack(cls, data: bytes) -> "MctpHeader":
        if len(data) < HEADER_SIZE:
            raise MctpError(
                f"MCTP header needs {HEADER_SIZE} bytes, got {len(data)}"
            )
        return cls(*_HEADER.unpack_from(data))

    @property
    def version(self) -> int:
        return (self.ver >> VER_SHIFT) & VER_MASK

    @property
    def seq(self) -> int:
        return (self.flags_seq_tag >> SEQ_SHIFT) & SEQ_MASK

    @property
    def tag(self) -> int:
        return (self.flags_seq_tag >> TAG_SHIFT) & TAG_MASK

    @property
    def som(self) -> bool:
        return bool(self.flags_seq_tag & FLAG_SOM)

    @property
    def eom(self) -> bool:
        return bool(self.flags_seq_tag & FLAG_EOM)

    @property
    def tag_owner(self) -> bool:
        return bool(self.flags_seq_tag & FLAG_TO)


@dataclass
class Packet:
    """One MCTP packet: header, payload and optional binding-private data."""

    header: MctpHeader
    payload: bytes = b""
    binding_private: Any = None

    def to_bytes(self) -> bytes:
        return self.header.pack() + bytes(self.payload)

    @classmethod
    def from_bytes(cls, data: bytes, binding_private: Any = None) -> "Packet":
        data = bytes(data)
        header = MctpHeader.unpack(data)
        return cls(header, data[HEADER_SIZE:], binding_private)

    def size(self) -> int:
        """Length of the packet including its MCTP header."""
        return HEADER_SIZE + len(self.payload)


@dataclass(frozen=True)
class VdpciHeader:
    """Header of a PCI vendor-defined MCTP message; vendor id in network order."""

    ic_msg_type: int = MessageType.VDPCI
    vendor_id: int = 0

    def __post_init__(self) -> None:
        _check_byte("ic_msg_type", self.ic_msg_type)
        if not 0 <= self.vendor_id <= 0xFFFF:
            raise ValueError(f"vendor_id must fit in 16 bits, got {self.vendor_id!r}")

    def pack(self) -> bytes:
        return _VDPCI.pack(self.ic_msg_type, self.vendor_id)

    @classmethod
    def unpack(cls, data: bytes) -> "VdpciHeader":
        if len(data) < _VDPCI.size:
            raise MctpError(
                f"VDPCI header needs {_VDPCI.size} bytes, got {len(data)}"
            )
        return cls(*_VDPCI.unpack_from(data))