import io

import pytest

from mctplink.packet import FLAG_EOM, FLAG_SOM, MctpError, MctpHeader, Packet
from mctplink.serial import (
    ESCAPE,
    FRAMING_FLAG,
    REVISION,
    RxState,
    SerialBinding,
    encode_frame,
    escape,
)


def _packet(payload=b"\x01\x02"):
    hdr = MctpHeader(ver=1, dest=8, src=9, flags_seq_tag=FLAG_SOM | FLAG_EOM)
    return Packet(hdr, payload)


def _receiver():
    received = []
    return SerialBinding(received.append), received


def test_escape_special_bytes():
    assert escape(bytes([FRAMING_FLAG, ESCAPE, 0x01])) == bytes(
        [ESCAPE, 0x5E, ESCAPE, 0x5D, 0x01]
    )


def test_escape_plain_bytes_unchanged():
    assert escape(b"\x00\x10\x7f") == b"\x00\x10\x7f"


def test_frame_layout():
    pkt = _packet()
    frame = encode_frame(pkt)
    assert frame[0] == FRAMING_FLAG
    assert frame[1] == REVISION
    assert frame[2] == pkt.size()
    assert frame[3:-3] == pkt.to_bytes()
    assert frame[-3:] == bytes([0, 0, FRAMING_FLAG])


def test_frame_round_trip_with_escapes():
    pkt = _packet(bytes([FRAMING_FLAG, ESCAPE, 0x20]))
    binding, received = _receiver()
    binding.rx(encode_frame(pkt))
    assert [p.to_bytes() for p in received] == [pkt.to_bytes()]
    assert binding.state is RxState.WAIT_SYNC_START


def test_two_frames_and_leading_garbage():
    first, second = _packet(b"\x01"), _packet(b"\x02\x03")
    binding, received = _receiver()
    binding.rx(b"\x00\x11" + encode_frame(first) + encode_frame(second))
    assert [p.payload for p in received] == [b"\x01", b"\x02\x03"]


def test_invalid_revision_dropped():
    frame = bytearray(encode_frame(_packet()))
    frame[1] = 0x02
    binding, received = _receiver()
    binding.rx(bytes(frame))
    assert received == []


@pytest.mark.parametrize("length", [3, 69])
def test_invalid_length_dropped(length):
    frame = bytearray(encode_frame(_packet()))
    frame[2] = length
    binding, received = _receiver()
    binding.rx(bytes(frame))
    assert received == []


def test_missing_end_flag_dropped():
    frame = bytearray(encode_frame(_packet()))
    frame[-1] = 0x00
    binding, received = _receiver()
    binding.rx(bytes(frame))
    assert received == []
    assert binding.state is RxState.WAIT_SYNC_START


def test_split_delivery_across_calls():
    pkt = _packet(b"\xaa\xbb\xcc")
    frame = encode_frame(pkt)
    binding, received = _receiver()
    for b in frame:
        binding.rx(bytes([b]))
    assert [p.to_bytes() for p in received] == [pkt.to_bytes()]


def test_tx_writes_whole_frame_with_short_writes():
    sent = bytearray()

    def write(data):
        chunk = data[:2]
        sent.extend(chunk)
        return len(chunk)

    binding = SerialBinding(lambda p: None, write)
    pkt = _packet()
    binding.tx(pkt)
    assert bytes(sent) == encode_frame(pkt)


def test_tx_write_error_raises():
    binding = SerialBinding(lambda p: None, lambda data: -1)
    with pytest.raises(MctpError):
        binding.tx(_packet())


def test_tx_without_writer_raises():
    binding = SerialBinding(lambda p: None)
    with pytest.raises(MctpError):
        binding.tx(_packet())


def test_tx_oversized_frame_raises():
    pkt = _packet(bytes([FRAMING_FLAG]) * 200)
    with pytest.raises(MctpError):
        encode_frame(pkt)


def test_tx_then_rx_through_binding_pair():
    receiver, received = _receiver()

    def write(data):
        receiver.rx(data)
        return len(data)

    sender = SerialBinding(lambda p: None, write)
    pkt = _packet(b"hello")
    sender.tx(pkt)
    assert [p.payload for p in received] == [b"hello"]


def test_read_from_stream():
    pkt = _packet(b"\x09")
    binding, received = _receiver()
    binding.read(io.BytesIO(encode_frame(pkt)))
    assert [p.to_bytes() for p in received] == [pkt.to_bytes()]


def test_read_eof_raises():
    binding, _ = _receiver()
    with pytest.raises(EOFError):
        binding.read(io.BytesIO(b""))