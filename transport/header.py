# transport/header.py
import struct
from dataclasses import dataclass

from .errors import FormatError, TruncatedPacketError

HDR_FMT = "!I20sII"
HDR_SIZE = struct.calcsize(HDR_FMT)

PACKET_SIZE = 1024
HEADER_SIZE = HDR_SIZE
DATA_SIZE = PACKET_SIZE - HEADER_SIZE  # max payload per datagram
TYPE_FIELD_SIZE = 20


@dataclass(frozen=True)
class Packet:
    id: int
    type: str
    data_size: int
    checksum: int
    payload: bytes

    def verify(self) -> bool:
        """True when the header checksum matches the payload."""
        return checksum(self.payload) == self.checksum


def checksum(data: bytes) -> int:
    """Additive checksum: sum of all bytes modulo 65536.

    Order independent, so it only catches simple corruption.
    """
    return sum(data) % 65536


def make_packet(packet_id: int, ptype, payload=b"", checksum: int = 0) -> bytes:
    """
    Build packet: id(4), type(20, space padded), length(4), checksum(4) + payload
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    ptype = getattr(ptype, "value", ptype)
    try:
        tag = ptype.encode("ascii")
    except UnicodeEncodeError:
        raise FormatError(f"packet type must be ASCII: {ptype!r}")
    if len(tag) > TYPE_FIELD_SIZE:
        raise FormatError(f"packet type longer than {TYPE_FIELD_SIZE} bytes: {ptype!r}")
    try:
        header = struct.pack(HDR_FMT, packet_id, tag.ljust(TYPE_FIELD_SIZE, b" "), len(payload), checksum)
    except struct.error as e:
        raise FormatError(f"header field out of range: {e}")
    return header + bytes(payload)


def unpack_packet(data: bytes) -> Packet:
    """Return the decoded Packet. Raises FormatError if too small or truncated."""
    if len(data) < HDR_SIZE:
        raise FormatError(f"Packet too small ({len(data)} < {HDR_SIZE} bytes)")
    packet_id, tag, size, csum = struct.unpack_from(HDR_FMT, data)
    payload = bytes(data[HDR_SIZE:HDR_SIZE + size])
    if len(payload) != size:
        raise TruncatedPacketError(f"declared {size} payload bytes, got {len(payload)}")
    try:
        ptype = tag.decode("ascii").strip()
    except UnicodeDecodeError:
        raise FormatError("packet type is not ASCII")
    return Packet(id=packet_id, type=ptype, data_size=size, checksum=csum, payload=payload)


encode = make_packet
decode = unpack_packet
