# transport/fragment.py
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .errors import MissingFragmentsError
from .header import DATA_SIZE, Packet, checksum, make_packet


@dataclass(frozen=True)
class Fragment:
    id: int
    type: str
    data: bytes
    checksum: int

    def to_bytes(self) -> bytes:
        return make_packet(self.id, self.type, self.data, self.checksum)

    @classmethod
    def from_packet(cls, packet: Packet) -> "Fragment":
        return cls(id=packet.id, type=packet.type, data=packet.payload, checksum=packet.checksum)


def fragment_count(size: int, chunk_size: int = DATA_SIZE) -> int:
    return -(-size // chunk_size)


def fragment(payload: bytes, ptype, start_id: int = 1, chunk_size: int = DATA_SIZE) -> List[Fragment]:
    """Split payload into DATA_SIZE chunks with sequential ids.

    Each checksum covers only its own chunk. An empty payload gives no fragments.
    """
    ptype = getattr(ptype, "value", ptype)
    fragments = []
    packet_id = start_id
    for offset in range(0, len(payload), chunk_size):
        chunk = bytes(payload[offset:offset + chunk_size])
        fragments.append(Fragment(id=packet_id, type=ptype, data=chunk, checksum=checksum(chunk)))
        packet_id += 1
    return fragments


def reassemble(fragments: Iterable[Fragment], expected: Optional[int] = None, start_id: int = 1) -> bytes:
    """Concatenate fragment data in id order.

    With ``expected`` set, the ids start_id..start_id+expected-1 must all be
    present (MissingFragmentsError otherwise) and anything outside that range
    is ignored. Without it, whatever was given is sorted and joined.
    """
    if expected is None:
        return b"".join(f.data for f in sorted(fragments, key=lambda f: f.id))

    by_id = {}
    for f in fragments:
        if start_id <= f.id < start_id + expected:
            by_id[f.id] = f
    missing = [i for i in range(start_id, start_id + expected) if i not in by_id]
    if missing:
        raise MissingFragmentsError(missing, expected)
    return b"".join(by_id[i].data for i in range(start_id, start_id + expected))
