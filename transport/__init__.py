# transport/__init__.py
from .transport import DatagramEndpoint, open_endpoint
from .lossy_shim import LossySocket
from .errors import FormatError, FTUDPError, MissingFragmentsError, TransportError, TruncatedPacketError
from .header import Packet, checksum, decode, encode, make_packet, unpack_packet
from .fragment import Fragment, fragment, fragment_count, reassemble

__all__ = [
    "FTUDPError",
    "FormatError",
    "TruncatedPacketError",
    "MissingFragmentsError",
    "TransportError",
    "DatagramEndpoint",
    "open_endpoint",
    "LossySocket",
    "Packet",
    "checksum",
    "make_packet",
    "encode",
    "decode",
    "unpack_packet",
    "Fragment",
    "fragment",
    "fragment_count",
    "reassemble",
]
