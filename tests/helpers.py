# tests/helpers.py
import asyncio

from ftudp.protocol import TransportError
from transport.header import checksum, make_packet, unpack_packet

CLIENT = ("127.0.0.1", 40000)
SERVER = ("127.0.0.1", 21000)


def build(packet_id, ptype, payload=b"", csum=None):
    if isinstance(payload, str):
        payload = payload.encode()
    return make_packet(packet_id, ptype, payload, checksum(payload) if csum is None else csum)


class FakeEndpoint:
    """Captures outbound packets instead of touching a socket."""

    local_address = ("127.0.0.1", 0)

    def __init__(self):
        self.sent = []
        self.callback = None
        self.on_error = None
        self.closed = False

    def set_callback(self, cb):
        self.callback = cb

    def send_raw(self, raw, addr=None):
        if self.closed:
            raise TransportError("closed")
        self.sent.append((unpack_packet(raw), addr))

    def close(self):
        self.closed = True

    def inject(self, raw, addr=SERVER):
        self.callback(raw, addr)

    def take(self):
        out = [p for p, _ in self.sent]
        self.sent.clear()
        return out


class _LinkedEnd:
    def __init__(self, addr):
        self.addr = addr
        self.peer = None
        self.callback = None
        self.on_error = None
        self.closed = False
        self.log = []
        self.mangle = None  # raw -> raw or None to drop

    @property
    def local_address(self):
        return self.addr

    def set_callback(self, cb):
        self.callback = cb

    def send_raw(self, raw, addr=None):
        if self.closed:
            raise TransportError("closed")
        self.log.append(unpack_packet(raw))
        if self.mangle is not None:
            raw = self.mangle(raw)
            if raw is None:
                return
        asyncio.get_running_loop().call_soon(self.peer._receive, raw, self.addr)

    def _receive(self, raw, addr):
        if self.callback is not None and not self.closed:
            self.callback(raw, addr)

    def close(self):
        self.closed = True


class Link:
    """Two in-memory endpoints delivering to each other on the next loop iteration."""

    def __init__(self, client_addr=CLIENT, server_addr=SERVER):
        self.client = _LinkedEnd(client_addr)
        self.server = _LinkedEnd(server_addr)
        self.client.peer = self.server
        self.server.peer = self.client
