# transport/transport.py
import asyncio
import logging

from .errors import TransportError
from .lossy_shim import LossySocket

logger = logging.getLogger("transport")


class DatagramEndpoint(asyncio.DatagramProtocol):
    """
    Thin asyncio UDP endpoint.
    Application registers a callback that accepts (data, addr); every inbound
    datagram is handed over as-is, one at a time, on the event loop thread.
    Use send_raw(packet, addr) to transmit.
    """

    def __init__(self, name="endpoint", remote_addr=None, loss_rate=0.0, on_error=None):
        self.name = name
        self.remote_addr = remote_addr
        self.loss_rate = loss_rate
        self.loss_wrapper = None
        self.on_error = on_error
        self.transport = None
        self.closed = False
        self._callback = None

    # ------------------ callback API ------------------
    def set_callback(self, cb):
        """Register the callback that accepts (data, addr)."""
        if not callable(cb):
            raise TypeError("callback must be callable")
        self._callback = cb

    def _deliver(self, data: bytes, addr):
        if self._callback is None:
            logger.debug("[%s] no callback, dropping %d bytes from %s", self.name, len(data), addr)
            return
        try:
            self._callback(data, addr)
        except Exception:
            logger.exception("[%s] callback error for datagram from %s", self.name, addr)

    # ------------------ lifecycle ------------------
    def connection_made(self, transport):
        self.transport = transport
        if self.loss_rate:
            self.loss_wrapper = LossySocket(transport, self.loss_rate)
        logger.info("[%s] listening on %s", self.name, self.local_address)

    def datagram_received(self, data: bytes, addr):
        self._deliver(data, addr)

    def error_received(self, exc):
        logger.error("[%s] socket error: %s", self.name, exc)
        if callable(self.on_error):
            self.on_error(TransportError(str(exc)))

    def connection_lost(self, exc):
        self.closed = True
        if exc is not None:
            logger.error("[%s] connection lost: %s", self.name, exc)

    @property
    def local_address(self):
        if self.transport is None:
            return None
        return self.transport.get_extra_info("sockname")

    # ------------------ sending ------------------
    def send_raw(self, packet: bytes, addr=None):
        addr = addr or self.remote_addr
        if addr is None:
            raise TransportError("no destination address")
        if self.transport is None or self.closed:
            raise TransportError(f"[{self.name}] endpoint is closed")
        try:
            if self.loss_wrapper:
                self.loss_wrapper.sendto(packet, addr)
            else:
                self.transport.sendto(packet, addr)
        except OSError as e:
            raise TransportError(f"send to {addr} failed: {e}") from e

    def close(self):
        if self.transport is not None and not self.closed:
            self.transport.close()
        self.closed = True


async def open_endpoint(local_addr=("0.0.0.0", 0), name="endpoint", remote_addr=None, loss_rate=0.0):
    """Bind a UDP socket and return its DatagramEndpoint."""
    loop = asyncio.get_running_loop()
    try:
        _transport, proto = await loop.create_datagram_endpoint(
            lambda: DatagramEndpoint(name=name, remote_addr=remote_addr, loss_rate=loss_rate),
            local_addr=local_addr,
        )
    except OSError as e:
        raise TransportError(f"cannot bind {local_addr}: {e}") from e
    return proto
