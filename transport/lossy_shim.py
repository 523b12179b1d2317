# transport/lossy_shim.py
import logging
import random

logger = logging.getLogger("transport")


class LossySocket:
    """Wraps anything with sendto() and drops outbound datagrams at loss_rate."""

    def __init__(self, sock, loss_rate=0.0, rng=None):
        self.sock = sock
        self.loss_rate = loss_rate
        self.rng = rng or random.Random()
        self.dropped = 0

    def sendto(self, packet, addr):
        if self.loss_rate and self.rng.random() < self.loss_rate:
            self.dropped += 1
            logger.debug("dropped outbound %d bytes to %s", len(packet), addr)
            return
        self.sock.sendto(packet, addr)
