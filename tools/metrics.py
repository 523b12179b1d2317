# tools/metrics.py
import statistics
import time


class Metrics:
    """Counters for one endpoint (client or server)."""

    def __init__(self):
        self.durations = []  # ms per completed transfer
        self.bytes_sent = 0
        self.bytes_received = 0
        self.packets_sent = 0
        self.packets_received = 0
        self.retransmissions = 0
        self.checksum_errors = 0
        self.transfers = 0
        self.goodputs = []

    def record_sent(self, n):
        self.packets_sent += 1
        self.bytes_sent += n

    def record_received(self, n):
        self.packets_received += 1
        self.bytes_received += n

    def record_retransmissions(self, n=1):
        self.retransmissions += n

    def record_checksum_errors(self, n=1):
        self.checksum_errors += n

    def record_transfer(self, nbytes, started):
        """Close out a transfer of nbytes that began at time.monotonic() == started."""
        elapsed = max(time.monotonic() - started, 1e-6)
        self.transfers += 1
        self.durations.append(elapsed * 1000.0)
        self.goodputs.append(nbytes / elapsed)

    def report(self):
        if not self.durations:
            p95 = 0
            avg = 0
        elif len(self.durations) == 1:
            p95 = avg = self.durations[0]
        else:
            qs = statistics.quantiles(self.durations, n=100)
            p95 = qs[94]
            avg = statistics.mean(self.durations)
        return {
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "packets_sent": self.packets_sent,
            "packets_received": self.packets_received,
            "retransmissions": self.retransmissions,
            "checksum_errors": self.checksum_errors,
            "transfers": self.transfers,
            "avg_transfer_ms": avg,
            "p95_transfer_ms": p95,
            "avg_goodput_Bps": statistics.mean(self.goodputs) if self.goodputs else 0,
        }
