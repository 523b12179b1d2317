# ftudp/logutil.py
import logging
import os
import time


class ConsoleFormatter(logging.Formatter):
    """Readable console formatter with short timestamp + level."""

    def format(self, record: logging.LogRecord) -> str:
        ts = time.strftime("%H:%M:%S", time.localtime(record.created))
        line = f"{ts} {record.levelname.ljust(5)} [{record.name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level=None):
    """Install the console handler on the root logger once.

    Level comes from the argument, then FTUDP_LOG_LEVEL, then INFO.
    """
    level = (level or os.getenv("FTUDP_LOG_LEVEL", "INFO")).upper()
    root = logging.getLogger()
    root.setLevel(level)
    if getattr(root, "_ftudp_configured", False):
        return root
    handler = logging.StreamHandler()
    handler.setFormatter(ConsoleFormatter())
    root.addHandler(handler)
    root._ftudp_configured = True  # type: ignore[attr-defined]
    return root
