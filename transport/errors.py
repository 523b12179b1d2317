# transport/errors.py
class FTUDPError(Exception):
    """Base error. ``status`` is the wire status word the error maps to."""

    status = "ERROR"

    def __init__(self, message: str = "", status=None):
        if status is not None:
            self.status = status
        super().__init__(message or str(getattr(self.status, "value", self.status)))


class FormatError(FTUDPError):
    """Malformed packet, credential payload or command argument."""


class TruncatedPacketError(FormatError):
    """Declared payload length exceeds the bytes actually received."""


class IntegrityError(FTUDPError):
    pass


class MissingFragmentsError(IntegrityError):
    def __init__(self, missing, expected: int):
        self.missing = sorted(missing)
        self.expected = expected
        preview = ", ".join(str(i) for i in self.missing[:10])
        if len(self.missing) > 10:
            preview += ", ..."
        super().__init__(f"missing {len(self.missing)} of {expected} fragments: {preview}")


class TransportError(FTUDPError):
    pass
