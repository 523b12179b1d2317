# ftudp/protocol.py
"""
Protocol vocabulary shared by the client and the server.

Packet layout (32 byte header + payload):
  id:u32be | type:ascii[20, space padded] | payload_len:u32be | checksum:u32be | payload

Responses carry a status word first, optionally followed by a space or a
newline and a detail string, e.g. ``SUCCESS 3`` or ``SUCCESS\\nFILE a.txt 10``.
"""
import enum
import re
from typing import Optional, Tuple

from transport.errors import (
    FormatError,
    FTUDPError,
    IntegrityError,
    MissingFragmentsError,
    TransportError,
    TruncatedPacketError,
)
from transport.header import DATA_SIZE, HEADER_SIZE, PACKET_SIZE, TYPE_FIELD_SIZE

TIMEOUT_MS = 5000
MAX_RETRIES = 3
PACE_MS = 10
DEFAULT_PORT = 21000


class PacketType(str, enum.Enum):
    LOGIN = "LOGIN"
    LOGIN_RESPONSE = "LOGIN_RESPONSE"
    PUT = "PUT"
    PUT_DATA = "PUT_DATA"
    PUT_RESPONSE = "PUT_RESPONSE"
    GET = "GET"
    GET_DATA = "GET_DATA"
    GET_RESPONSE = "GET_RESPONSE"
    LS = "LS"
    LS_RESPONSE = "LS_RESPONSE"
    CD = "CD"
    CD_RESPONSE = "CD_RESPONSE"
    MKDIR = "MKDIR"
    MKDIR_RESPONSE = "MKDIR_RESPONSE"
    RMDIR = "RMDIR"
    RMDIR_RESPONSE = "RMDIR_RESPONSE"
    ACK = "ACK"
    NACK = "NACK"
    ERROR = "ERROR"


# command -> response type used when answering it
RESPONSE_TYPES = {
    PacketType.LOGIN: PacketType.LOGIN_RESPONSE,
    PacketType.PUT: PacketType.PUT_RESPONSE,
    PacketType.GET: PacketType.GET_RESPONSE,
    PacketType.LS: PacketType.LS_RESPONSE,
    PacketType.CD: PacketType.CD_RESPONSE,
    PacketType.MKDIR: PacketType.MKDIR_RESPONSE,
    PacketType.RMDIR: PacketType.RMDIR_RESPONSE,
}


class Status(str, enum.Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    WRONG_PASSWORD = "WRONG_PASSWORD"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    DIRECTORY_NOT_FOUND = "DIRECTORY_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    NOT_EMPTY = "NOT_EMPTY"


STATUS_MESSAGES = {
    Status.SUCCESS: "Success",
    Status.ERROR: "Error",
    Status.USER_NOT_FOUND: "User not found",
    Status.WRONG_PASSWORD: "Wrong password",
    Status.FILE_NOT_FOUND: "File not found",
    Status.DIRECTORY_NOT_FOUND: "Directory not found",
    Status.PERMISSION_DENIED: "Permission denied",
    Status.ALREADY_EXISTS: "Already exists",
    Status.NOT_EMPTY: "Directory is not empty",
}


def status_message(status) -> str:
    """Human readable text for a status code (unknown codes are echoed back)."""
    try:
        return STATUS_MESSAGES[Status(status)]
    except ValueError:
        return str(status)


_STATUS_SPLIT = re.compile(r"[ \n]")


def parse_response(payload: bytes) -> Tuple[Optional[Status], str]:
    """Split a response payload into (status, detail).

    A payload that does not start with a known status word yields
    ``(None, <whole text>)``.
    """
    text = payload.decode("utf-8", errors="replace")
    parts = _STATUS_SPLIT.split(text, maxsplit=1)
    try:
        status = Status(parts[0])
    except ValueError:
        return None, text
    return status, parts[1] if len(parts) > 1 else ""


def format_response(status: Status, detail: str = "") -> str:
    return f"{status.value} {detail}" if detail else status.value


# ------------------ errors ------------------

class NotAuthenticatedError(FTUDPError):
    def __init__(self, message: str = "Client not authenticated"):
        super().__init__(message)


class AuthenticationError(FTUDPError):
    """Login rejected; ``status`` tells user-not-found from wrong-password."""


class NotFoundError(FTUDPError):
    status = Status.FILE_NOT_FOUND


class AlreadyExistsError(FTUDPError):
    status = Status.ALREADY_EXISTS


class NotEmptyError(FTUDPError):
    status = Status.NOT_EMPTY


class PermissionDeniedError(FTUDPError):
    """Raised for paths that would leave the server root."""

    status = Status.PERMISSION_DENIED


class RemoteError(FTUDPError):
    """Generic failure reported by the peer."""


class RequestTimeoutError(FTUDPError, TimeoutError):
    pass


class TransferInProgressError(FTUDPError):
    def __init__(self, message: str = "Another transfer is already in progress"):
        super().__init__(message)


_STATUS_ERRORS = {
    Status.USER_NOT_FOUND: AuthenticationError,
    Status.WRONG_PASSWORD: AuthenticationError,
    Status.FILE_NOT_FOUND: NotFoundError,
    Status.DIRECTORY_NOT_FOUND: NotFoundError,
    Status.PERMISSION_DENIED: PermissionDeniedError,
    Status.ALREADY_EXISTS: AlreadyExistsError,
    Status.NOT_EMPTY: NotEmptyError,
}


def error_for_status(status: Optional[Status], detail: str = "") -> FTUDPError:
    """Build the client-side exception for a non-success response."""
    if status is None:
        return RemoteError(detail or "Malformed response", Status.ERROR)
    cls = _STATUS_ERRORS.get(status, RemoteError)
    message = status_message(status)
    if detail:
        message = f"{message}: {detail}"
    return cls(message, status)
