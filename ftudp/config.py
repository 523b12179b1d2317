# ftudp/config.py
import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .protocol import DEFAULT_PORT, MAX_RETRIES, PACE_MS, TIMEOUT_MS

SERVER_HOST = os.getenv("FTUDP_HOST", "0.0.0.0")
SERVER_ROOT = os.getenv("FTUDP_ROOT", "./data/server-files")

DEFAULT_USERS = {
    "thalles": "thalles123",
    "daniel": "daniel123",
    "user": "user123",
    "teste": "teste123",
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def load_users(path: Optional[str] = None) -> Dict[str, str]:
    """Read a JSON {"username": "password"} file, or return the built-in table."""
    path = path or os.getenv("FTUDP_USERS")
    if not path:
        return dict(DEFAULT_USERS)
    with open(path, "r", encoding="utf-8") as f:
        users = json.load(f)
    if not isinstance(users, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in users.items()
    ):
        raise ValueError(f"{path}: expected a JSON object of username -> password")
    return users


@dataclass
class ServerConfig:
    host: str = SERVER_HOST
    port: int = DEFAULT_PORT
    root: str = SERVER_ROOT
    users: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_USERS))
    session_idle: float = 1800.0  # seconds without traffic before a session is evicted
    transfer_idle: float = 10.0  # seconds without fragments before a transfer is aborted
    pace_ms: int = PACE_MS
    max_retries: int = MAX_RETRIES
    loss_rate: float = 0.0

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls(
            host=os.getenv("FTUDP_HOST", SERVER_HOST),
            port=_env_int("FTUDP_PORT", DEFAULT_PORT),
            root=os.getenv("FTUDP_ROOT", SERVER_ROOT),
            users=load_users(),
            session_idle=_env_float("FTUDP_SESSION_IDLE", 1800.0),
            transfer_idle=_env_float("FTUDP_TRANSFER_IDLE", 10.0),
            pace_ms=_env_int("FTUDP_PACE_MS", PACE_MS),
            loss_rate=_env_float("FTUDP_LOSS_RATE", 0.0),
        )


@dataclass
class ClientConfig:
    timeout_ms: int = TIMEOUT_MS
    pace_ms: int = PACE_MS
    max_retries: int = MAX_RETRIES
    loss_rate: float = 0.0

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            timeout_ms=_env_int("FTUDP_TIMEOUT_MS", TIMEOUT_MS),
            pace_ms=_env_int("FTUDP_PACE_MS", PACE_MS),
            loss_rate=_env_float("FTUDP_LOSS_RATE", 0.0),
        )
