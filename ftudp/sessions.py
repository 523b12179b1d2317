# ftudp/sessions.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from transport.fragment import Fragment

from .protocol import NotAuthenticatedError

logger = logging.getLogger("ftudp.server")

Address = Tuple[str, int]


def session_key(addr: Address) -> str:
    return f"{addr[0]}:{addr[1]}"


@dataclass
class Session:
    key: str
    username: str
    addr: Address
    current_dir: str = "/"
    authenticated: bool = True
    created: float = 0.0
    last_seen: float = 0.0


class SessionTable:
    """Authenticated endpoints keyed by "host:port", evicted after idle_timeout seconds."""

    def __init__(self, idle_timeout: float = 1800.0, clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: Dict[str, Session] = {}

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, key):
        return key in self._sessions

    def login(self, addr: Address, username: str) -> Session:
        """Create or overwrite the session for addr, starting at "/"."""
        now = self.clock()
        key = session_key(addr)
        session = Session(key=key, username=username, addr=addr, created=now, last_seen=now)
        self._sessions[key] = session
        return session

    def _expired(self, session: Session, now: float) -> bool:
        return self.idle_timeout > 0 and now - session.last_seen > self.idle_timeout

    def get(self, addr: Address) -> Optional[Session]:
        key = session_key(addr)
        session = self._sessions.get(key)
        if session is not None and self._expired(session, self.clock()):
            logger.info("session %s (%s) expired", key, session.username)
            del self._sessions[key]
            return None
        return session

    def require(self, addr: Address) -> Session:
        """Return the authenticated session for addr and mark it active."""
        session = self.get(addr)
        if session is None or not session.authenticated:
            raise NotAuthenticatedError()
        session.last_seen = self.clock()
        return session

    def evict_idle(self) -> List[str]:
        now = self.clock()
        expired = [k for k, s in self._sessions.items() if self._expired(s, now)]
        for key in expired:
            session = self._sessions.pop(key)
            logger.info("evicted idle session %s (%s)", key, session.username)
        return expired


@dataclass
class UploadRecord:
    transfer_id: str
    filename: str
    target_path: Path
    session_key: str
    request_id: int
    expected: int
    fragments: Dict[int, Fragment] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = None

    @property
    def received_count(self) -> int:
        return len(self.fragments)

    @property
    def is_complete(self) -> bool:
        return self.received_count >= self.expected

    def add(self, frag: Fragment) -> bool:
        """Store a fragment; False for duplicates and ids outside 1..expected."""
        if not 1 <= frag.id <= self.expected or frag.id in self.fragments:
            return False
        self.fragments[frag.id] = frag
        self.last_activity = time.monotonic()
        return True


@dataclass
class DownloadRecord:
    transfer_id: str
    filename: str
    session_key: str
    addr: Address
    fragments: Dict[int, Fragment]
    unacked: Set[int] = field(default_factory=set)
    retries: Dict[int, int] = field(default_factory=dict)
    size: int = 0
    started: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = None
    task: Optional[asyncio.Task] = None

    def __post_init__(self):
        if not self.unacked:
            self.unacked = set(self.fragments)


class TransferTable:
    """In-flight uploads and downloads, at most one of each per session."""

    def __init__(self):
        self.uploads: Dict[str, UploadRecord] = {}
        self.downloads: Dict[str, DownloadRecord] = {}
        self._counter = 0

    def __len__(self):
        return len(self.uploads) + len(self.downloads)

    def new_transfer_id(self, kind: str, key: str) -> str:
        self._counter += 1
        return f"{kind}_{key}_{int(time.time() * 1000)}_{self._counter}"

    def add_upload(self, record: UploadRecord):
        self.uploads[record.transfer_id] = record

    def add_download(self, record: DownloadRecord):
        self.downloads[record.transfer_id] = record

    def upload_for(self, key: str) -> Optional[UploadRecord]:
        return next((r for r in self.uploads.values() if r.session_key == key), None)

    def download_for(self, key: str) -> Optional[DownloadRecord]:
        return next((r for r in self.downloads.values() if r.session_key == key), None)

    def remove(self, transfer_id: str):
        record = self.uploads.pop(transfer_id, None) or self.downloads.pop(transfer_id, None)
        if record is None:
            return None
        if record.timer is not None:
            record.timer.cancel()
            record.timer = None
        task = getattr(record, "task", None)
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        return record

    def drop_session(self, key: str) -> int:
        ids = [tid for tid, r in list(self.uploads.items()) + list(self.downloads.items()) if r.session_key == key]
        for tid in ids:
            self.remove(tid)
        return len(ids)


def _current_task():
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
