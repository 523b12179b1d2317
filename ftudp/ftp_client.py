# ftudp/ftp_client.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from tools.metrics import Metrics
from transport.fragment import Fragment, fragment, reassemble
from transport.header import Packet, make_packet, unpack_packet
from transport.transport import open_endpoint

from . import fileops
from .config import ClientConfig
from .events import ClientEvent, EventBus
from .protocol import (
    AuthenticationError,
    FormatError,
    FTUDPError,
    IntegrityError,
    NotAuthenticatedError,
    PacketType,
    RemoteError,
    RequestTimeoutError,
    Status,
    TransferInProgressError,
    TransportError,
    error_for_status,
    parse_response,
    status_message,
)

logger = logging.getLogger("ftudp.client")


@dataclass
class PendingRequest:
    kind: str
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    # called synchronously with the detail of a SUCCESS response
    on_success: Optional[Callable[[str], None]] = None
    # PUT only: future re-registered under the same id for the final response
    completion: Optional[asyncio.Future] = None


@dataclass
class Transfer:
    kind: str  # "put" or "get"
    file_name: str
    future: asyncio.Future  # put: resolved once every fragment is ACKed
    fragments: Dict[int, Fragment] = field(default_factory=dict)
    expected: Optional[int] = None
    request_id: int = 0
    local_path: Optional[str] = None
    retries: Dict[int, int] = field(default_factory=dict)
    acked: set = field(default_factory=set)
    sent: int = 0
    error: Optional[FTUDPError] = None
    timer: Optional[asyncio.TimerHandle] = None
    started: float = field(default_factory=time.monotonic)


@dataclass
class DirEntry:
    kind: str  # "DIR" or "FILE"
    name: str
    size: int

    @property
    def is_dir(self) -> bool:
        return self.kind == "DIR"


def parse_listing(text: str) -> List[DirEntry]:
    entries = []
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            kind, rest = line.split(" ", 1)
            name, size = rest.rsplit(" ", 1)
            entries.append(DirEntry(kind, name, int(size)))
        except ValueError:
            raise FormatError(f"bad listing line: {line!r}")
    return entries


def _check_name(what: str, value: str):
    if not value or any(ch.isspace() for ch in value):
        raise FormatError(f"{what} must be non-empty and contain no whitespace: {value!r}")


class FTPClient:
    """
    Client session: disconnected -> connected -> authenticated.

    Requests are paired with responses through the pending table (one entry
    per request id, removed on response or timeout). At most one upload or
    download runs at a time. Progress and completion are published on
    ``self.events``.
    """

    def __init__(self, config: Optional[ClientConfig] = None, events: Optional[EventBus] = None):
        self.config = config or ClientConfig.from_env()
        self.events = events or EventBus()
        self.metrics = Metrics()
        self.endpoint = None
        self.server_addr = None
        self.connected = False
        self.authenticated = False
        self.current_user: Optional[str] = None
        self.current_dir = "/"
        self.pending: Dict[int, PendingRequest] = {}
        self.active_transfer: Optional[Transfer] = None
        self._next_id = 1

    def on(self, event, cb):
        return self.events.subscribe(event, cb)

    # ------------------ connection ------------------
    async def connect(self, address: str, port: int, endpoint=None):
        """Record the server address and bind a local socket. No handshake: UDP has none."""
        if self.connected:
            return
        if endpoint is None:
            endpoint = await open_endpoint(("0.0.0.0", 0), name="client", loss_rate=self.config.loss_rate)
        endpoint.set_callback(self.on_datagram)
        endpoint.on_error = self._on_transport_error
        self.endpoint = endpoint
        self.server_addr = (address, port)
        self.connected = True
        logger.info("connected to %s:%d", address, port)
        self.events.emit(ClientEvent.CONNECTED, address=address, port=port)

    def disconnect(self):
        if not self.connected:
            return
        reason = TransportError("Disconnected")
        for req_id in list(self.pending):
            record = self.pending.pop(req_id)
            self._cancel_timer(record)
            self._reject(record.future, reason)
            if record.completion is not None:
                record.completion.cancel()
        if self.active_transfer is not None:
            self._fail_transfer(self.active_transfer, reason, notify=False)
        self.endpoint.close()
        self.connected = False
        self.authenticated = False
        self.current_user = None
        self.current_dir = "/"
        logger.info("disconnected")
        self.events.emit(ClientEvent.DISCONNECTED)

    def _on_transport_error(self, exc: TransportError):
        self.events.emit(ClientEvent.ERROR, error=exc, message=str(exc))

    # ------------------ plumbing ------------------
    def next_request_id(self) -> int:
        req_id = self._next_id
        self._next_id += 1
        return req_id

    def _send(self, ptype, payload=b"", packet_id=0, checksum=0):
        self._send_raw(make_packet(packet_id, ptype, payload, checksum))

    def _send_raw(self, raw: bytes):
        if not self.connected:
            raise TransportError("Not connected to a server")
        self.endpoint.send_raw(raw, self.server_addr)
        self.metrics.record_sent(len(raw))

    def _request(self, ptype, payload, kind, on_success=None, completion=False) -> Tuple[int, PendingRequest]:
        loop = asyncio.get_running_loop()
        req_id = self.next_request_id()
        record = PendingRequest(
            kind=kind,
            future=loop.create_future(),
            on_success=on_success,
            completion=loop.create_future() if completion else None,
        )
        self.pending[req_id] = record
        try:
            self._send(ptype, payload, req_id)
        except FTUDPError:
            del self.pending[req_id]
            raise
        self._arm_timeout(req_id)
        return req_id, record

    async def _call(self, ptype, payload, kind, on_success=None) -> str:
        _, record = self._request(ptype, payload, kind, on_success)
        return await record.future

    def _arm_timeout(self, req_id: int):
        record = self.pending.get(req_id)
        if record is None:
            return
        self._cancel_timer(record)
        record.timer = asyncio.get_running_loop().call_later(
            self.config.timeout_ms / 1000.0, self._expire, req_id, record
        )

    def _expire(self, req_id: int, record: PendingRequest):
        if self.pending.get(req_id) is not record:
            return
        del self.pending[req_id]
        logger.warning("%s request %d timed out", record.kind, req_id)
        self._reject(
            record.future,
            RequestTimeoutError(f"No response to {record.kind} within {self.config.timeout_ms} ms"),
        )
        if record.completion is not None:
            record.completion.cancel()

    @staticmethod
    def _cancel_timer(holder):
        if holder.timer is not None:
            holder.timer.cancel()
            holder.timer = None

    @staticmethod
    def _resolve(fut: asyncio.Future, value):
        if not fut.done():
            fut.set_result(value)

    @staticmethod
    def _reject(fut: asyncio.Future, exc: Exception):
        if not fut.done():
            fut.set_exception(exc)

    def _require_connected(self):
        if not self.connected:
            raise TransportError("Not connected to a server")

    def _require_authenticated(self):
        self._require_connected()
        if not self.authenticated:
            raise NotAuthenticatedError()

    def _require_idle(self):
        if self.active_transfer is not None:
            raise TransferInProgressError()

    # ------------------ inbound ------------------
    def on_datagram(self, data: bytes, addr):
        self.metrics.record_received(len(data))
        try:
            packet = unpack_packet(data)
        except FormatError as e:
            logger.warning("discarding malformed datagram from %s: %s", addr, e)
            return
        try:
            self._handle_packet(packet)
        except FTUDPError as e:
            logger.error("could not handle %s %d: %s", packet.type, packet.id, e)
            self.events.emit(ClientEvent.ERROR, error=e, message=str(e))

    def _handle_packet(self, packet: Packet):
        if packet.type == PacketType.GET_DATA.value:
            self._on_download_fragment(packet)
            return
        if packet.type in (PacketType.ACK.value, PacketType.NACK.value):
            self._on_upload_reply(packet)
            return

        record = self.pending.pop(packet.id, None) if packet.id else None
        if record is None:
            self._on_unsolicited(packet)
            return
        self._cancel_timer(record)
        status, detail = parse_response(packet.payload)

        if packet.type == PacketType.ERROR.value:
            self._reject(record.future, RemoteError(packet.payload.decode("utf-8", errors="replace")))
        elif status is Status.SUCCESS:
            if record.completion is not None:
                self.pending[packet.id] = PendingRequest(kind=f"{record.kind}_complete", future=record.completion)
                record.completion = None
            try:
                if record.on_success is not None:
                    record.on_success(detail)
            except FTUDPError as e:
                self._reject(record.future, e)
                return
            self._resolve(record.future, detail)
            return
        elif record.kind == "login":
            self._reject(record.future, AuthenticationError(status_message(status or Status.ERROR), status or Status.ERROR))
        else:
            self._reject(record.future, error_for_status(status, detail))
        if record.completion is not None:
            record.completion.cancel()

    def _on_unsolicited(self, packet: Packet):
        message = packet.payload.decode("utf-8", errors="replace")
        if packet.type == PacketType.ERROR.value and packet.id == 0:
            # id 0 errors concern fragments of the active transfer
            error = RemoteError(message)
            if self.active_transfer is not None:
                self._fail_transfer(self.active_transfer, error)
            else:
                logger.warning("server error: %s", message)
                self.events.emit(ClientEvent.ERROR, error=error, message=message)
            return
        logger.warning("discarding unsolicited %s packet (id %d)", packet.type, packet.id)

    # ------------------ operations ------------------
    async def authenticate(self, username: str, password: str) -> str:
        self._require_connected()
        _check_name("username", username)
        _check_name("password", password)

        def logged_in(_detail):
            self.authenticated = True
            self.current_user = username
            self.current_dir = "/"
            logger.info("authenticated as %s", username)
            self.events.emit(ClientEvent.AUTHENTICATED, username=username)

        await self._call(PacketType.LOGIN, f"{username} {password}", "login", logged_in)
        return username

    async def list_directory(self) -> List[DirEntry]:
        self._require_authenticated()
        return parse_listing(await self._call(PacketType.LS, b"", "ls"))

    async def change_directory(self, name: str) -> str:
        self._require_authenticated()
        _check_name("directory name", name)
        new_dir = await self._call(PacketType.CD, name, "cd")
        self.current_dir = new_dir
        return new_dir

    async def make_directory(self, name: str):
        self._require_authenticated()
        _check_name("directory name", name)
        await self._call(PacketType.MKDIR, name, "mkdir")

    async def remove_directory(self, name: str):
        self._require_authenticated()
        _check_name("directory name", name)
        await self._call(PacketType.RMDIR, name, "rmdir")

    async def upload(self, data: bytes, remote_name: str) -> int:
        """
        Send data as remote_name. Returns the size the server reports once
        it has written the file; raises if that confirmation never comes.
        """
        self._require_authenticated()
        _check_name("remote file name", remote_name)
        self._require_idle()

        fragments = fragment(data, PacketType.PUT_DATA)
        loop = asyncio.get_running_loop()
        transfer = Transfer(
            kind="put",
            file_name=remote_name,
            future=loop.create_future(),
            fragments={f.id: f for f in fragments},
            expected=len(fragments),
        )
        self.active_transfer = transfer
        logger.info("uploading %s (%d bytes, %d fragments)", remote_name, len(data), len(fragments))
        try:
            req_id, record = self._request(PacketType.PUT, f"{remote_name} {len(fragments)}", "put", completion=True)
            transfer.request_id = req_id
            completion = record.completion
            await record.future

            pace = self.config.pace_ms / 1000.0
            for frag in fragments:
                if transfer.error is not None:
                    break
                self._send_raw(frag.to_bytes())
                transfer.sent += 1
                self.events.emit(
                    ClientEvent.UPLOAD_PROGRESS,
                    file_name=remote_name,
                    progress=round(transfer.sent * 100 / len(fragments)),
                    sent=transfer.sent,
                    total=len(fragments),
                )
                if pace:
                    await asyncio.sleep(pace)

            await self._resend_unacked(transfer, completion)
            self._arm_timeout(req_id)
            detail = await completion
        finally:
            if self.active_transfer is transfer:
                self.active_transfer = None
            if not transfer.future.done():
                transfer.future.cancel()

        try:
            size = int(detail.split()[0])
        except (IndexError, ValueError):
            size = len(data)
        self.metrics.record_transfer(size, transfer.started)
        logger.info("upload of %s confirmed (%d bytes)", remote_name, size)
        self.events.emit(ClientEvent.UPLOAD_COMPLETE, file_name=remote_name, size=size)
        return size

    async def put_file(self, local_path: str, remote_name: Optional[str] = None) -> int:
        remote_name = remote_name or local_path.replace("\\", "/").rsplit("/", 1)[-1]
        return await self.upload(fileops.read_local(local_path), remote_name)

    async def _resend_unacked(self, transfer: Transfer, completion: asyncio.Future):
        """
        Resend fragments the server has not ACKed, at most max_retries rounds.
        The rounds share one request timeout; the final confirmation still
        decides the outcome.
        """
        if not transfer.fragments:
            return
        interval = self.config.timeout_ms / 1000.0 / (self.config.max_retries + 1)
        for attempt in range(1, self.config.max_retries + 1):
            if transfer.future.done() or completion.done() or transfer.error is not None:
                return
            await asyncio.wait([transfer.future, completion], timeout=interval)
            if transfer.future.done() or completion.done() or transfer.error is not None:
                return
            missing = [i for i in sorted(transfer.fragments) if i not in transfer.acked]
            logger.info(
                "resending %d unacknowledged fragment(s) of %s (round %d)",
                len(missing), transfer.file_name, attempt,
            )
            for frag_id in missing:
                self._send_raw(transfer.fragments[frag_id].to_bytes())
            self.metrics.record_retransmissions(len(missing))

    def _on_upload_reply(self, packet: Packet):
        transfer = self.active_transfer
        if transfer is None or transfer.kind != "put" or packet.id not in transfer.fragments:
            logger.debug("ignoring %s %d outside an upload", packet.type, packet.id)
            return
        if packet.type == PacketType.ACK.value:
            transfer.acked.add(packet.id)
            if len(transfer.acked) == len(transfer.fragments):
                self._resolve(transfer.future, None)
            return
        attempts = transfer.retries.get(packet.id, 0) + 1
        if attempts > self.config.max_retries:
            self._fail_transfer(
                transfer, IntegrityError(f"Fragment {packet.id} rejected {attempts} times by the server")
            )
            return
        transfer.retries[packet.id] = attempts
        self.metrics.record_retransmissions()
        logger.info("server rejected fragment %d, resending (attempt %d)", packet.id, attempts)
        self._send_raw(transfer.fragments[packet.id].to_bytes())

    async def download(self, remote_name: str, local_path: Optional[str] = None) -> bytes:
        """
        Fetch remote_name. The reassembled bytes are returned and, when
        local_path is given, written there before completion is signalled.
        """
        self._require_authenticated()
        _check_name("remote file name", remote_name)
        self._require_idle()

        loop = asyncio.get_running_loop()
        transfer = Transfer(kind="get", file_name=remote_name, future=loop.create_future(), local_path=local_path)
        self.active_transfer = transfer

        def armed(detail):
            try:
                count = int(detail.split()[0])
            except (IndexError, ValueError):
                raise FormatError(f"bad GET response: {detail!r}")
            stray = [i for i in transfer.fragments if i > count]
            for frag_id in stray:
                del transfer.fragments[frag_id]
            if stray:
                logger.warning("dropped %d buffered fragment(s) beyond %d for %s", len(stray), count, remote_name)
            transfer.expected = count
            logger.info("downloading %s (%d fragments)", remote_name, count)
            self.events.emit(ClientEvent.DOWNLOAD_START, file_name=remote_name, expected_packets=count)
            self._arm_stall_timer(transfer)
            self._check_download(transfer)

        try:
            await self._call(PacketType.GET, remote_name, "get", armed)
            return await transfer.future
        finally:
            self._cancel_timer(transfer)
            if self.active_transfer is transfer:
                self.active_transfer = None
            if not transfer.future.done():
                transfer.future.cancel()

    def _arm_stall_timer(self, transfer: Transfer):
        self._cancel_timer(transfer)
        transfer.timer = asyncio.get_running_loop().call_later(
            self.config.timeout_ms / 1000.0, self._download_stalled, transfer
        )

    def _download_stalled(self, transfer: Transfer):
        transfer.timer = None
        if transfer.future.done():
            return
        self._fail_transfer(
            transfer,
            RequestTimeoutError(
                f"Download of {transfer.file_name} stalled at {len(transfer.fragments)}/{transfer.expected} fragments"
            ),
        )

    def _on_download_fragment(self, packet: Packet):
        transfer = self.active_transfer
        if transfer is None or transfer.kind != "get" or transfer.future.done():
            logger.warning("discarding GET_DATA %d with no download in progress", packet.id)
            return
        if not packet.verify():
            self.metrics.record_checksum_errors()
            logger.warning("checksum mismatch on fragment %d of %s", packet.id, transfer.file_name)
            self._send(PacketType.NACK, b"", packet.id)
            return
        if packet.id < 1 or (transfer.expected is not None and packet.id > transfer.expected):
            logger.warning("fragment %d out of range for %s", packet.id, transfer.file_name)
            return

        fresh = packet.id not in transfer.fragments
        transfer.fragments[packet.id] = Fragment.from_packet(packet)
        self._send(PacketType.ACK, b"", packet.id)
        if not fresh or transfer.expected is None:
            return
        self._arm_stall_timer(transfer)
        received = len(transfer.fragments)
        self.events.emit(
            ClientEvent.DOWNLOAD_PROGRESS,
            file_name=transfer.file_name,
            progress=round(received * 100 / transfer.expected),
            received=received,
            total=transfer.expected,
        )
        self._check_download(transfer)

    def _check_download(self, transfer: Transfer):
        if transfer.expected is None:
            return
        received = sum(1 for i in transfer.fragments if 1 <= i <= transfer.expected)
        if received < transfer.expected:
            return
        self._cancel_timer(transfer)
        try:
            data = reassemble(transfer.fragments.values(), expected=transfer.expected)
            if transfer.local_path:
                fileops.write_local(transfer.local_path, data)
        except OSError as e:
            self._fail_transfer(transfer, TransportError(f"Could not write {transfer.local_path}: {e}"))
            return
        except FTUDPError as e:
            self._fail_transfer(transfer, e)
            return
        self._resolve(transfer.future, data)
        self.metrics.record_transfer(len(data), transfer.started)
        logger.info("download of %s complete (%d bytes)", transfer.file_name, len(data))
        self.events.emit(
            ClientEvent.DOWNLOAD_COMPLETE,
            file_name=transfer.file_name,
            local_path=transfer.local_path,
            size=len(data),
        )

    def _fail_transfer(self, transfer: Transfer, exc: FTUDPError, notify: bool = True):
        if transfer.error is not None:
            return
        transfer.error = exc
        self._cancel_timer(transfer)
        logger.error("%s of %s failed: %s", transfer.kind, transfer.file_name, exc)
        if transfer.kind == "put":
            record = self.pending.pop(transfer.request_id, None)
            if record is not None:
                self._cancel_timer(record)
                self._reject(record.future, exc)
        else:
            self._reject(transfer.future, exc)
        if notify:
            self.events.emit(ClientEvent.ERROR, error=exc, message=str(exc), file_name=transfer.file_name)
