# ftudp/ftp_server.py
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from tools.metrics import Metrics
from transport.fragment import Fragment, fragment, reassemble
from transport.header import Packet, make_packet, unpack_packet
from transport.transport import DatagramEndpoint, open_endpoint

from . import fileops
from .config import ServerConfig
from .protocol import (
    RESPONSE_TYPES,
    AlreadyExistsError,
    AuthenticationError,
    FormatError,
    FTUDPError,
    IntegrityError,
    NotAuthenticatedError,
    NotEmptyError,
    NotFoundError,
    PacketType,
    PermissionDeniedError,
    Status,
    format_response,
)
from .sessions import DownloadRecord, Session, SessionTable, TransferTable, UploadRecord, session_key

logger = logging.getLogger("ftudp.server")


class FTPServer:
    """
    Command dispatcher. Every inbound datagram is decoded, checked for an
    authenticated session (except LOGIN) and routed to its handler. Handler
    failures are turned into responses here; nothing propagates to the loop.
    """

    def __init__(self, config: Optional[ServerConfig] = None, endpoint=None):
        self.config = config or ServerConfig.from_env()
        self.root = Path(self.config.root).resolve()
        os.makedirs(self.root, exist_ok=True)
        self.users = dict(self.config.users)
        self.sessions = SessionTable(self.config.session_idle)
        self.transfers = TransferTable()
        self.metrics = Metrics()
        self.endpoint = None
        self._sweep_handle = None
        self._handlers = {
            PacketType.LOGIN: self.handle_login,
            PacketType.PUT: self.handle_put,
            PacketType.PUT_DATA: self.handle_put_data,
            PacketType.GET: self.handle_get,
            PacketType.LS: self.handle_ls,
            PacketType.CD: self.handle_cd,
            PacketType.MKDIR: self.handle_mkdir,
            PacketType.RMDIR: self.handle_rmdir,
            PacketType.ACK: self.handle_ack,
            PacketType.NACK: self.handle_nack,
        }
        if endpoint is not None:
            self.attach(endpoint)

    # ------------------ lifecycle ------------------
    def attach(self, endpoint):
        self.endpoint = endpoint
        endpoint.set_callback(self.on_datagram)

    async def start(self) -> DatagramEndpoint:
        endpoint = await open_endpoint(
            (self.config.host, self.config.port), name="server", loss_rate=self.config.loss_rate
        )
        self.attach(endpoint)
        self._schedule_sweep()
        logger.info("serving %s on %s", self.root, endpoint.local_address)
        return endpoint

    @property
    def address(self):
        return self.endpoint.local_address if self.endpoint else None

    def close(self):
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
        for tid in list(self.transfers.uploads) + list(self.transfers.downloads):
            self.transfers.remove(tid)
        if self.endpoint is not None:
            self.endpoint.close()

    def _schedule_sweep(self):
        if self.config.session_idle <= 0:
            return
        interval = min(60.0, self.config.session_idle)
        self._sweep_handle = asyncio.get_running_loop().call_later(interval, self._sweep)

    def _sweep(self):
        for key in self.sessions.evict_idle():
            dropped = self.transfers.drop_session(key)
            if dropped:
                logger.info("dropped %d transfer(s) of evicted session %s", dropped, key)
        self._schedule_sweep()

    # ------------------ sending ------------------
    def send(self, addr, ptype, payload=b"", packet_id=0, checksum=0):
        raw = make_packet(packet_id, ptype, payload, checksum)
        self.endpoint.send_raw(raw, addr)
        self.metrics.record_sent(len(raw))

    def reply(self, addr, ptype, status: Status, detail="", packet_id=0):
        self.send(addr, ptype, format_response(status, detail), packet_id)

    def send_error(self, addr, message, packet_id=0):
        self.send(addr, PacketType.ERROR, message, packet_id)

    def _reply_failure(self, addr, ptype, packet: Packet, exc: FTUDPError):
        response_type = RESPONSE_TYPES.get(ptype)
        if ptype in (PacketType.PUT_DATA, PacketType.ACK, PacketType.NACK):
            # fragment ids overlap request ids on the client
            self.send_error(addr, str(exc), 0)
        elif response_type is None or isinstance(exc, NotAuthenticatedError):
            self.send_error(addr, str(exc), packet.id)
        elif Status(exc.status) is Status.ERROR:
            self.reply(addr, response_type, Status.ERROR, str(exc), packet.id)
        else:
            self.reply(addr, response_type, Status(exc.status), packet_id=packet.id)

    # ------------------ dispatch ------------------
    def on_datagram(self, data: bytes, addr):
        self.metrics.record_received(len(data))
        try:
            packet = unpack_packet(data)
        except FormatError as e:
            logger.warning("bad packet from %s: %s", session_key(addr), e)
            self._safe_send_error(addr, f"Bad packet format: {e}", 0)
            return
        logger.debug("packet from %s: %s (id %d, %d bytes)", session_key(addr), packet.type, packet.id, packet.data_size)
        self.dispatch(packet, addr)

    def dispatch(self, packet: Packet, addr):
        try:
            ptype = PacketType(packet.type)
        except ValueError:
            ptype = None
        handler = self._handlers.get(ptype)
        if handler is None:
            logger.warning("unrecognized command %r from %s", packet.type, session_key(addr))
            self._safe_send_error(addr, f"Unrecognized command: {packet.type}", packet.id)
            return

        try:
            session = None if ptype is PacketType.LOGIN else self.sessions.require(addr)
            handler(packet, addr, session)
        except FTUDPError as e:
            logger.info("%s from %s failed: %s", ptype.value, session_key(addr), e)
            self._report_failure(addr, ptype, packet, e)
        except OSError as e:
            logger.error("%s from %s failed: %s", ptype.value, session_key(addr), e)
            self._report_failure(addr, ptype, packet, FTUDPError(f"{e.strerror or e}"))
        except Exception as e:
            logger.exception("%s handler crashed for %s", ptype.value, session_key(addr))
            self._safe_send_error(addr, f"Internal error: {e}", packet.id)

    def _report_failure(self, addr, ptype, packet, exc):
        try:
            self._reply_failure(addr, ptype, packet, exc)
        except FTUDPError as send_exc:
            logger.error("could not report failure to %s: %s", session_key(addr), send_exc)

    def _safe_send_error(self, addr, message, packet_id):
        try:
            self.send_error(addr, message, packet_id)
        except FTUDPError as e:
            logger.error("could not send error to %s: %s", session_key(addr), e)

    def _resolve(self, session: Session, name: str) -> Path:
        return fileops.to_real(self.root, fileops.virtual_join(session.current_dir, name))

    @staticmethod
    def _argument(packet: Packet, what: str) -> str:
        arg = packet.payload.decode("utf-8", errors="replace").strip()
        if not arg:
            raise FormatError(f"missing {what}")
        return arg

    # ------------------ handlers ------------------
    def handle_login(self, packet: Packet, addr, _session):
        credentials = packet.payload.decode("utf-8", errors="replace").split(" ")
        if len(credentials) != 2 or not all(credentials):
            raise FormatError("Invalid format, expected '<username> <password>'")
        username, password = credentials
        expected = self.users.get(username)
        if expected is None:
            raise AuthenticationError(f"unknown user {username}", Status.USER_NOT_FOUND)
        if expected != password:
            raise AuthenticationError(f"wrong password for {username}", Status.WRONG_PASSWORD)

        key = session_key(addr)
        if self.transfers.drop_session(key):
            logger.info("re-login from %s dropped its transfers", key)
        self.sessions.login(addr, username)
        self.reply(addr, PacketType.LOGIN_RESPONSE, Status.SUCCESS, packet_id=packet.id)
        logger.info("user %s logged in from %s", username, key)

    def handle_put(self, packet: Packet, addr, session: Session):
        parts = packet.payload.decode("utf-8", errors="replace").strip().split(" ")
        if len(parts) != 2:
            raise FormatError("expected '<filename> <fragmentCount>'")
        filename, count = parts
        try:
            expected = int(count)
        except ValueError:
            raise FormatError(f"fragment count is not a number: {count!r}")
        if expected < 0:
            raise FormatError("fragment count must not be negative")

        target = self._resolve(session, filename)
        if target == self.root or target.is_dir():
            raise FTUDPError(f"{filename} is a directory")

        stale = self.transfers.upload_for(session.key)
        if stale is not None:
            logger.warning("replacing unfinished upload %s of %s", stale.transfer_id, session.key)
            self.transfers.remove(stale.transfer_id)

        record = UploadRecord(
            transfer_id=self.transfers.new_transfer_id("put", session.key),
            filename=filename,
            target_path=target,
            session_key=session.key,
            request_id=packet.id,
            expected=expected,
        )
        self.transfers.add_upload(record)
        logger.info("receiving %s (%d fragments) from %s", filename, expected, session.key)
        self.reply(addr, PacketType.PUT_RESPONSE, Status.SUCCESS, record.transfer_id, packet.id)

        if expected == 0:
            self._finalize_upload(record, addr)
        else:
            self._arm_upload_timer(record, addr)

    def handle_put_data(self, packet: Packet, addr, session: Session):
        record = self.transfers.upload_for(session.key)
        if record is None:
            raise FTUDPError("No upload in progress")
        if not packet.verify():
            self.metrics.record_checksum_errors()
            logger.warning("checksum mismatch on fragment %d of %s", packet.id, record.filename)
            self.send(addr, PacketType.NACK, b"", packet.id)
            return
        if not 1 <= packet.id <= record.expected:
            logger.warning("fragment %d outside 1..%d for %s", packet.id, record.expected, record.filename)
            return

        fresh = record.add(Fragment.from_packet(packet))
        self.send(addr, PacketType.ACK, b"", packet.id)
        if not fresh:
            logger.debug("duplicate fragment %d of %s", packet.id, record.filename)
            return
        logger.debug("fragment %d received (%d/%d)", packet.id, record.received_count, record.expected)
        if record.is_complete:
            self._finalize_upload(record, addr)
        else:
            self._arm_upload_timer(record, addr)

    def _arm_upload_timer(self, record: UploadRecord, addr):
        if record.timer is not None:
            record.timer.cancel()
        record.timer = asyncio.get_running_loop().call_later(
            self.config.transfer_idle, self._abort_upload, record.transfer_id, addr
        )

    def _abort_upload(self, transfer_id: str, addr):
        record = self.transfers.remove(transfer_id)
        if record is None:
            return
        logger.warning(
            "upload %s stalled at %d/%d fragments, aborting",
            record.filename, record.received_count, record.expected,
        )
        try:
            self.reply(
                addr, PacketType.PUT_RESPONSE, Status.ERROR,
                f"Upload stalled: received {record.received_count}/{record.expected} fragments",
                record.request_id,
            )
        except FTUDPError as e:
            logger.error("could not report stalled upload to %s: %s", record.session_key, e)

    def _finalize_upload(self, record: UploadRecord, addr):
        self.transfers.remove(record.transfer_id)
        try:
            data = reassemble(record.fragments.values(), expected=record.expected)
            size = fileops.save_file(record.target_path, data)
        except (IntegrityError, OSError) as e:
            logger.error("failed to store %s: %s", record.target_path, e)
            self.reply(addr, PacketType.PUT_RESPONSE, Status.ERROR, f"Could not save file: {e}", record.request_id)
            return
        self.metrics.record_transfer(size, record.started)
        logger.info("stored %s (%d bytes)", record.target_path, size)
        self.reply(addr, PacketType.PUT_RESPONSE, Status.SUCCESS, str(size), record.request_id)

    def handle_get(self, packet: Packet, addr, session: Session):
        filename = self._argument(packet, "file name")
        path = self._resolve(session, filename)
        if not path.is_file():
            raise NotFoundError(f"{filename} not found", Status.FILE_NOT_FOUND)

        data = fileops.read_file(path)
        fragments = fragment(data, PacketType.GET_DATA)
        self.reply(addr, PacketType.GET_RESPONSE, Status.SUCCESS, str(len(fragments)), packet.id)
        logger.info("sending %s (%d bytes, %d fragments) to %s", filename, len(data), len(fragments), session.key)
        if not fragments:
            return

        stale = self.transfers.download_for(session.key)
        if stale is not None:
            self.transfers.remove(stale.transfer_id)
        record = DownloadRecord(
            transfer_id=self.transfers.new_transfer_id("get", session.key),
            filename=filename,
            session_key=session.key,
            addr=addr,
            fragments={f.id: f for f in fragments},
            size=len(data),
        )
        self.transfers.add_download(record)
        record.task = asyncio.get_running_loop().create_task(self._stream_download(record))

    async def _stream_download(self, record: DownloadRecord):
        pace = self.config.pace_ms / 1000.0
        for frag_id in sorted(record.fragments):
            if record.transfer_id not in self.transfers.downloads:
                return
            try:
                self._send_fragment(record, record.fragments[frag_id])
            except FTUDPError as e:
                logger.error("download of %s aborted: %s", record.filename, e)
                self.transfers.remove(record.transfer_id)
                return
            if pace:
                await asyncio.sleep(pace)
        if record.transfer_id in self.transfers.downloads:
            self._arm_download_timer(record)

    def _send_fragment(self, record: DownloadRecord, frag: Fragment):
        raw = frag.to_bytes()
        self.endpoint.send_raw(raw, record.addr)
        self.metrics.record_sent(len(raw))

    def _arm_download_timer(self, record: DownloadRecord):
        if record.timer is not None:
            record.timer.cancel()
        record.timer = asyncio.get_running_loop().call_later(
            self.config.transfer_idle, self._expire_download, record.transfer_id
        )

    def _expire_download(self, transfer_id: str):
        record = self.transfers.remove(transfer_id)
        if record is not None:
            logger.warning(
                "download %s: %d fragment(s) never acknowledged, dropping",
                record.filename, len(record.unacked),
            )

    def handle_ack(self, packet: Packet, addr, session: Session):
        record = self.transfers.download_for(session.key)
        if record is None:
            logger.debug("ACK %d from %s with no download in progress", packet.id, session.key)
            return
        record.unacked.discard(packet.id)
        if record.unacked:
            if record.timer is not None:
                self._arm_download_timer(record)
            return
        self.transfers.remove(record.transfer_id)
        self.metrics.record_transfer(record.size, record.started)
        logger.info("download of %s acknowledged by %s", record.filename, session.key)

    def handle_nack(self, packet: Packet, addr, session: Session):
        record = self.transfers.download_for(session.key)
        frag = record.fragments.get(packet.id) if record else None
        if frag is None:
            logger.debug("NACK %d from %s matches no download fragment", packet.id, session.key)
            return
        attempts = record.retries.get(packet.id, 0) + 1
        if attempts > self.config.max_retries:
            self.transfers.remove(record.transfer_id)
            raise IntegrityError(f"Fragment {packet.id} of {record.filename} rejected {attempts} times")
        record.retries[packet.id] = attempts
        self.metrics.record_retransmissions()
        logger.info("resending fragment %d of %s (attempt %d)", packet.id, record.filename, attempts)
        self._send_fragment(record, frag)

    def handle_ls(self, packet: Packet, addr, session: Session):
        path = fileops.to_real(self.root, session.current_dir)
        if not path.is_dir():
            raise NotFoundError(f"{session.current_dir} no longer exists", Status.DIRECTORY_NOT_FOUND)
        listing = "\n".join(fileops.list_dir(path))
        self.send(addr, PacketType.LS_RESPONSE, f"{Status.SUCCESS.value}\n{listing}", packet.id)

    def handle_cd(self, packet: Packet, addr, session: Session):
        name = self._argument(packet, "directory name")
        if name == "..":
            session.current_dir = fileops.virtual_parent(session.current_dir)
        else:
            target = fileops.virtual_join(session.current_dir, name)
            if not fileops.to_real(self.root, target).is_dir():
                raise NotFoundError(f"{target} not found", Status.DIRECTORY_NOT_FOUND)
            session.current_dir = target
        self.reply(addr, PacketType.CD_RESPONSE, Status.SUCCESS, session.current_dir, packet.id)

    def handle_mkdir(self, packet: Packet, addr, session: Session):
        name = self._argument(packet, "directory name")
        path = self._resolve(session, name)
        if path.exists():
            raise AlreadyExistsError(f"{name} already exists")
        try:
            os.mkdir(path)
        except FileNotFoundError:
            raise NotFoundError(f"parent of {name} not found", Status.DIRECTORY_NOT_FOUND)
        logger.info("%s created %s", session.username, path)
        self.reply(addr, PacketType.MKDIR_RESPONSE, Status.SUCCESS, packet_id=packet.id)

    def handle_rmdir(self, packet: Packet, addr, session: Session):
        name = self._argument(packet, "directory name")
        vpath = fileops.virtual_join(session.current_dir, name)
        cwd = session.current_dir
        if vpath == "/" or cwd == vpath or cwd.startswith(vpath + "/"):
            raise PermissionDeniedError(f"cannot remove {vpath}")
        path = fileops.to_real(self.root, vpath)
        if not path.exists():
            raise NotFoundError(f"{name} not found", Status.DIRECTORY_NOT_FOUND)
        if not path.is_dir():
            raise FTUDPError(f"{name} is not a directory")
        if any(path.iterdir()):
            raise NotEmptyError(f"{name} is not empty")
        os.rmdir(path)
        logger.info("%s removed %s", session.username, path)
        self.reply(addr, PacketType.RMDIR_RESPONSE, Status.SUCCESS, packet_id=packet.id)


async def main(config: Optional[ServerConfig] = None):
    server = FTPServer(config)
    await server.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        server.close()


if __name__ == "__main__":
    from .logutil import setup_logging

    setup_logging()
    asyncio.run(main())
