import asyncio
import logging
import ssl
import uuid
from typing import Any, Dict, Optional

from . import messages as m
from .config import PeerServerConfig
from .errors import ErrorKind, SMPPeerError
from .framing import encode_frame, read_frame, write_frame
from .transport import (
    ConnectionCallback,
    DataConnection,
    DisconnectedCallback,
    ErrorCallback,
    PeerLink,
)

"""
link.py — the default PeerLink: one TCP (or TLS) stream to a PeerServer.

Data connections are logical: every DATA frame goes through the peer server,
tagged with a conn_id, and the server relays it to the other end. One stream
carries the registration and all of our data connections.
"""

logger = logging.getLogger(__name__)


class StreamDataConnection(DataConnection):
    """A data connection multiplexed over the link's server stream."""

    def __init__(self, link: "StreamPeerLink", conn_id: str, peer: str) -> None:
        self.link = link
        self.conn_id = conn_id
        self.peer = peer
        self.closed = False
        self._inbox: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise SMPPeerError(ErrorKind.CONNECTION_CLOSED, f"connection to {self.peer} is closed")
        env = m.new_envelope(m.DATA, from_id=self.link.id, to_id=self.peer)
        env["body"] = {"conn_id": self.conn_id, "data": m.encode_data(data)}
        await self.link.send_envelope(env)

    async def recv(self) -> Optional[bytes]:
        if self.closed and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        if self.closed:
            return
        self.feed_eof()
        self.link.forget(self.conn_id)
        if self.link.is_open:
            env = m.new_envelope(m.CLOSE, from_id=self.link.id, to_id=self.peer)
            env["body"] = {"conn_id": self.conn_id}
            try:
                await self.link.send_envelope(env)
            except (ConnectionError, SMPPeerError) as exc:
                logger.debug("CLOSE for %s not delivered: %s", self.conn_id, exc)

    # Called by the link's reader loop.
    def feed(self, data: bytes) -> None:
        if not self.closed:
            self._inbox.put_nowait(data)

    def feed_eof(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)


class StreamPeerLink(PeerLink):
    """
    Registers with a PeerServer over asyncio streams and opens data
    connections through it.
    """

    def __init__(self, peer_id: Optional[str], config: PeerServerConfig) -> None:
        self.requested_id = peer_id
        self.config = config
        self.id: Optional[str] = None
        self._key = config.auth_key_bytes()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._write_lock = asyncio.Lock()
        self._reader_task: Optional["asyncio.Task[None]"] = None
        self._registered: Optional["asyncio.Future[str]"] = None
        self._pending_opens: Dict[str, "asyncio.Future[None]"] = {}
        self._conns: Dict[str, StreamDataConnection] = {}

        self._cb_connection: Optional[ConnectionCallback] = None
        self._cb_disconnected: Optional[DisconnectedCallback] = None
        self._cb_error: Optional[ErrorCallback] = None

    def on_connection(self, cb: ConnectionCallback) -> None:
        self._cb_connection = cb

    def on_disconnected(self, cb: DisconnectedCallback) -> None:
        self._cb_disconnected = cb

    def on_error(self, cb: ErrorCallback) -> None:
        self._cb_error = cb

    @property
    def is_open(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def open(self) -> str:
        """Connect to the peer server, send REGISTER and wait for REGISTERED."""
        ssl_ctx = ssl.create_default_context() if self.config.secure else None
        self._reader, self._writer = await asyncio.open_connection(
            self.config.host, self.config.port, ssl=ssl_ctx
        )
        self._registered = asyncio.get_running_loop().create_future()

        hello = m.new_envelope(m.REGISTER, from_id=self.requested_id)
        hello["body"] = {"path": self.config.path}
        await self.send_envelope(hello)

        self._reader_task = asyncio.ensure_future(self._reader_loop())
        return await self._registered

    async def connect(self, remote_peer_id: str) -> DataConnection:
        """Ask the server to open a connection to `remote_peer_id`; wait for OPEN."""
        conn_id = str(uuid.uuid4())
        opened: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        conn = StreamDataConnection(self, conn_id, remote_peer_id)
        self._pending_opens[conn_id] = opened
        self._conns[conn_id] = conn

        env = m.new_envelope(m.CONNECT, from_id=self.id, to_id=remote_peer_id)
        env["body"] = {"conn_id": conn_id}
        try:
            await self.send_envelope(env)
            await opened
        except BaseException:
            self._conns.pop(conn_id, None)
            raise
        finally:
            self._pending_opens.pop(conn_id, None)
        return conn

    def disconnect(self) -> None:
        """Say LEAVE and close the stream. The reader loop reports `disconnected`."""
        if self._writer is None or self._writer.is_closing():
            return
        leave = m.sign_envelope(m.new_envelope(m.LEAVE, from_id=self.id), self._key)
        try:
            self._writer.write(encode_frame(leave))
        except (ConnectionError, RuntimeError) as exc:
            logger.debug("LEAVE not sent: %s", exc)
        self._writer.close()

    async def send_envelope(self, env: Dict[str, Any]) -> None:
        if self._writer is None or self._writer.is_closing():
            raise SMPPeerError(ErrorKind.SERVER_UNCONNECTED, "peer server connection is closed")
        m.sign_envelope(env, self._key)
        async with self._write_lock:
            await write_frame(self._writer, env)

    def forget(self, conn_id: str) -> None:
        self._conns.pop(conn_id, None)

    # -------------------------
    # Inbound frames
    # -------------------------

    async def _reader_loop(self) -> None:
        """Background task: read frames from the server until the stream ends."""
        assert self._reader is not None
        try:
            while True:
                frame = await read_frame(self._reader)
                if frame is None:
                    break
                if not m.verify_envelope(frame, self._key):
                    logger.warning("Dropping %s with a bad signature", frame.get("msg_type"))
                    continue
                await self._process_frame(frame)
        except asyncio.IncompleteReadError:
            # Server went away mid-frame; nothing to do.
            pass
        except (ConnectionError, ValueError, SMPPeerError) as exc:
            logger.warning("Peer server connection error: %s", exc)
            self._emit_error(str(exc))
        finally:
            self._teardown()

    async def _process_frame(self, frame: Dict[str, Any]) -> None:
        msg_type = frame.get("msg_type")
        body = frame.get("body") or {}
        conn_id = body.get("conn_id")

        if msg_type == m.REGISTERED:
            self.id = body.get("assigned_id")
            if self._registered is not None and not self._registered.done():
                self._registered.set_result(self.id)
            return

        if msg_type == m.ERROR:
            error = body.get("error", "UNKNOWN")
            detail = body.get("detail", "")
            message = f"{error}: {detail}" if detail else error
            self._fail_registration(f"peer server rejected registration: {message}")
            opened = self._pending_opens.get(conn_id) if conn_id else None
            if opened is not None and not opened.done():
                kind = ErrorKind.PEER_UNAVAILABLE if error == m.ERR_PEER_UNAVAILABLE else ErrorKind.SERVER_FAULT
                opened.set_exception(SMPPeerError(kind, message))
            elif conn_id in self._conns:
                self._conns.pop(conn_id).feed_eof()
            self._emit_error(message)
            return

        if msg_type == m.CONNECT:
            # A remote peer wants a data connection with us.
            remote = frame.get("from")
            if not conn_id or not remote:
                return
            conn = StreamDataConnection(self, conn_id, remote)
            self._conns[conn_id] = conn
            accept = m.new_envelope(m.OPEN, from_id=self.id, to_id=remote)
            accept["body"] = {"conn_id": conn_id}
            await self.send_envelope(accept)
            if self._cb_connection is not None:
                self._cb_connection(conn)
            return

        if msg_type == m.OPEN:
            opened = self._pending_opens.get(conn_id)
            if opened is not None and not opened.done():
                opened.set_result(None)
            return

        if msg_type == m.DATA:
            conn = self._conns.get(conn_id)
            if conn is None:
                logger.debug("DATA for unknown connection %s", conn_id)
                return
            try:
                conn.feed(m.decode_data(body.get("data", "")))
            except (ValueError, TypeError) as exc:
                logger.warning("Malformed DATA from %s: %s", frame.get("from"), exc)
            return

        if msg_type == m.CLOSE:
            conn = self._conns.pop(conn_id, None)
            if conn is not None:
                conn.feed_eof()
            return

        logger.debug("Ignoring %s from peer server", msg_type)

    def _emit_error(self, message: str) -> None:
        if self._cb_error is not None:
            self._cb_error(message)

    def _fail_registration(self, message: str) -> None:
        registered = self._registered
        if registered is None or registered.done():
            return
        registered.set_exception(SMPPeerError(ErrorKind.SERVER_FAULT, message))
        # open() may have stopped awaiting it; mark it retrieved either way.
        registered.exception()

    def _teardown(self) -> None:
        """Fail whatever is still waiting and report `disconnected` once."""
        was_registered = self._registered is not None and self._registered.done() \
            and not self._registered.cancelled() and self._registered.exception() is None
        self._fail_registration("peer server closed the connection before registration")
        for opened in self._pending_opens.values():
            if not opened.done():
                opened.set_exception(SMPPeerError(ErrorKind.CONNECTION_CLOSED, "peer server connection closed"))
        for conn in list(self._conns.values()):
            conn.feed_eof()
        self._conns.clear()
        if self._writer is not None:
            self._writer.close()
        if was_registered and self._cb_disconnected is not None:
            self._cb_disconnected()
