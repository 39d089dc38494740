import asyncio
import logging
import secrets
import ssl
from collections import deque
from typing import Any, Deque, Dict, Optional, Set, Tuple

from . import messages as m
from .framing import read_frame, write_frame

"""
server.py — the peer server: a meet-me point that also relays data connections.

What it does:
- REGISTER:  hands out peer ids (the requested one, or a random one) and keeps
             a live directory of who is connected.
- CONNECT / OPEN / DATA / CLOSE: forwarded to `to`, with `from` overwritten by
             the sender's registered id so nobody can speak for someone else.
- When a peer leaves or drops, the other end of each of its connections gets a CLOSE.

Safety rails:
- With a shared HMAC key configured, unsigned or badly signed frames are dropped.
- Coarse replay protection on msg_id.
"""

logger = logging.getLogger(__name__)

REPLAY_CACHE_SIZE = 16384
PEER_ID_BYTES = 32


class ConnectionContext:
    """Tiny wrapper to keep reader/writer and the peer_id registered on it."""
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.peer_id: Optional[str] = None
        self.write_lock = asyncio.Lock()

    async def send(self, env: Dict[str, Any]) -> None:
        async with self.write_lock:
            await write_frame(self.writer, env)


class PeerServer:
    """
    Discovery + relay service for SMPPeer.

        server = PeerServer("127.0.0.1", 9000)
        await server.start()
        await server.serve_forever()
    """
    def __init__(
        self,
        host: str,
        port: int,
        path: str = "/smp",
        auth_key: Optional[bytes] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.path = path
        self.auth_key = auth_key
        self.ssl_context = ssl_context
        self.peers: Dict[str, ConnectionContext] = {}
        # conn_id -> (initiator id, responder id)
        self.routes: Dict[str, Tuple[str, str]] = {}
        self._msg_cache: Set[str] = set()
        self._msg_order: Deque[str] = deque()
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Bind and start accepting. Port 0 picks a free port (see `self.port`)."""
        self._server = await asyncio.start_server(
            self.handle_conn, self.host, self.port, ssl=self.ssl_context
        )
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        addrs = ", ".join(str(sock.getsockname()) for sock in sockets)
        logger.info("Peer server listening on %s (path %s)", addrs, self.path)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for ctx in list(self.peers.values()):
            ctx.writer.close()
        await self._server.wait_closed()

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read frames and pass to process_frame()."""
        ctx = ConnectionContext(reader, writer)
        try:
            while True:
                frame = await read_frame(reader)
                if frame is None:
                    break
                if not m.verify_envelope(frame, self.auth_key):
                    logger.warning("Dropping %s with a bad signature", frame.get("msg_type"))
                    continue
                if not await self.process_frame(ctx, frame):
                    break
        except asyncio.IncompleteReadError:
            # Peer went away mid-frame; nothing to do.
            pass
        except (ConnectionError, ValueError) as exc:
            logger.warning("Conn error from %s: %s", ctx.peer_id or "unregistered peer", exc)
        finally:
            await self.unregister(ctx)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass

    async def process_frame(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> bool:
        """Handle one frame. Returns False when the connection should be closed."""
        msg_type = frame.get("msg_type")
        msg_id = frame.get("msg_id")

        # Coarse replay protection.
        if msg_id:
            if msg_id in self._msg_cache:
                return True
            self._remember(msg_id)

        if msg_type == m.REGISTER:
            await self.register(ctx, frame)
            return True

        if ctx.peer_id is None:
            await self.send(ctx, m.error_envelope(None, m.ERR_NOT_REGISTERED, "send REGISTER first"))
            return True

        if msg_type == m.LEAVE:
            logger.info("Peer %s left", ctx.peer_id)
            return False

        if msg_type in m.RELAYED:
            await self.relay(ctx, frame)
            return True

        logger.debug("Ignoring %s from %s", msg_type, ctx.peer_id)
        return True

    async def register(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> None:
        body = frame.get("body") or {}
        if ctx.peer_id is not None:
            await self.send(ctx, m.error_envelope(ctx.peer_id, m.ERR_ID_TAKEN, "already registered on this connection"))
            return
        if body.get("path") != self.path:
            await self.send(ctx, m.error_envelope(None, m.ERR_INVALID_PATH, f"this server serves {self.path}"))
            return

        requested = frame.get("from")
        if requested is not None and (not isinstance(requested, str) or not requested):
            await self.send(ctx, m.error_envelope(None, m.ERR_ID_TAKEN, "invalid id"))
            return
        if requested in self.peers:
            await self.send(ctx, m.error_envelope(None, m.ERR_ID_TAKEN, f"id {requested} is taken"))
            logger.info("Rejected duplicate REGISTER for %s", requested)
            return

        peer_id = requested or self._new_peer_id()
        ctx.peer_id = peer_id
        self.peers[peer_id] = ctx
        logger.info("Registered peer %s", peer_id)

        resp = m.new_envelope(m.REGISTERED, from_id=None, to_id=peer_id)
        resp["body"] = {"assigned_id": peer_id}
        await self.send(ctx, resp)

    async def relay(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> None:
        """Forward a connection frame to its target, tracking open routes."""
        msg_type = frame.get("msg_type")
        body = frame.get("body") or {}
        conn_id = body.get("conn_id")
        target_id = frame.get("to")
        sender = ctx.peer_id
        assert sender is not None

        if not isinstance(conn_id, str) or not conn_id:
            return
        target = self.peers.get(target_id) if isinstance(target_id, str) else None
        if target is None:
            # Routes to a peer that left were dropped in unregister().
            if msg_type != m.CLOSE:
                await self.send(ctx, m.error_envelope(
                    sender, m.ERR_PEER_UNAVAILABLE, f"could not connect to peer {target_id}", conn_id=conn_id,
                ))
            return

        route = self.routes.get(conn_id)
        if msg_type == m.CONNECT:
            if route is not None:
                await self.send(ctx, m.error_envelope(
                    sender, m.ERR_CONN_EXISTS, f"connection {conn_id} already exists", conn_id=conn_id,
                ))
                return
            self.routes[conn_id] = (sender, target_id)
        elif route not in ((sender, target_id), (target_id, sender)):
            # OPEN/DATA/CLOSE must belong to a connection between exactly these two peers.
            logger.debug("Dropping %s on unknown route %s", msg_type, conn_id)
            return
        elif msg_type == m.CLOSE:
            del self.routes[conn_id]

        frame["from"] = sender
        try:
            await self.send(target, frame)
        except ConnectionError as exc:
            # The target's own handle_conn loop will notice and clean up.
            logger.warning("Relay to %s failed: %s", target_id, exc)

    async def unregister(self, ctx: ConnectionContext) -> None:
        """Forget a peer and close the far end of each of its connections."""
        peer_id = ctx.peer_id
        if peer_id is None or self.peers.get(peer_id) is not ctx:
            return
        del self.peers[peer_id]
        for conn_id, (a, b) in list(self.routes.items()):
            if peer_id not in (a, b):
                continue
            del self.routes[conn_id]
            other = self.peers.get(b if a == peer_id else a)
            if other is None:
                continue
            close = m.new_envelope(m.CLOSE, from_id=peer_id, to_id=other.peer_id)
            close["body"] = {"conn_id": conn_id}
            try:
                await self.send(other, close)
            except ConnectionError:
                pass
        logger.info("Unregistered peer %s", peer_id)

    async def send(self, ctx: ConnectionContext, env: Dict[str, Any]) -> None:
        await ctx.send(m.sign_envelope(env, self.auth_key))

    def _remember(self, msg_id: str) -> None:
        self._msg_cache.add(msg_id)
        self._msg_order.append(msg_id)
        if len(self._msg_order) > REPLAY_CACHE_SIZE:
            self._msg_cache.discard(self._msg_order.popleft())

    def _new_peer_id(self) -> str:
        while True:
            peer_id = secrets.token_hex(PEER_ID_BYTES)
            if peer_id not in self.peers:
                return peer_id
