import asyncio
import logging
from enum import Enum
from typing import List, Optional, Set, Union

from .config import DEFAULT_PEER_SERVER_CONFIG, DEFAULT_TIMEOUT_MS, PeerServerConfig, configure_logging
from .engine import BytesCodec, EngineFactory, MessageCodec
from .errors import ErrorKind, SMPPeerError
from .events import Callback, EventDispatcher, EventKind
from .link import StreamPeerLink
from .session import ProtocolSession
from .transport import DataConnection, LinkFactory, PeerLink

"""
peer.py — SMPPeer, the session orchestrator.

Typical use:

    alice = SMPPeer("my secret", "alice", engine_factory=SMPStateMachine)
    alice.on("incoming", lambda peer_id, result: print(peer_id, result))
    await alice.connect_to_peer_server()
    same = await alice.run_smp("bob")

Everything runs on one event loop. Each session gets its own engine and its
own bridge task; sessions only share the registration state and the event
dispatcher, both touched synchronously from callbacks.
"""

logger = logging.getLogger(__name__)


class RegistrationState(Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    DISCONNECTED = "disconnected"


class SMPPeer:
    """
    Runs SMP with other peers found through a peer server.

    Args:
        secret: What we compare with the remote peer.
        local_peer_id: The id we ask the peer server for. The server picks one if None.
        peer_server_config: Where the peer server is. Defaults to DEFAULT_PEER_SERVER_CONFIG.
        timeout_ms: Bound on registration and on each SMP session.
        engine_factory: Builds a fresh SMP state machine from the secret.
        codec: Turns engine messages into bytes and back.
        link_factory: Builds the peer-server link (StreamPeerLink by default).
    """

    def __init__(
        self,
        secret: str,
        local_peer_id: Optional[str] = None,
        peer_server_config: PeerServerConfig = DEFAULT_PEER_SERVER_CONFIG,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        *,
        engine_factory: EngineFactory,
        codec: Optional[MessageCodec] = None,
        link_factory: Optional[LinkFactory] = None,
    ) -> None:
        self.secret = secret
        self.local_peer_id = local_peer_id
        self.peer_server_config = peer_server_config
        self.timeout_ms = timeout_ms
        self.state = RegistrationState.UNREGISTERED
        self.events = EventDispatcher()

        self._engine_factory = engine_factory
        self._codec = codec or BytesCodec()
        self._link_factory: LinkFactory = link_factory or StreamPeerLink
        self._link: Optional[PeerLink] = None
        # The link being registered, and inbound connections it delivered
        # before connect_to_peer_server() resumed.
        self._pending_link: Optional[PeerLink] = None
        self._backlog: List[DataConnection] = []
        self._peer_id: Optional[str] = None
        # Strong refs so inbound session tasks aren't garbage collected mid-run.
        self._tasks: Set["asyncio.Task[None]"] = set()

        configure_logging(peer_server_config.debug)

    @property
    def timeout(self) -> float:
        """The session bound in seconds."""
        return self.timeout_ms / 1000.0

    @property
    def id(self) -> str:
        """
        Our peer id, as confirmed by the peer server.
        Raises SERVER_UNCONNECTED before the first successful registration.
        """
        if self._peer_id is None:
            raise SMPPeerError(
                ErrorKind.SERVER_UNCONNECTED,
                "need to be connected to a peer server to discover other peers",
            )
        return self._peer_id

    @property
    def is_connected(self) -> bool:
        return self.state is RegistrationState.REGISTERED

    # -------------------------
    # Registration
    # -------------------------

    async def connect_to_peer_server(self) -> None:
        """
        Register with the peer server and wait until it confirms.

        Raises:
            SMPPeerError(SERVER_FAULT): the server confirmed a different id than we asked for,
                or refused the registration.
            SMPPeerError(TIMEOUT): no confirmation within `timeout_ms`.
            SMPPeerError(ALREADY_CONNECTED): a registration is live or in progress.
        """
        if self.state in (RegistrationState.REGISTERING, RegistrationState.REGISTERED):
            raise SMPPeerError(ErrorKind.ALREADY_CONNECTED, f"peer is {self.state.value}")
        previous = self.state
        self.state = RegistrationState.REGISTERING

        link = self._link_factory(self.local_peer_id, self.peer_server_config)
        link.on_connection(lambda conn: self._on_connection(link, conn))
        link.on_disconnected(lambda: self._on_disconnected(link))
        link.on_error(lambda error: self._on_error(link, error))
        self._pending_link = link

        try:
            peer_id = await asyncio.wait_for(link.open(), self.timeout)
        except asyncio.TimeoutError:
            self._abandon(link, previous)
            raise SMPPeerError(ErrorKind.TIMEOUT, "peer server did not confirm registration before timeout") from None
        except BaseException:
            self._abandon(link, previous)
            raise

        # Sanity check
        # If we expect our id to be `local_peer_id` but the peer server returns another one,
        # something is wrong between us and the server.
        if self.local_peer_id is not None and peer_id != self.local_peer_id:
            self._abandon(link, previous)
            raise SMPPeerError(
                ErrorKind.SERVER_FAULT,
                "the returned id from the peer server is not the one we expect: "
                f"returned={peer_id}, expected={self.local_peer_id}",
            )

        self._pending_link = None
        self._link = link
        self._peer_id = peer_id
        self.state = RegistrationState.REGISTERED
        logger.debug("Registered with peer server as %s", peer_id)
        self.events.emit(EventKind.SERVER_CONNECTED)

        backlog, self._backlog = self._backlog, []
        for conn in backlog:
            self._accept(conn)

    def _abandon(self, link: PeerLink, previous: RegistrationState) -> None:
        """Undo a failed registration attempt: state, link and early connections."""
        self.state = previous
        self._pending_link = None
        backlog, self._backlog = self._backlog, []
        for conn in backlog:
            self._spawn(conn.close())
        link.disconnect()

    def disconnect(self) -> None:
        """Disconnect from the peer server. `disconnected` fires once the link closes."""
        link = self._require_link("need to be connected to a peer server to disconnect")
        link.disconnect()

    def _require_link(self, message: str) -> PeerLink:
        if self.state is not RegistrationState.REGISTERED or self._link is None:
            raise SMPPeerError(ErrorKind.SERVER_UNCONNECTED, message)
        return self._link

    # -------------------------
    # Outgoing SMP
    # -------------------------

    async def run_smp(self, remote_peer_id: str) -> bool:
        """
        Run SMP with `remote_peer_id`. Registration is required first.

        Returns:
            True iff our secret equals the remote peer's secret.

        Raises:
            SMPPeerError(SERVER_UNCONNECTED): not registered with a peer server.
            SMPPeerError(TIMEOUT): the session didn't finish within `timeout_ms`.
            SMPPeerError(PEER_UNAVAILABLE / CONNECTION_CLOSED): see the link.
        """
        link = self._require_link("need to be connected to a peer server to discover other peers")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        logger.debug("Connecting %s...", remote_peer_id)
        try:
            conn = await asyncio.wait_for(link.connect(remote_peer_id), self.timeout)
        except asyncio.TimeoutError:
            raise SMPPeerError(ErrorKind.TIMEOUT, f"connection to {remote_peer_id} is not ready before timeout") from None
        logger.debug("Connection to %s is ready.", conn.peer)

        session = ProtocolSession(remote_peer_id, self._engine_factory(self.secret), conn, self._codec)
        try:
            await session.start_initiator()
            result = await session.wait_for_result(deadline - loop.time())
        finally:
            await session.close()
        logger.debug("Finished SMP with peer=%s: result=%s", remote_peer_id, result)
        return result

    # -------------------------
    # Incoming SMP
    # -------------------------

    def _on_connection(self, link: PeerLink, conn: DataConnection) -> None:
        if link is self._link:
            self._accept(conn)
        elif link is self._pending_link:
            # open() has confirmed but connect_to_peer_server() hasn't resumed yet.
            self._backlog.append(conn)
        else:
            # A link that failed to register or was replaced.
            self._spawn(conn.close())

    def _accept(self, conn: DataConnection) -> None:
        # A remote peer has connected us!
        logger.debug("Received a connection from %s", conn.peer)
        self._spawn(self._handle_incoming(conn))

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_incoming(self, conn: DataConnection) -> None:
        session = ProtocolSession(conn.peer, self._engine_factory(self.secret), conn, self._codec)
        try:
            session.start_responder()
            result = await session.wait_for_result(self.timeout)
        except Exception as e:
            # Nobody to report to; drop the session.
            logger.error("%s is raised when running SMP with peer=%s", e, conn.peer)
            return
        finally:
            await session.close()
        logger.debug("Finished SMP with peer=%s: result=%s", conn.peer, result)
        self.events.emit(EventKind.INCOMING_SMP, conn.peer, result)

    # -------------------------
    # Link notifications
    # -------------------------

    def _on_disconnected(self, link: PeerLink) -> None:
        if link is not self._link:
            return
        self.state = RegistrationState.DISCONNECTED
        self._link = None
        logger.debug("Disconnected from peer server")
        self.events.emit(EventKind.SERVER_DISCONNECTED)

    def _on_error(self, link: PeerLink, error: str) -> None:
        if link is not self._link and self.state is not RegistrationState.REGISTERING:
            return
        logger.warning("Peer server error: %s", error)
        self.events.emit(EventKind.ERROR, error)

    # -------------------------
    # Events
    # -------------------------

    def on(self, event: Union[str, EventKind], cb: Callback) -> None:
        """
        Subscribe to an event:
            "connected"     () -> None
            "disconnected"  () -> None
            "error"         (error: str) -> None
            "incoming"      (remote_peer_id: str, result: bool) -> None

        Raises SMPPeerError(EVENT_UNSUPPORTED) for any other name.
        """
        self.events.on(event, cb)

    def off(self, event: Union[str, EventKind], cb: Callback) -> None:
        self.events.off(event, cb)
