"""
In-memory stand-ins for the peer server link, data connections and the SMP engine.

The link doubles share one class-level registry, so every MockPeerLink opened
in a test can reach every other one by id, like peers on one peer server.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from typing import Dict, List, Optional

from smppeer.config import PeerServerConfig
from smppeer.errors import ErrorKind, SMPPeerError
from smppeer.transport import (
    ConnectionCallback,
    DataConnection,
    DisconnectedCallback,
    ErrorCallback,
    PeerLink,
)


class EqualityEngine:
    """
    Deterministic four-message stand-in for an SMP state machine.
    Compares secret digests in the clear, which is fine for a test double.

        initiator                 responder
        transit(None) -> 1+H(a)
                                  transit(1+H(a)) -> 2+H(b)
        transit(2+H(b)) -> 3
                                  transit(3) -> 4     (finished)
        transit(4) -> None  (finished)
    """

    def __init__(self, secret: str) -> None:
        self._digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._their_digest: Optional[bytes] = None
        self._step = 0
        self._finished = False
        self._result: Optional[bool] = None
        self.received: List[bytes] = []

    def transit(self, msg: Optional[bytes]) -> Optional[bytes]:
        if msg is None:
            if self._step != 0:
                raise ValueError("initiator already started")
            self._step = 1
            return b"\x01" + self._digest
        self.received.append(msg)
        tag, payload = msg[0], msg[1:]
        if tag == 1 and self._step == 0:
            self._their_digest = payload
            self._step = 2
            return b"\x02" + self._digest
        if tag == 2 and self._step == 1:
            self._result = payload == self._digest
            self._step = 3
            return b"\x03"
        if tag == 3 and self._step == 2:
            self._result = self._their_digest == self._digest
            self._finished = True
            return b"\x04"
        if tag == 4 and self._step == 3:
            self._finished = True
            return None
        raise ValueError(f"unexpected message {tag} at step {self._step}")

    def is_finished(self) -> bool:
        return self._finished

    def get_result(self) -> bool:
        if not self._finished or self._result is None:
            raise ValueError("state machine is not finished")
        return self._result


class SilentEngine(EqualityEngine):
    """Broken engine: produces no first message."""

    def transit(self, msg: Optional[bytes]) -> Optional[bytes]:
        return None


class MockDataConnection(DataConnection):
    def __init__(self, peer: str) -> None:
        self.peer = peer
        self.remote: Optional[MockDataConnection] = None
        self.closed = False
        self.sent: List[bytes] = []
        self._inbox: "asyncio.Queue[Optional[bytes]]" = asyncio.Queue()

    @classmethod
    def pair(cls, local_id: str, remote_id: str):
        """(connection held by local_id, connection held by remote_id)"""
        local = cls(remote_id)
        far = cls(local_id)
        local.remote = far
        far.remote = local
        return local, far

    def inject(self, data: Optional[bytes]) -> None:
        self._inbox.put_nowait(data)

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise SMPPeerError(ErrorKind.CONNECTION_CLOSED, "closed")
        self.sent.append(data)
        self._deliver(data)

    def _deliver(self, data: bytes) -> None:
        if self.remote is not None and not self.remote.closed:
            self.remote.inject(data)

    async def recv(self) -> Optional[bytes]:
        return await self._inbox.get()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(None)
        if self.remote is not None and not self.remote.closed:
            self.remote.inject(None)


class MockDataConnectionFakeSend(MockDataConnection):
    def _deliver(self, data: bytes) -> None:
        # Send nothing!
        pass


class MockPeerLink(PeerLink):
    peers: Dict[str, "MockPeerLink"] = {}
    connection_type = MockDataConnection

    def __init__(self, peer_id: Optional[str], config: PeerServerConfig) -> None:
        self.requested_id = peer_id
        self.config = config
        self.id: Optional[str] = None
        self.connected = False
        self.disconnect_calls = 0
        self._cb_connection: Optional[ConnectionCallback] = None
        self._cb_disconnected: Optional[DisconnectedCallback] = None
        self._cb_error: Optional[ErrorCallback] = None

    @classmethod
    def reset(cls) -> None:
        MockPeerLink.peers.clear()

    def assigned_id(self) -> str:
        if self.requested_id is None:
            return secrets.token_hex(32)
        return self.requested_id

    def on_connection(self, cb: ConnectionCallback) -> None:
        self._cb_connection = cb

    def on_disconnected(self, cb: DisconnectedCallback) -> None:
        self._cb_disconnected = cb

    def on_error(self, cb: ErrorCallback) -> None:
        self._cb_error = cb

    async def open(self) -> str:
        self.id = self.assigned_id()
        MockPeerLink.peers[self.id] = self
        self.connected = True
        return self.id

    async def connect(self, remote_peer_id: str) -> DataConnection:
        if not self.connected:
            raise SMPPeerError(ErrorKind.SERVER_UNCONNECTED, "link is not open")
        remote = MockPeerLink.peers.get(remote_peer_id)
        if remote is None or not remote.connected or remote._cb_connection is None:
            raise SMPPeerError(ErrorKind.PEER_UNAVAILABLE, f"remote peer {remote_peer_id} is not discovered")
        assert self.id is not None
        local, far = self.connection_type.pair(self.id, remote_peer_id)
        # The callback of remote is called.
        remote._cb_connection(far)
        return local

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        if not self.connected:
            return
        self.connected = False
        if MockPeerLink.peers.get(self.id) is self:
            del MockPeerLink.peers[self.id]
        if self._cb_disconnected is not None:
            asyncio.get_running_loop().call_soon(self._cb_disconnected)


class MockPeerLinkWrongID(MockPeerLink):
    def assigned_id(self) -> str:
        return f"{self.requested_id}123"


class MockPeerLinkFakeSend(MockPeerLink):
    # Use `MockDataConnectionFakeSend`, to prevent data from being sent.
    connection_type = MockDataConnectionFakeSend


class MockPeerLinkErrorWhenRegister(MockPeerLink):
    def on_error(self, cb: ErrorCallback) -> None:
        super().on_error(cb)
        # Emit errors immediately once 'error' is hooked up.
        cb("ERROR!")


class MockPeerLinkEarlyConnection(MockPeerLink):
    """
    Delivers an inbound connection from `early_from` in the same step that
    confirms registration, as the stream link does when a CONNECT is already
    buffered behind REGISTERED. The initiator's end is kept in `early_conn`.
    """
    early_from = "A"

    async def open(self) -> str:
        peer_id = await super().open()
        local, far = self.connection_type.pair(self.early_from, peer_id)
        self.early_conn = local
        assert self._cb_connection is not None
        self._cb_connection(far)
        return peer_id


class MockPeerLinkNeverOpens(MockPeerLink):
    async def open(self) -> str:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")
