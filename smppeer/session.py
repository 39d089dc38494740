import asyncio
import logging
from typing import Optional

from .engine import MessageCodec, ProtocolEngine
from .errors import ErrorKind, SMPPeerError
from .transport import DataConnection

"""
session.py — one SMP run over one data connection.

Pieces:
- frame_bridge():        the only thing that feeds the engine. Reads frames in
                         arrival order, transits them, sends replies back.
- wait_until_finished(): races "engine finished" against a timeout (and against
                         the bridge dying), cancelling whatever lost.
- ProtocolSession:       glues an engine, a connection and a codec together for
                         either side of the handshake.
"""

logger = logging.getLogger(__name__)


async def frame_bridge(
    engine: ProtocolEngine,
    conn: DataConnection,
    codec: MessageCodec,
    finished: asyncio.Event,
) -> None:
    """
    Decode each inbound frame, hand it to the engine, encode+send any reply.
    Sets `finished` once the engine says so and stops reading.
    Returns quietly when the connection closes.
    """
    while not finished.is_set():
        data = await conn.recv()
        if data is None:
            return
        reply = engine.transit(codec.decode(data))
        # None means the engine is done or waiting for more input.
        if reply is not None:
            await conn.send(codec.encode(reply))
        if engine.is_finished():
            finished.set()


async def wait_until_finished(
    finished: asyncio.Event,
    bridge: "asyncio.Task[None]",
    timeout: float,
) -> None:
    """
    Wait until `finished` is set, or fail:
      - TIMEOUT if `timeout` seconds pass first,
      - whatever the bridge raised, if it raised,
      - CONNECTION_CLOSED if the bridge ended without the engine finishing.
    """
    waiter = asyncio.ensure_future(finished.wait())
    try:
        done, _ = await asyncio.wait(
            {waiter, bridge},
            timeout=max(0.0, timeout),
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        waiter.cancel()

    if finished.is_set():
        return
    if bridge in done:
        exc = bridge.exception()
        if exc is not None:
            raise exc
        raise SMPPeerError(ErrorKind.CONNECTION_CLOSED, "connection closed before state machine finished")
    raise SMPPeerError(ErrorKind.TIMEOUT, "state machine is not finished before timeout")


class ProtocolSession:
    """
    Owns one engine and one data connection. Nothing else touches the engine
    while the session runs; the bridge task is the single mutator.
    """

    def __init__(
        self,
        remote_peer_id: str,
        engine: ProtocolEngine,
        conn: DataConnection,
        codec: MessageCodec,
    ) -> None:
        self.remote_peer_id = remote_peer_id
        self.engine = engine
        self.conn = conn
        self.codec = codec
        self.finished = asyncio.Event()
        self._bridge: Optional["asyncio.Task[None]"] = None

    @property
    def result(self) -> Optional[bool]:
        """The comparison result, or None while unfinished."""
        if not self.finished.is_set():
            return None
        return self.engine.get_result()

    def _install_bridge(self) -> None:
        self._bridge = asyncio.ensure_future(
            frame_bridge(self.engine, self.conn, self.codec, self.finished)
        )

    async def start_initiator(self) -> None:
        """Produce and send the first message, then bridge the replies."""
        first_msg = self.engine.transit(None)
        # Sanity check
        if first_msg is None:
            raise RuntimeError("msg1 should not be None")
        self._install_bridge()
        await self.conn.send(self.codec.encode(first_msg))

    def start_responder(self) -> None:
        self._install_bridge()

    async def wait_for_result(self, timeout: float) -> bool:
        if self._bridge is None:
            raise RuntimeError("session has not been started")
        await wait_until_finished(self.finished, self._bridge, timeout)
        return self.engine.get_result()

    async def close(self) -> None:
        """Stop the bridge (if still running) and close the connection."""
        if self._bridge is not None and not self._bridge.done():
            self._bridge.cancel()
            await asyncio.gather(self._bridge, return_exceptions=True)
        await self.conn.close()
