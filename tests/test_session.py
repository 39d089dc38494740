"""Tests for the frame bridge, the completion waiter and ProtocolSession."""

from __future__ import annotations

import asyncio

import pytest

from doubles import EqualityEngine, MockDataConnection
from smppeer.engine import BytesCodec
from smppeer.errors import ErrorKind, SMPPeerError
from smppeer.session import ProtocolSession, frame_bridge, wait_until_finished


def run(coro):
    return asyncio.run(coro)


class RecordingEngine:
    """Echoes every message back, upper-cased, and finishes after `limit` messages."""

    def __init__(self, limit: int = 100, reply: bool = True) -> None:
        self.seen = []
        self.limit = limit
        self.reply = reply

    def transit(self, msg):
        self.seen.append(msg)
        return msg.upper() if self.reply else None

    def is_finished(self) -> bool:
        return len(self.seen) >= self.limit

    def get_result(self) -> bool:
        return True


class ExplodingEngine(RecordingEngine):
    def transit(self, msg):
        raise ValueError("bad frame")


class TestFrameBridge:
    def test_frames_applied_in_arrival_order(self):
        async def _test():
            local, _ = MockDataConnection.pair("A", "B")
            engine = RecordingEngine()
            for i in range(5):
                local.inject(b"frame-%d" % i)
            local.inject(None)
            await frame_bridge(engine, local, BytesCodec(), asyncio.Event())
            return engine.seen

        seen = run(_test())
        assert seen == [b"frame-%d" % i for i in range(5)]

    def test_replies_go_back_on_same_connection(self):
        async def _test():
            local, _ = MockDataConnection.pair("A", "B")
            local.inject(b"abc")
            local.inject(None)
            await frame_bridge(RecordingEngine(),local, BytesCodec(), asyncio.Event())
            return local.sent

        assert run(_test()) == [b"ABC"]

    def test_no_reply_sends_nothing(self):
        async def _test():
            local, _ = MockDataConnection.pair("A", "B")
            local.inject(b"abc")
            local.inject(None)
            await frame_bridge(RecordingEngine(reply=False), local, BytesCodec(), asyncio.Event())
            return local.sent

        assert run(_test()) == []

    def test_stops_once_finished(self):
        async def _test():
            local, _ = MockDataConnection.pair("A", "B")
            engine = RecordingEngine(limit=2)
            finished = asyncio.Event()
            for i in range(4):
                local.inject(b"x%d" % i)
            await frame_bridge(engine, local, BytesCodec(), finished)
            return engine.seen, finished.is_set()

        seen, finished = run(_test())
        assert seen == [b"x0", b"x1"]
        assert finished


class TestWaitUntilFinished:
    def test_finished_wins(self):
        async def _test():
            finished = asyncio.Event()
            bridge = asyncio.ensure_future(asyncio.sleep(10))
            asyncio.get_running_loop().call_later(0.01, finished.set)
            await wait_until_finished(finished, bridge, 5.0)
            bridge.cancel()
            await asyncio.gather(bridge, return_exceptions=True)
            await asyncio.sleep(0)
            return asyncio.all_tasks()

        tasks = run(_test())
        # Only the test coroutine itself is left: the waiter was cleaned up.
        assert len(tasks) == 1

    def test_timeout_wins_and_waiter_is_cancelled(self):
        async def _test():
            finished = asyncio.Event()
            bridge = asyncio.ensure_future(asyncio.sleep(10))
            loop = asyncio.get_running_loop()
            started = loop.time()
            with pytest.raises(SMPPeerError) as exc:
                await wait_until_finished(finished, bridge, 0.05)
            elapsed = loop.time() - started
            still_running = not bridge.done()
            bridge.cancel()
            await asyncio.gather(bridge, return_exceptions=True)
            await asyncio.sleep(0)
            return exc.value, elapsed, still_running, asyncio.all_tasks()

        err, elapsed, still_running, tasks = run(_test())
        assert err.kind is ErrorKind.TIMEOUT
        assert 0.04 <= elapsed < 1.0
        # The waiter leaves the bridge to its owner.
        assert still_running
        assert len(tasks) == 1

    def test_bridge_error_propagates(self):
        async def _test():
            local, _ = MockDataConnection.pair("A", "B")
            local.inject(b"abc")
            finished = asyncio.Event()
            bridge = asyncio.ensure_future(frame_bridge(ExplodingEngine(), local, BytesCodec(), finished))
            await wait_until_finished(finished, bridge, 5.0)

        with pytest.raises(ValueError, match="bad frame"):
            run(_test())

    def test_closed_connection_before_finish(self):
        async def _test():
            local, _ = MockDataConnection.pair("A", "B")
            local.inject(None)
            finished = asyncio.Event()
            bridge = asyncio.ensure_future(frame_bridge(RecordingEngine(), local, BytesCodec(), finished))
            with pytest.raises(SMPPeerError) as exc:
                await wait_until_finished(finished, bridge, 5.0)
            return exc.value

        assert run(_test()).kind is ErrorKind.CONNECTION_CLOSED


class TestProtocolSession:
    def test_full_exchange(self):
        async def _test():
            a_conn, b_conn = MockDataConnection.pair("A", "B")
            alice = ProtocolSession("B", EqualityEngine("s"), a_conn, BytesCodec())
            bob = ProtocolSession("A", EqualityEngine("s"), b_conn, BytesCodec())
            assert alice.result is None
            bob.start_responder()
            await alice.start_initiator()
            results = await asyncio.gather(alice.wait_for_result(1.0), bob.wait_for_result(1.0))
            await alice.close()
            await bob.close()
            return results, alice.result, a_conn.closed, b_conn.closed

        results, alice_result, a_closed, b_closed = run(_test())
        assert results == [True, True]
        assert alice_result is True
        assert a_closed and b_closed

    def test_wait_before_start(self):
        async def _test():
            a_conn, _ = MockDataConnection.pair("A", "B")
            session = ProtocolSession("B", EqualityEngine("s"), a_conn, BytesCodec())
            await session.wait_for_result(1.0)

        with pytest.raises(RuntimeError):
            run(_test())

    def test_close_cancels_running_bridge(self):
        async def _test():
            a_conn, _ = MockDataConnection.pair("A", "B")
            session = ProtocolSession("B", EqualityEngine("s"), a_conn, BytesCodec())
            session.start_responder()
            await asyncio.sleep(0)
            await session.close()
            await asyncio.sleep(0)
            return a_conn.closed, asyncio.all_tasks()

        closed, tasks = run(_test())
        assert closed
        assert len(tasks) == 1
