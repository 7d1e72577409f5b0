"""Tests for live connections, outbound queues and the connection registry."""
import pytest
from starlette.websockets import WebSocketState

from homeserve.chat.broadcast import BroadcastRouter
from homeserve.chat.registry import OVERFLOW_CLOSE_CODE, ConnectionRegistry, LiveConnection
from tests.utils import FakeWebSocket, RecordingConnection, settle


def payload(n):
    return {"type": "new_message", "n": n}


class TestConnectionRegistry:
    """Tests for the user -> connections map."""

    def test_first_and_last_edges(self):
        registry = ConnectionRegistry()
        phone, laptop = RecordingConnection("phone"), RecordingConnection("laptop")

        assert registry.register("bob", phone) is True
        assert registry.register("bob", laptop) is False
        assert registry.session_count("bob") == 2

        assert registry.unregister("bob", phone) is False
        assert registry.session_count("bob") == 1
        assert registry.unregister("bob", laptop) is True
        assert registry.session_count("bob") == 0
        assert registry.user_ids() == []

    def test_unregister_unknown_connection(self):
        registry = ConnectionRegistry()
        registry.register("bob", RecordingConnection("phone"))

        assert registry.unregister("bob", RecordingConnection("stranger")) is False
        assert registry.unregister("alice", RecordingConnection("stranger")) is False
        assert registry.session_count("bob") == 1

    def test_double_unregister_reports_edge_once(self):
        registry = ConnectionRegistry()
        conn = RecordingConnection()
        registry.register("bob", conn)

        assert registry.unregister("bob", conn) is True
        assert registry.unregister("bob", conn) is False

    def test_connections_for_skips_closed(self):
        registry = ConnectionRegistry()
        live, dead = RecordingConnection("live"), RecordingConnection("dead", open_=False)
        registry.register("bob", live)
        registry.register("bob", dead)

        assert registry.connections_for("bob") == [live]
        assert registry.connections_for("nobody") == []

    def test_lock_is_stable_per_user(self):
        registry = ConnectionRegistry(lock_shards=8)
        assert registry.lock_for("bob") is registry.lock_for("bob")


class TestBroadcastRouter:
    """Tests for fan-out helpers."""

    def test_send_to_user_reaches_every_open_session(self):
        registry = ConnectionRegistry()
        router = BroadcastRouter(registry)
        phone, laptop = RecordingConnection("phone"), RecordingConnection("laptop")
        closed = RecordingConnection("closed", open_=False)
        for conn in (phone, laptop, closed):
            registry.register("bob", conn)

        assert router.send_to_user("bob", payload(1)) == 2
        assert phone.received == [payload(1)]
        assert laptop.received == [payload(1)]
        assert closed.received == []

    def test_send_to_offline_user(self):
        router = BroadcastRouter(ConnectionRegistry())
        assert router.send_to_user("bob", payload(1)) == 0

    def test_broadcast_excludes_subject(self):
        registry = ConnectionRegistry()
        router = BroadcastRouter(registry)
        alice, bob, carol = (RecordingConnection(n) for n in ("alice", "bob", "carol"))
        registry.register("alice", alice)
        registry.register("bob", bob)
        registry.register("carol", carol)

        assert router.broadcast_to_all_except("alice", payload(1)) == 2
        assert alice.received == []
        assert bob.received == [payload(1)]
        assert carol.received == [payload(1)]


class TestLiveConnection:
    """Tests for the bounded outbound queue and its writer."""

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            LiveConnection(FakeWebSocket(), overflow_policy="block")

    @pytest.mark.asyncio
    async def test_writer_delivers_in_order(self):
        ws = FakeWebSocket()
        conn = LiveConnection(ws, queue_size=8)
        conn.start()

        for n in range(5):
            assert conn.send(payload(n)) is True
        await settle()

        assert ws.sent == [payload(n) for n in range(5)]
        await conn.close()

    @pytest.mark.asyncio
    async def test_slow_peer_does_not_block_sender(self):
        ws = FakeWebSocket(block=True)
        conn = LiveConnection(ws, queue_size=16, overflow_policy="drop_newest")
        conn.start()

        # send() never awaits, so a stalled socket cannot hold up the caller.
        for n in range(10):
            conn.send(payload(n))
        await settle()
        assert ws.sent == []

        ws.release()
        await settle()
        assert ws.sent == [payload(n) for n in range(10)]
        await conn.close()

    @pytest.mark.asyncio
    async def test_overflow_close(self):
        ws = FakeWebSocket()
        conn = LiveConnection(ws, queue_size=2, overflow_policy="close")

        assert conn.send(payload(1)) is True
        assert conn.send(payload(2)) is True
        assert conn.send(payload(3)) is False
        assert conn.is_open is False
        assert conn.send(payload(4)) is False

        await settle()
        assert ws.closed_with == OVERFLOW_CLOSE_CODE
        await conn.close()

    @pytest.mark.asyncio
    async def test_overflow_drop_newest(self):
        ws = FakeWebSocket()
        conn = LiveConnection(ws, queue_size=2, overflow_policy="drop_newest")

        conn.send(payload(1))
        conn.send(payload(2))
        assert conn.send(payload(3)) is False
        assert conn.dropped == 1
        assert conn.is_open

        conn.start()
        await settle()
        assert ws.sent == [payload(1), payload(2)]
        await conn.close()

    @pytest.mark.asyncio
    async def test_overflow_drop_oldest(self):
        ws = FakeWebSocket()
        conn = LiveConnection(ws, queue_size=2, overflow_policy="drop_oldest")

        conn.send(payload(1))
        conn.send(payload(2))
        assert conn.send(payload(3)) is True
        assert conn.dropped == 1

        conn.start()
        await settle()
        assert ws.sent == [payload(2), payload(3)]
        await conn.close()

    @pytest.mark.asyncio
    async def test_failed_write_marks_connection_closed(self):
        class BrokenWebSocket(FakeWebSocket):
            async def send_json(self, data):
                raise RuntimeError("socket gone")

        conn = LiveConnection(BrokenWebSocket(), queue_size=4)
        conn.start()
        conn.send(payload(1))
        await settle()

        assert conn.is_open is False
        assert conn.send(payload(2)) is False
        await conn.close()

    @pytest.mark.asyncio
    async def test_closed_transport_is_not_open(self):
        ws = FakeWebSocket()
        conn = LiveConnection(ws)
        assert conn.is_open

        ws.client_state = WebSocketState.DISCONNECTED
        assert conn.is_open is False
        assert conn.send(payload(1)) is False

    @pytest.mark.asyncio
    async def test_close_discards_queue_and_is_idempotent(self):
        ws = FakeWebSocket(block=True)
        conn = LiveConnection(ws, queue_size=4)
        conn.start()
        conn.send(payload(1))
        conn.send(payload(2))

        await conn.close()
        await conn.close()
        ws.release()
        await settle()

        assert ws.sent == []
        assert conn.send(payload(3)) is False
