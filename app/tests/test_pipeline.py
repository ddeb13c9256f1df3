"""
Unit tests for the connection manager, the message pipeline and the
Redis backplane, using in-memory fake sockets.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
import pytest
from redis import RedisError
from sqlalchemy.exc import OperationalError
from api.message_pipeline import MessagePipeline, SendStatus, build_preview
from api.websocket_manager import ConnectionManager, heartbeat_monitor
from core.security import Principal
from db.models import Conversation, Message
from db.repository import Repository
from services.conversation_access import Access
from services.conversation_resolver import ConversationResolver


class FakeWebSocket:
    """Records what the server writes to a connection."""

    def __init__(self, fail_on_send: bool = False):
        self.sent = []
        self.accepted = False
        self.close_code = None
        self.fail_on_send = fail_on_send

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_on_send:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = None):
        self.close_code = code

    def events(self, name: str):
        return [frame["data"] for frame in self.sent if frame["event"] == name]


class SlowAcceptWebSocket(FakeWebSocket):
    """Yields to the event loop during accept, like a real handshake."""

    async def accept(self):
        await asyncio.sleep(0.01)
        self.accepted = True


class FailingAcceptWebSocket(FakeWebSocket):
    async def accept(self):
        raise RuntimeError("peer went away during handshake")


@pytest.fixture
def conversation_id(test_db, seed_data) -> int:
    return ConversationResolver(Repository(test_db)).find_or_create(1, 2, 99).id


class TestConnectionManager:
    """Tests for session tracking and room membership."""

    def test_connect_joins_private_room(self):
        manager = ConnectionManager()
        websocket = FakeWebSocket()

        session = asyncio.run(manager.connect(websocket, Principal(id=1)))

        assert websocket.accepted
        assert session.rooms == {"user:1"}
        assert manager.room_members("user:1") == {session}

    def test_connection_limit_leaves_socket_unaccepted(self):
        manager = ConnectionManager(max_connections_per_user=1)

        async def scenario():
            await manager.connect(FakeWebSocket(), Principal(id=1))
            rejected = FakeWebSocket()
            return rejected, await manager.connect(rejected, Principal(id=1))

        rejected, session = asyncio.run(scenario())

        assert session is None
        assert not rejected.accepted
        assert manager.get_connection_count() == 1

    def test_concurrent_handshakes_respect_limit(self):
        """Two handshakes of one user racing through accept() cannot both get in."""
        manager = ConnectionManager(max_connections_per_user=1)

        async def scenario():
            return await asyncio.gather(
                manager.connect(SlowAcceptWebSocket(), Principal(id=1)),
                manager.connect(SlowAcceptWebSocket(), Principal(id=1)),
            )

        sessions = asyncio.run(scenario())

        assert len([s for s in sessions if s is not None]) == 1
        assert manager.get_connection_count() == 1

    def test_failed_accept_frees_slot(self):
        manager = ConnectionManager(max_connections_per_user=1)

        async def scenario():
            with pytest.raises(RuntimeError):
                await manager.connect(FailingAcceptWebSocket(), Principal(id=1))
            return await manager.connect(FakeWebSocket(), Principal(id=1))

        session = asyncio.run(scenario())

        assert session is not None
        assert manager.get_connection_count() == 1

    def test_disconnect_is_idempotent(self, conversation_id):
        manager = ConnectionManager()

        async def scenario():
            session = await manager.connect(FakeWebSocket(), Principal(id=1))
            await manager.join_conversation(session, conversation_id)
            return session

        session = asyncio.run(scenario())
        manager.disconnect(session)
        manager.disconnect(session)

        assert session.rooms == set()
        assert manager.rooms == {}
        assert manager.get_connection_count() == 0

    def test_join_checks_participation(self, conversation_id):
        manager = ConnectionManager()

        async def scenario():
            alice = await manager.connect(FakeWebSocket(), Principal(id=1))
            carla = await manager.connect(FakeWebSocket(), Principal(id=3))
            return (
                await manager.join_conversation(alice, conversation_id),
                await manager.join_conversation(carla, conversation_id),
                await manager.join_conversation(carla, 12345),
                carla
            )

        granted, denied, missing, carla = asyncio.run(scenario())

        assert granted is Access.GRANTED
        assert denied is Access.DENIED
        assert missing is Access.NOT_FOUND
        assert carla.rooms == {"user:3"}
        assert manager.get_subscription_count() == 1

    def test_broken_connection_dropped_on_delivery(self):
        manager = ConnectionManager()
        healthy = FakeWebSocket()

        async def scenario():
            await manager.connect(healthy, Principal(id=1))
            await manager.connect(FakeWebSocket(fail_on_send=True), Principal(id=1))
            return await manager.broadcast("user:1", "new-interest-notification", {"productId": 99})

        delivered = asyncio.run(scenario())

        assert delivered == 1
        assert healthy.events("new-interest-notification") == [{"productId": 99}]
        assert manager.get_connection_count() == 1

    def test_backplane_publish_replaces_local_delivery(self):
        manager = ConnectionManager()
        websocket = FakeWebSocket()
        published = []

        class Backplane:
            async def publish(self, room, envelope):
                published.append((room, envelope))
                return True

        async def scenario():
            await manager.connect(websocket, Principal(id=1))
            manager.backplane = Backplane()
            await manager.broadcast("user:1", "ping", {})

        asyncio.run(scenario())

        assert published == [("user:1", {"event": "ping", "data": {}})]
        assert websocket.sent == []

    def test_failed_publish_falls_back_to_local_delivery(self):
        manager = ConnectionManager()
        websocket = FakeWebSocket()

        class Backplane:
            async def publish(self, room, envelope):
                return False

        async def scenario():
            await manager.connect(websocket, Principal(id=1))
            manager.backplane = Backplane()
            await manager.broadcast("user:1", "new-interest-notification", {"productId": 99})

        asyncio.run(scenario())

        assert websocket.events("new-interest-notification") == [{"productId": 99}]


class TestHeartbeat:
    """Tests for the heartbeat monitor."""

    def test_stale_connection_closed(self):
        manager = ConnectionManager()
        stale = FakeWebSocket()
        fresh = FakeWebSocket()

        async def scenario():
            old_session = await manager.connect(stale, Principal(id=1))
            await manager.connect(fresh, Principal(id=2))
            old_session.last_heartbeat = datetime.now(timezone.utc) - timedelta(minutes=5)

            task = asyncio.create_task(heartbeat_monitor(manager, interval_seconds=0.01, timeout_seconds=60))
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert stale.close_code == 1001
        assert fresh.close_code is None
        assert fresh.events("ping")
        assert manager.get_user_connections(1) == []
        assert len(manager.get_user_connections(2)) == 1


class TestMessagePipeline:
    """Tests for authorize, persist, then broadcast."""

    def _room(self, manager, conversation_id, *user_ids):
        async def scenario():
            sockets = []
            for user_id in user_ids:
                websocket = FakeWebSocket()
                session = await manager.connect(websocket, Principal(id=user_id))
                await manager.join_conversation(session, conversation_id)
                sockets.append(websocket)
            return sockets
        return asyncio.run(scenario())

    def test_send_persists_then_broadcasts(self, test_db, conversation_id):
        manager = ConnectionManager()
        alice, bruno = self._room(manager, conversation_id, 1, 2)
        pipeline = MessagePipeline(manager)

        result = asyncio.run(pipeline.send(Principal(id=1), conversation_id, "Trade?", client_token="tok"))

        assert result.status is SendStatus.SENT
        assert alice.events("new-message") == [result.message]
        assert bruno.events("new-message") == [result.message]
        assert result.message["clientToken"] == "tok"

        stored = test_db.query(Message).one()
        assert stored.id == result.message["id"]
        test_db.expire_all()
        assert test_db.get(Conversation, conversation_id).last_message == "Trade?"

    def test_invalid_content(self, test_db, conversation_id):
        pipeline = MessagePipeline(ConnectionManager())

        async def scenario():
            return [
                await pipeline.send(Principal(id=1), conversation_id, ""),
                await pipeline.send(Principal(id=1), conversation_id, " \n\t "),
                await pipeline.send(Principal(id=1), conversation_id, 42),
                await pipeline.send(Principal(id=1), conversation_id, "ok", client_token="x" * 65),
            ]

        results = asyncio.run(scenario())

        assert [r.status for r in results] == [SendStatus.INVALID] * 4
        assert test_db.query(Message).count() == 0

    def test_non_participant_and_unknown_conversation(self, test_db, conversation_id):
        manager = ConnectionManager()
        (bruno,) = self._room(manager, conversation_id, 2)
        pipeline = MessagePipeline(manager)

        denied = asyncio.run(pipeline.send(Principal(id=3), conversation_id, "hello"))
        missing = asyncio.run(pipeline.send(Principal(id=3), 12345, "hello"))

        assert denied.status is SendStatus.DENIED
        assert missing.status is SendStatus.NOT_FOUND
        assert bruno.events("new-message") == []
        assert test_db.query(Message).count() == 0

    def test_storage_failure_is_not_broadcast(self, test_db, conversation_id, monkeypatch):
        manager = ConnectionManager()
        alice, bruno = self._room(manager, conversation_id, 1, 2)
        pipeline = MessagePipeline(manager)

        def broken_create(self, conversation_id, sender_id, content):
            raise OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))

        monkeypatch.setattr(Repository, "create_message", broken_create)

        result = asyncio.run(pipeline.send(Principal(id=1), conversation_id, "lost"))

        assert result.status is SendStatus.FAILED
        assert alice.events("new-message") == []
        assert bruno.events("new-message") == []
        assert test_db.query(Message).count() == 0
        test_db.expire_all()
        assert test_db.get(Conversation, conversation_id).last_message != "lost"

    def test_concurrent_sends_broadcast_in_storage_order(self, test_db, conversation_id):
        manager = ConnectionManager()
        (bruno,) = self._room(manager, conversation_id, 2)
        pipeline = MessagePipeline(manager)

        async def scenario():
            return await asyncio.gather(*[
                pipeline.send(Principal(id=1 if i % 2 else 2), conversation_id, f"m{i}")
                for i in range(6)
            ])

        results = asyncio.run(scenario())

        assert all(r.ok for r in results)
        received_ids = [m["id"] for m in bruno.events("new-message")]
        assert received_ids == sorted(received_ids)
        assert len(received_ids) == 6
        stored_ids = [m.id for m in test_db.query(Message).order_by(Message.id).all()]
        assert stored_ids == received_ids


class TestPreview:
    """Tests for the inbox preview."""

    def test_short_content_unchanged(self):
        assert build_preview("hello") == "hello"

    def test_exactly_limit_unchanged(self):
        assert build_preview("a" * 100) == "a" * 100

    def test_long_content_truncated(self):
        assert build_preview("a" * 101) == "a" * 100 + "..."


class TestRedisBackplane:
    """Tests for the Redis Pub/Sub subscriber without a Redis server."""

    def test_received_event_delivered_to_local_room(self):
        from api.redis_subscriber import RedisPubSubSubscriber

        manager = ConnectionManager()
        websocket = FakeWebSocket()
        subscriber = RedisPubSubSubscriber(manager)
        envelope = {"event": "new-interest-notification", "data": {"productId": 99, "fromUserId": 1}}

        async def scenario():
            await manager.connect(websocket, Principal(id=2))
            await subscriber._handle_message({
                "type": "pmessage",
                "pattern": "room:*",
                "channel": "room:user:2",
                "data": json.dumps(envelope)
            })

        asyncio.run(scenario())

        assert websocket.sent == [envelope]

    def test_publish_failure_reported(self, monkeypatch):
        import api.redis_subscriber as redis_subscriber

        def broken_publish(channel, event):
            raise RedisError("connection refused")

        monkeypatch.setattr(redis_subscriber, "publish_event", broken_publish)
        subscriber = redis_subscriber.RedisPubSubSubscriber(ConnectionManager())

        assert asyncio.run(subscriber.publish("user:2", {"event": "ping", "data": {}})) is False
