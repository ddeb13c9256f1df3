"""
WebSocket Connection Manager for real-time chat.

Owns the room topology: one room per conversation and one private room per
user. Tracks every live connection as a ConnectionSession bound to the
Principal authenticated at handshake time, authorizes conversation joins
against the database, and fans events out to room members, either directly
or through a Redis Pub/Sub backplane when several API processes run.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set
from uuid import uuid4
from fastapi import WebSocket
from sqlalchemy.orm import Session
from core.config import settings
from core.security import Principal
from db.database import SessionLocal
from db.repository import Repository
from services.conversation_access import Access, check_conversation_access
from api.metrics import (
    websocket_connections_total, websocket_disconnections_total,
    room_broadcasts_total, update_websocket_metrics
)

logger = logging.getLogger(__name__)


def conversation_room(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


class ConnectionSession:
    """
    Ephemeral state of one live connection.

    Created after a successful handshake, destroyed on disconnect. Holds the
    bound identity and the rooms the connection currently belongs to.
    """

    def __init__(self, websocket: WebSocket, principal: Principal):
        self.id = uuid4().hex
        self.websocket = websocket
        self.principal = principal
        self.rooms: Set[str] = set()
        self.connected_at = datetime.now(timezone.utc)
        self.last_heartbeat = self.connected_at

    @property
    def user_id(self) -> int:
        return self.principal.id

    async def send_event(self, event: str, data) -> None:
        """Send one ``{"event", "data"}`` envelope to this connection only."""
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"<ConnectionSession {self.id} user={self.user_id} rooms={len(self.rooms)}>"


class ConnectionManager:
    """
    Manages active WebSocket connections and room membership.

    Features:
    - Tracks sessions per user (multiple devices/tabs supported)
    - Automatic private room per user, conversation rooms on request
    - Enforces connection limits per user
    - Removes a session from every room on disconnect
    - Broadcasts to rooms locally or through the backplane
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        max_connections_per_user: Optional[int] = None
    ):
        """
        Args:
            session_factory: Factory for database sessions used by join checks
            max_connections_per_user: Limit of concurrent sessions per user
        """
        self.session_factory = session_factory
        self.max_connections_per_user = (
            max_connections_per_user or settings.max_connections_per_user
        )

        # {user_id: [ConnectionSession]}
        self.active_connections: Dict[int, List[ConnectionSession]] = defaultdict(list)

        # {room_name: {ConnectionSession}}
        self.rooms: Dict[str, Set[ConnectionSession]] = defaultdict(set)

        # Set by the Redis subscriber when the redis backend is enabled
        self.backplane = None

        logger.info("ConnectionManager initialized")

    async def connect(self, websocket: WebSocket, principal: Principal) -> Optional[ConnectionSession]:
        """
        Accept a WebSocket for an authenticated principal.

        Returns:
            The new ConnectionSession, or None if the user's connection limit
            is reached (the socket is left unaccepted)
        """
        current_connections = len(self.active_connections.get(principal.id, []))
        if current_connections >= self.max_connections_per_user:
            logger.warning(
                f"Connection limit reached for user {principal.id}: "
                f"{current_connections}/{self.max_connections_per_user}"
            )
            return None

        # Claim the slot before awaiting so concurrent handshakes see it
        session = ConnectionSession(websocket, principal)
        self.active_connections[principal.id].append(session)

        try:
            await websocket.accept()
        except Exception:
            self._release_slot(session)
            raise

        self._add_to_room(session, user_room(principal.id))

        websocket_connections_total.labels(instance="api").inc()
        logger.info(
            f"User {principal.id} connected via WebSocket "
            f"(total connections: {len(self.active_connections[principal.id])})"
        )
        return session

    def disconnect(self, session: ConnectionSession, reason: str = "normal") -> None:
        """
        Remove a session from every room and from connection tracking.

        Safe to call more than once for the same session.
        """
        for room in list(session.rooms):
            self._remove_from_room(session, room)

        if not self._release_slot(session):
            return

        websocket_disconnections_total.labels(instance="api", reason=reason).inc()
        logger.info(
            f"User {session.user_id} disconnected from WebSocket "
            f"(remaining connections: {len(self.active_connections.get(session.user_id, []))})"
        )

    def _release_slot(self, session: ConnectionSession) -> bool:
        sessions = self.active_connections.get(session.user_id)
        if sessions is None or session not in sessions:
            return False

        sessions.remove(session)
        if not sessions:
            del self.active_connections[session.user_id]
        return True

    async def join_conversation(self, session: ConnectionSession, conversation_id: int) -> Access:
        """
        Add a session to a conversation room if its user is a participant.

        Unknown conversations and non-participants leave membership untouched.
        """
        access = await asyncio.to_thread(self._check_access, conversation_id, session.user_id)
        if access is Access.GRANTED:
            self._add_to_room(session, conversation_room(conversation_id))
            logger.debug(f"User {session.user_id} joined conversation {conversation_id}")
        return access

    def leave_conversation(self, session: ConnectionSession, conversation_id: int) -> None:
        """Remove a session from a conversation room (idempotent)."""
        self._remove_from_room(session, conversation_room(conversation_id))
        logger.debug(f"User {session.user_id} left conversation {conversation_id}")

    def _check_access(self, conversation_id: int, user_id: int) -> Access:
        with self.session_factory() as db:
            access, _ = check_conversation_access(Repository(db), conversation_id, user_id)
            return access

    def _add_to_room(self, session: ConnectionSession, room: str) -> None:
        self.rooms[room].add(session)
        session.rooms.add(room)

    def _remove_from_room(self, session: ConnectionSession, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(session)
            if not members:
                del self.rooms[room]
        session.rooms.discard(room)

    def room_members(self, room: str) -> Set[ConnectionSession]:
        """Return a snapshot of the sessions in a room on this process."""
        return set(self.rooms.get(room, ()))

    async def broadcast(self, room: str, event: str, data) -> int:
        """
        Broadcast an event to every member of a room.

        With a backplane attached the event is published to Redis and every
        API process (this one included) delivers it to its local members.
        If publishing fails the event is delivered to local members directly.

        Returns:
            Number of local sessions the event was written to directly
        """
        envelope = {"event": event, "data": data}

        if self.backplane is not None:
            if await self.backplane.publish(room, envelope):
                room_broadcasts_total.labels(event=event, backend="redis").inc()
                return 0
            logger.warning(f"Backplane publish failed for room {room}, delivering locally")

        room_broadcasts_total.labels(event=event, backend="memory").inc()
        return await self.deliver_local(room, envelope)

    async def deliver_local(self, room: str, envelope: dict) -> int:
        """
        Write an envelope to every local member of a room.

        Connections that fail to receive it are disconnected.
        """
        sent_count = 0
        stale_sessions = []

        for session in sorted(self.room_members(room), key=lambda s: s.connected_at):
            try:
                await session.websocket.send_json(envelope)
                sent_count += 1
            except Exception as e:
                logger.error(f"Error sending to user {session.user_id} in room {room}: {e}")
                stale_sessions.append(session)

        for session in stale_sessions:
            self.disconnect(session, reason="send_error")

        if sent_count > 0:
            logger.info(f"Broadcast {envelope.get('event')} to room {room}: {sent_count} connections")

        return sent_count

    def update_heartbeat(self, session: ConnectionSession) -> None:
        """Record a pong received from a session."""
        session.last_heartbeat = datetime.now(timezone.utc)

    def get_stale_connections(self, timeout_seconds: int) -> List[ConnectionSession]:
        """Find sessions that haven't answered a ping within ``timeout_seconds``."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)
        return [
            session
            for sessions in self.active_connections.values()
            for session in sessions
            if session.last_heartbeat < cutoff
        ]

    def get_connection_count(self) -> int:
        """Total number of active sessions across all users."""
        return sum(len(sessions) for sessions in self.active_connections.values())

    def get_user_count(self) -> int:
        """Number of unique users currently connected."""
        return len(self.active_connections)

    def get_subscription_count(self) -> int:
        """Number of conversation room memberships on this process."""
        return sum(
            len(members) for room, members in self.rooms.items()
            if room.startswith("conversation:")
        )

    def get_user_connections(self, user_id: int) -> List[ConnectionSession]:
        """All active sessions for a specific user."""
        return list(self.active_connections.get(user_id, []))


# Global connection manager instance
connection_manager = ConnectionManager()


async def heartbeat_monitor(
    manager: ConnectionManager,
    interval_seconds: Optional[int] = None,
    timeout_seconds: Optional[int] = None
):
    """
    Background task sending pings and closing connections that stopped answering.

    Args:
        manager: ConnectionManager to supervise
        interval_seconds: Seconds between pings
        timeout_seconds: Seconds without a pong before a connection is closed
    """
    interval_seconds = interval_seconds or settings.heartbeat_interval_seconds
    timeout_seconds = timeout_seconds or settings.heartbeat_timeout_seconds
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            ping = {"event": "ping", "data": {"timestamp": datetime.now(timezone.utc).isoformat()}}
            for user_id, sessions in list(manager.active_connections.items()):
                for session in list(sessions):
                    try:
                        await session.websocket.send_json(ping)
                    except Exception as e:
                        logger.error(f"Error sending ping to user {user_id}: {e}")

            for session in manager.get_stale_connections(timeout_seconds):
                logger.warning(f"Closing stale connection for user {session.user_id}")
                try:
                    await session.websocket.close(code=1001, reason="Connection timeout")
                except Exception as e:
                    logger.debug(f"Close of stale connection failed: {e}")
                manager.disconnect(session, reason="timeout")

            update_websocket_metrics(manager)
            logger.info(
                f"Heartbeat complete: {manager.get_connection_count()} connections, "
                f"{manager.get_user_count()} users"
            )
        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}")
