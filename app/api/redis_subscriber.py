"""
Redis Pub/Sub backplane for room broadcasts.

When several API processes serve WebSocket clients, room membership lives
in each process's memory. Every room broadcast is published to the Redis
channel ``room:<room-name>``; each process listens on ``room:*`` and hands
received events to its ConnectionManager for local fan-out.
"""
import asyncio
import json
import logging
from typing import Optional
import pybreaker
from redis import Redis, RedisError
from redis.client import PubSub
from services.redis_client import get_redis_client, publish_event

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "room:"


class RedisPubSubSubscriber:
    """
    Redis Pub/Sub backplane attached to a ConnectionManager.

    Publishes room events and forwards events received from any process to
    the local members of the room.
    """

    def __init__(self, connection_manager):
        """
        Args:
            connection_manager: ConnectionManager receiving forwarded events
        """
        self.redis_client: Redis = get_redis_client()
        self.pubsub: PubSub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        self.connection_manager = connection_manager
        self.is_running = False
        self._listen_task: Optional[asyncio.Task] = None

        logger.info("RedisPubSubSubscriber initialized")

    async def start(self):
        """Subscribe to every room channel and start listening in the background."""
        if self.is_running:
            logger.warning("RedisPubSubSubscriber already running")
            return

        await asyncio.to_thread(self.pubsub.psubscribe, f"{CHANNEL_PREFIX}*")
        self.is_running = True
        self.connection_manager.backplane = self
        self._listen_task = asyncio.create_task(self._listen())
        logger.info("RedisPubSubSubscriber started")

    async def stop(self):
        """Stop listening, detach from the manager and close the Pub/Sub connection."""
        if not self.is_running:
            return

        self.is_running = False
        self.connection_manager.backplane = None

        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass

        await asyncio.to_thread(self.pubsub.punsubscribe)
        await asyncio.to_thread(self.pubsub.close)
        logger.info("RedisPubSubSubscriber stopped")

    async def publish(self, room: str, envelope: dict) -> bool:
        """
        Publish a room event to all API processes.

        Returns:
            True if Redis accepted the publish, False if the caller should
            fall back to local delivery
        """
        try:
            await asyncio.to_thread(publish_event, f"{CHANNEL_PREFIX}{room}", envelope)
            return True
        except pybreaker.CircuitBreakerError:
            logger.warning(f"Redis circuit open, cannot publish to room {room}")
        except RedisError as e:
            logger.error(f"Failed to publish to room {room}: {e}")
        return False

    async def _listen(self):
        """Poll Redis for room events until stopped."""
        logger.info("Redis Pub/Sub listener started")

        while self.is_running:
            try:
                message = await asyncio.to_thread(self.pubsub.get_message, timeout=1.0)
                if message and message.get("type") == "pmessage":
                    await self._handle_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in Redis Pub/Sub listener: {e}")
                await asyncio.sleep(1)  # Back off on error

        logger.info("Redis Pub/Sub listener stopped")

    async def _handle_message(self, message: dict):
        """Decode a Pub/Sub message and deliver it to the room's local members."""
        channel = message.get("channel")
        data = message.get("data")
        if not channel or not data or not channel.startswith(CHANNEL_PREFIX):
            return

        try:
            envelope = json.loads(data)
        except json.JSONDecodeError:
            logger.error(f"Invalid JSON in message from channel {channel}: {data}")
            return

        room = channel[len(CHANNEL_PREFIX):]
        await self.connection_manager.deliver_local(room, envelope)


# Global subscriber instance
_subscriber: Optional[RedisPubSubSubscriber] = None


async def start_redis_subscriber(connection_manager) -> RedisPubSubSubscriber:
    """
    Create and start the backplane subscriber.

    Should be called during application startup.
    """
    global _subscriber
    if _subscriber is None:
        _subscriber = RedisPubSubSubscriber(connection_manager)
    await _subscriber.start()
    return _subscriber


async def stop_redis_subscriber():
    """
    Stop the backplane subscriber.

    Should be called during application shutdown.
    """
    global _subscriber
    if _subscriber:
        await _subscriber.stop()
        _subscriber = None
