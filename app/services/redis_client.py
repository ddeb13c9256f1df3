"""
Redis client for the cross-process broadcast backplane.
Provides connection pooling and a circuit-breaker protected publish.
"""
import json
import logging
from typing import Optional
from redis import Redis, ConnectionPool
import pybreaker
from core.config import settings

logger = logging.getLogger(__name__)


class BreakerLogListener(pybreaker.CircuitBreakerListener):
    """Log circuit breaker state transitions."""

    def state_change(self, cb, old_state, new_state):
        logger.warning(
            f"Circuit breaker {cb.name} changed from "
            f"{old_state.name if old_state else None} to {new_state.name}"
        )


# Circuit breaker for Redis
redis_circuit_breaker = pybreaker.CircuitBreaker(
    fail_max=3,  # Open circuit after 3 failures
    reset_timeout=15,  # Try half-open after 15 seconds
    name="redis_client",
    listeners=[BreakerLogListener()]
)

# Create connection pool (reusable across requests)
_redis_pool: Optional[ConnectionPool] = None


def get_redis_pool() -> ConnectionPool:
    """
    Get or create Redis connection pool.

    Returns:
        Redis connection pool
    """
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True
        )
        logger.info(f"Created Redis connection pool: {settings.redis_url}")
    return _redis_pool


def get_redis_client() -> Redis:
    """
    Get a Redis client from the connection pool.

    Returns:
        Redis client instance
    """
    return Redis(connection_pool=get_redis_pool())


@redis_circuit_breaker
def publish_event(channel: str, event: dict) -> int:
    """
    Publish a JSON-encoded event on a Redis channel.

    Args:
        channel: Redis channel name
        event: Event dict (must be JSON serializable)

    Returns:
        Number of subscribers that received the message

    Raises:
        pybreaker.CircuitBreakerError: circuit is open
        redis.RedisError: publish failed
    """
    return get_redis_client().publish(channel, json.dumps(event))
