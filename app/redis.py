"""
Shared Redis connection for escalation levels and realtime pub/sub.

Keys are namespaced under the app name so several deployments can share one
Redis instance.
"""

from typing import Any, Optional
import logging

from redis import asyncio as aioredis
from redis.asyncio.client import Redis

from app.config import settings

logger = logging.getLogger(__name__)


def namespaced(*parts: Any) -> str:
    """``namespaced("escalation", id)`` -> ``"funnelflow:escalation:<id>"``."""
    return ":".join([settings.app_name, *(str(p) for p in parts)])


class RedisClient:
    """Lazily created process-wide client."""

    _client: Optional[Redis] = None

    @classmethod
    def get_client(cls) -> Redis:
        if cls._client is None:
            if not settings.redis_url:
                raise RuntimeError("REDIS_URL not configured")

            # Escalation reads sit on the chat path, so fail fast
            cls._client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                health_check_interval=30,
            )
            logger.info(f"Redis client initialized for {settings.app_name}")

        return cls._client

    @classmethod
    async def is_available(cls) -> bool:
        """Ping once. Escalation and realtime degrade quietly without Redis."""
        try:
            return bool(await cls.get_client().ping())
        except Exception as e:
            logger.warning(f"Redis unavailable, escalation levels and realtime events disabled: {e}")
            return False

    @classmethod
    async def close(cls):
        if cls._client:
            await cls._client.aclose()
            cls._client = None
            logger.info("Redis client closed")
