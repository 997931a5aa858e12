# tokenwatch/data/storage/cache.py

import logging
from typing import Any, Dict, Optional

import orjson
import redis.asyncio as redis
from redis.asyncio.client import Redis
from redis.exceptions import RedisError

from tokenwatch.config.config_manager import CacheConfig

logger = logging.getLogger(__name__)


class CacheManager:
    """
    Redis cache for derived records (velocity, risk).

    Best effort only: derived records can always be recomputed, so every
    error is logged and reported as a miss.
    """

    def __init__(self, config: CacheConfig):
        self.config = config
        self.redis_client: Optional[Redis] = None
        self.is_connected = False

        # Cache TTL settings (in seconds)
        self.ttl_settings: Dict[str, int] = dict(config.ttl_settings)

    async def connect(self) -> None:
        """Establish connection to Redis server."""
        if not self.config.url:
            logger.info("Redis URL not configured, derived-record cache disabled")
            return
        try:
            self.redis_client = redis.from_url(
                self.config.url,
                decode_responses=False,  # Handle decoding ourselves
                health_check_interval=30,
            )
            await self.redis_client.ping()
            self.is_connected = True
            logger.info("Successfully connected to Redis cache")
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to connect to Redis, continuing without cache: {e}")
            self.redis_client = None

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.is_connected = False
            logger.info("Disconnected from Redis cache")

    def _key(self, kind: str, token_id: str) -> str:
        return f"{self.config.key_prefix}:{kind}:{token_id}"

    async def get(self, kind: str, token_id: str) -> Optional[Any]:
        """
        Get a cached record.

        Args:
            kind: Record kind ('velocity', 'risk')
            token_id: Token identifier

        Returns:
            Decoded value or None if missing or on error
        """
        if not self.is_connected:
            return None
        key = self._key(kind, token_id)
        try:
            value = await self.redis_client.get(key)
            return orjson.loads(value) if value is not None else None
        except (RedisError, orjson.JSONDecodeError) as e:
            logger.error(f"Cache get error for key {key}: {e}")
            return None

    async def set(self, kind: str, token_id: str, value: Any,
                  ttl: Optional[int] = None) -> bool:
        """Store a record with the kind's TTL; returns False on error."""
        if not self.is_connected:
            return False
        key = self._key(kind, token_id)
        try:
            await self.redis_client.set(
                key,
                orjson.dumps(value),
                ex=ttl or self.ttl_settings.get(kind, 60),
            )
            return True
        except (RedisError, TypeError) as e:
            logger.error(f"Cache set error for key {key}: {e}")
            return False
