"""
Redis client for publishing the off-chain mirror of agent and market state.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from vault.config import settings
from vault.logging import log


class MirrorEncoder(json.JSONEncoder):
    """JSON encoder for datetimes and enums found in mirror snapshots."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class RedisClient:
    """Async Redis client wrapper used by the event indexer."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.redis_url
        self.redis: Optional[Redis] = None

    async def connect(self):
        """Establish connection to Redis."""
        try:
            self.redis = await aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=20,
            )
            await self.redis.ping()
            log.info(f"Connected to Redis at {self.url}")
        except Exception as e:
            log.error(f"Failed to connect to Redis: {e}")
            raise

    async def disconnect(self):
        """Close Redis connection."""
        if self.redis:
            await self.redis.close()
            log.info("Disconnected from Redis")

    async def set(self, key: str, value: str, expire: Optional[int] = None):
        """Set value in Redis with optional expiration."""
        try:
            await self.redis.set(key, value, ex=expire)
        except Exception as e:
            log.error(f"Redis SET error for key {key}: {e}")

    async def set_json(self, key: str, value: Any, expire: Optional[int] = None):
        """Set JSON value in Redis."""
        await self.set(key, json.dumps(value, cls=MirrorEncoder), expire)


# Global Redis client instance
redis_client = RedisClient()
