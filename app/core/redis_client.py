"""Redis client and the key/value helper built on it."""

import json
from typing import Any, cast

import redis
from structlog import get_logger

from app.config import settings

logger = get_logger(__name__)

_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """Process-wide Redis client, created on first use."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    return CacheManager(get_redis_client()).ping()


def close_redis_connection() -> None:
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class CacheManager:
    """
    Redis-backed key/value helper.

    Every method degrades to a miss or False when Redis fails: callers keep
    caches and hints here, never the source of truth. Failures are logged
    as ``cache_operation_failed``.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @staticmethod
    def _failed(operation: str, key: str | None, error: Exception) -> None:
        logger.warning("cache_operation_failed", operation=operation, key=key, error=str(error))

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except redis.RedisError as e:
            self._failed("ping", None, e)
            return False

    def get(self, key: str) -> str | None:
        try:
            return cast(str | None, self.redis.get(key))
        except redis.RedisError as e:
            self._failed("get", key, e)
            return None

    def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """
        Store ``value`` under ``key``.

        Args:
            key: Cache key
            value: Value to store
            ttl: Expiry in seconds; the key never expires when omitted

        Returns:
            True if Redis accepted the write
        """
        try:
            self.redis.set(key, value, ex=ttl or None)
            return True
        except redis.RedisError as e:
            self._failed("set", key, e)
            return False

    def delete(self, key: str) -> bool:
        try:
            self.redis.delete(key)
            return True
        except redis.RedisError as e:
            self._failed("delete", key, e)
            return False

    def exists(self, key: str) -> bool:
        try:
            return bool(self.redis.exists(key))
        except redis.RedisError as e:
            self._failed("exists", key, e)
            return False

    def get_json(self, key: str) -> Any | None:
        """Decoded JSON value, or None when missing, unreadable or not JSON."""
        value = self.get(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError as e:
            self._failed("decode", key, e)
            return None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        # UUIDs and datetimes in user rows are stored as strings
        return self.set(key, json.dumps(value, default=str), ttl=ttl)
