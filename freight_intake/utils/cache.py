"""
Key-value store for AI responses and upload idempotency markers.

A thin wrapper around Redis GET/SETEX with JSON serialization.  All
operations are **fail-open**: if Redis is unavailable the caller gets a miss
and carries on, so a cache outage costs an extra AI call or an extra upload
check, never a failed document.

Usage::

    from freight_intake.utils.cache import RedisStore

    store = RedisStore(prefix="ai:")
    value = store.get(key)
    if value is None:
        value = expensive_call()
        store.put(key, value, ttl=3600)
"""

import json
import logging
from typing import Any

import redis

logger = logging.getLogger(__name__)

#: Prefix applied to all keys to avoid collisions with other Redis users.
_KEY_PREFIX = "freight_intake:"


class RedisStore:
    """get/put/has/delete with TTL over a lazily connected Redis client."""

    def __init__(self, prefix: str = "", redis_url: str | None = None, client: redis.Redis | None = None) -> None:
        self._prefix = f"{_KEY_PREFIX}{prefix}"
        self._redis_url = redis_url
        self._client = client

    def _get_redis(self) -> redis.Redis | None:
        """Return the Redis client, or *None* if Redis is unreachable."""
        if self._client is not None:
            return self._client
        try:
            url = self._redis_url
            if url is None:
                from freight_intake.config import settings

                url = settings.redis_url
            client = redis.from_url(url, socket_connect_timeout=2, decode_responses=True)
            client.ping()
            self._client = client
            return client
        except Exception as exc:
            logger.debug(f"Redis store unavailable: {exc}")
            return None

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Any | None:
        """Return the deserialised value, or ``None`` on miss or Redis error."""
        client = self._get_redis()
        if client is None:
            return None
        try:
            raw = client.get(self._key(key))
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:
            logger.debug(f"Store get failed for {key}: {exc}")
            return None

    def put(self, key: str, value: Any, ttl: int = 300) -> None:
        """Store *value* under *key* for *ttl* seconds. Errors are logged and ignored."""
        client = self._get_redis()
        if client is None:
            return
        try:
            client.setex(self._key(key), ttl, json.dumps(value))
        except Exception as exc:
            logger.debug(f"Store put failed for {key}: {exc}")

    def has(self, key: str) -> bool:
        client = self._get_redis()
        if client is None:
            return False
        try:
            return bool(client.exists(self._key(key)))
        except Exception as exc:
            logger.debug(f"Store exists check failed for {key}: {exc}")
            return False

    def delete(self, key: str) -> None:
        client = self._get_redis()
        if client is None:
            return
        try:
            client.delete(self._key(key))
        except Exception as exc:
            logger.debug(f"Store delete failed for {key}: {exc}")
