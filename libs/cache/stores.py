from __future__ import annotations

import time
from threading import Lock
from typing import Dict, Optional, Protocol, Tuple

import redis

from libs.core import logging as core_logging

LOGGER = core_logging.get_logger("cache_store")


class CacheStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set_with_ttl(self, key: str, value: str, ttl_s: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self, prefix: str = "") -> int: ...


class InMemoryCacheStore:
    """Process-local fallback used when Redis is not configured or unreachable."""

    def __init__(self) -> None:
        self._items: Dict[str, Tuple[str, float]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if time.monotonic() >= expires_at:
                del self._items[key]
                return None
            return value

    def set_with_ttl(self, key: str, value: str, ttl_s: int) -> None:
        with self._lock:
            self._items[key] = (value, time.monotonic() + max(ttl_s, 1))

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def clear(self, prefix: str = "") -> int:
        with self._lock:
            keys = [key for key in self._items if key.startswith(prefix)]
            for key in keys:
                del self._items[key]
            return len(keys)


class RedisCacheStore:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    def get(self, key: str) -> Optional[str]:
        value = self.client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set_with_ttl(self, key: str, value: str, ttl_s: int) -> None:
        self.client.set(key, value, ex=max(ttl_s, 1))

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def clear(self, prefix: str = "") -> int:
        removed = 0
        for key in self.client.scan_iter(match=f"{prefix}*"):
            removed += int(self.client.delete(key) or 0)
        return removed


def resolve_cache_store(redis_url: str | None) -> CacheStore:
    if not redis_url:
        return InMemoryCacheStore()
    client = redis.Redis.from_url(redis_url, decode_responses=True)
    try:
        client.ping()
    except redis.RedisError as exc:
        LOGGER.warning("cache_store_redis_unavailable", redis_url=redis_url, error=str(exc))
        return InMemoryCacheStore()
    return RedisCacheStore(client)
