"""Namespaced cache layer.

The cache is best effort: it is never authoritative and a backend failure
degrades to a miss instead of failing the caller. Values must be JSON
serializable.
"""
import json
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import redis
import structlog

logger = structlog.get_logger()


class CacheLayer(Protocol):
    """Cache capability injected into the experiment services."""

    def get(self, key: str, namespace: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, namespace: str, ttl_seconds: int) -> None: ...

    def delete(self, key: str, namespace: str) -> None: ...


def _full_key(namespace: str, key: str) -> str:
    return f"cache:{namespace}:{key}"


class RedisCache:
    """Redis-backed cache using SETEX for TTLs."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get(self, key: str, namespace: str) -> Optional[Any]:
        try:
            raw = self.redis.get(_full_key(namespace, key))
        except redis.RedisError as e:
            logger.warning("cache_get_failed", namespace=namespace, error=str(e))
            return None

        if raw is None:
            return None

        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            # Corrupt entry - drop it so the next write replaces it
            self.delete(key, namespace)
            return None

    def set(self, key: str, value: Any, namespace: str, ttl_seconds: int) -> None:
        try:
            self.redis.setex(_full_key(namespace, key), ttl_seconds, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning("cache_set_failed", namespace=namespace, error=str(e))

    def delete(self, key: str, namespace: str) -> None:
        try:
            self.redis.delete(_full_key(namespace, key))
        except redis.RedisError as e:
            logger.warning("cache_delete_failed", namespace=namespace, error=str(e))


class MemoryCache:
    """
    In-process TTL cache for tests and single-worker local runs.

    Values are stored JSON-encoded so callers see the same types they would
    get back from Redis.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, str]] = {}

    def get(self, key: str, namespace: str) -> Optional[Any]:
        full_key = _full_key(namespace, key)
        with self._lock:
            entry = self._entries.get(full_key)
            if entry is None:
                return None
            expires_at, payload = entry
            if self._clock() >= expires_at:
                del self._entries[full_key]
                return None
        return json.loads(payload)

    def set(self, key: str, value: Any, namespace: str, ttl_seconds: int) -> None:
        payload = json.dumps(value, default=str)
        with self._lock:
            self._entries[_full_key(namespace, key)] = (self._clock() + ttl_seconds, payload)

    def delete(self, key: str, namespace: str) -> None:
        with self._lock:
            self._entries.pop(_full_key(namespace, key), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
