"""
Key/value cache backends for job records.

Values are JSON-compatible dicts or integers. Two backends:
- RedisCache: shared between processes, the production backend
- MemoryCache: in-process dict, for single-process setups and tests
"""

import json
import logging
import threading
from typing import Any, Optional, Protocol

import redis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def add(self, key: str, value: Any) -> bool:
        """Set ``key`` only if it does not exist yet. Returns True if stored."""
        ...

    def delete(self, key: str) -> None:
        ...


class RedisCache:
    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.from_url(url, socket_connect_timeout=1))

    def ping(self) -> bool:
        return bool(self._client.ping())

    def get(self, key: str) -> Optional[Any]:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        self._client.set(key, json.dumps(value))

    def add(self, key: str, value: Any) -> bool:
        return bool(self._client.set(key, json.dumps(value), nx=True))

    def delete(self, key: str) -> None:
        self._client.delete(key)


class MemoryCache:
    def __init__(self):
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.dumps(value)

    def add(self, key: str, value: Any) -> bool:
        with self._lock:
            if key in self._data:
                return False
            self._data[key] = json.dumps(value)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


def connect_cache(url: str) -> KeyValueStore:
    """Redis when reachable, otherwise the in-process cache."""
    try:
        cache = RedisCache.from_url(url)
        cache.ping()
        logger.info("✅ Redis detected, using it as job cache.")
        return cache
    except redis.RedisError:
        logger.warning("⚠️ Redis not found. Using in-process job cache.")
        return MemoryCache()
