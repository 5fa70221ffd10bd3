"""
Namespaced, TTL-bound cache for plugin metadata and option-definition exports.

Never used for correctness-critical state: a miss only costs a recomputation.
"""
from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from importer.common.logger import get_logger
from importer.common.settings import CacheSettings

log = get_logger()

_MISSING = object()


class CacheStore(ABC):
    """Backend contract: raw keys, already prefixed."""

    @abstractmethod
    def get(self, key: str) -> Any:
        """Return the stored value or the module-level _MISSING sentinel."""

    @abstractmethod
    def put(self, key: str, value: Any, ttl: Optional[int]) -> None:
        ...

    @abstractmethod
    def forget(self, key: str) -> bool:
        ...


class MemoryCacheStore(CacheStore):
    """In-process store with per-key expiry"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[Optional[float], Any]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return _MISSING
            expires_at, value = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return _MISSING
            return value

    def put(self, key: str, value: Any, ttl: Optional[int]) -> None:
        expires_at = None if not ttl else self._clock() + ttl
        with self._lock:
            self._data[key] = (expires_at, value)

    def forget(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None


class RedisCacheStore(CacheStore):
    """Redis store; values are JSON encoded"""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Any:
        raw = self.client.get(key)
        if raw is None:
            return _MISSING
        return json.loads(raw)

    def put(self, key: str, value: Any, ttl: Optional[int]) -> None:
        payload = json.dumps(value, default=str)
        if ttl:
            self.client.set(key, payload, ex=ttl)
        else:
            self.client.set(key, payload)

    def forget(self, key: str) -> bool:
        return bool(self.client.delete(key))


class ImportCache:
    """Prefix/TTL facade over a cache store"""

    def __init__(self, store: Optional[CacheStore] = None, prefix: str = "import_", ttl: int = 3600):
        self.store = store or MemoryCacheStore()
        self.prefix = prefix
        self.ttl = ttl

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> "ImportCache":
        store: CacheStore
        if settings.url:
            log.dev("Using redis cache store", {"url": settings.url})
            store = RedisCacheStore.from_url(settings.url)
        else:
            store = MemoryCacheStore()
        return cls(store, settings.prefix, settings.ttl)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        value = self.store.get(self._key(key))
        return default if value is _MISSING else value

    def has(self, key: str) -> bool:
        return self.store.get(self._key(key)) is not _MISSING

    def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.store.put(self._key(key), value, self.ttl if ttl is None else ttl)

    def forever(self, key: str, value: Any) -> None:
        self.store.put(self._key(key), value, None)

    def forget(self, key: str) -> bool:
        return self.store.forget(self._key(key))

    def remember(self, key: str, factory: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        value = self.store.get(self._key(key))
        if value is not _MISSING:
            return value
        value = factory()
        self.put(key, value, ttl)
        return value
