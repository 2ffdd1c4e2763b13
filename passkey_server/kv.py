"""
passkey_server/kv.py

Key-value backends with per-entry TTL.

The credential store (storage.py) only ever talks to the KeyValueStore
contract:

  get(key)               -> str | None
  put(key, value, ttl)   -> None           (ttl in seconds)
  delete(key)            -> None
  list(prefix, limit)    -> list[str]      (ONE page, no pagination)
  get_many(keys)         -> list[str|None] (independent point lookups)

Every operation touches a single key atomically; there are no multi-key
transactions. Expired entries simply stop being returned; there is no
cleanup task.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from itertools import islice
from typing import Dict, Iterable, List, Optional, Tuple

import redis

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def put(self, key: str, value: str, ttl: int) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def list(self, prefix: str, limit: int = LIST_PAGE_SIZE) -> List[str]:
        ...

    def get_many(self, keys: Iterable[str]) -> List[Optional[str]]:
        return [self.get(k) for k in keys]


class MemoryKeyValueStore(KeyValueStore):
    """
    In-process store for tests and single-node development.

    NOT shared across Uvicorn workers; use the Redis backend for anything
    with more than one process.
    """

    def __init__(self, clock=time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.entries: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self.entries.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def put(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self.entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self.entries.pop(key, None)

    def list(self, prefix: str, limit: int = LIST_PAGE_SIZE) -> List[str]:
        with self._lock:
            keys = sorted(k for k in list(self.entries) if k.startswith(prefix))
            return [k for k in keys if self._live(k) is not None][:limit]


class RedisKeyValueStore(KeyValueStore):
    """
    Redis backend: SET EX / DEL / SCAN MATCH / MGET.

    Connectivity failures surface immediately as StoreUnavailable; retries,
    if wanted, belong to the redis client configuration.
    """

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2))

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            logger.error("Redis unavailable: %s", e)
            raise StoreUnavailable(str(e)) from e

    def get(self, key: str) -> Optional[str]:
        return self._call(self.client.get, key)

    def put(self, key: str, value: str, ttl: int) -> None:
        self._call(self.client.set, key, value, ex=ttl)

    def delete(self, key: str) -> None:
        self._call(self.client.delete, key)

    def list(self, prefix: str, limit: int = LIST_PAGE_SIZE) -> List[str]:
        # Listed prefixes hold only "/" and base64url characters: no glob escaping.
        def _scan():
            return list(islice(self.client.scan_iter(match=prefix + "*", count=limit), limit))

        return self._call(_scan)

    def get_many(self, keys: Iterable[str]) -> List[Optional[str]]:
        keys = list(keys)
        if not keys:
            return []
        return self._call(self.client.mget, keys)


def create_kv_store(settings) -> KeyValueStore:
    if settings.STORE_BACKEND == "redis":
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore.from_url(settings.REDIS_URL)
    logger.info("Using in-memory key-value store")
    return MemoryKeyValueStore()
