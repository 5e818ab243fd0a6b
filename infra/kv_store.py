"""
Shared key-value store backends.

PositionStore and the shared price-cache tier talk to this interface only.
Three backends are available:

- memory: process-local, thread-safe, TTL driven by an injectable clock
- json:   memory semantics, persisted atomically to disk after every write
- redis:  thin adapter over the redis client, for multi-process deployments

Values are strings; callers own serialization.
"""

import fnmatch
import json
import logging
import os
import tempfile
import threading
import time
import zlib
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set

import redis

from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# per-key writer locks are striped so memory stays bounded however many keys pass through
KEY_LOCK_STRIPES = 64


class KeyValueStore(ABC):
    """Operations the risk core needs from a shared store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def delete(self, *keys: str) -> int:
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def expire(self, key: str, ttl_seconds: float) -> bool:
        ...

    @abstractmethod
    def hget(self, key: str, field: str) -> Optional[str]:
        ...

    @abstractmethod
    def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        ...

    @abstractmethod
    def hgetall(self, key: str) -> Dict[str, str]:
        ...

    @abstractmethod
    def sadd(self, key: str, *members: str) -> int:
        ...

    @abstractmethod
    def srem(self, key: str, *members: str) -> int:
        ...

    @abstractmethod
    def smembers(self, key: str) -> Set[str]:
        ...

    @abstractmethod
    def rpush(self, key: str, *values: str) -> int:
        ...

    @abstractmethod
    def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        ...

    @abstractmethod
    def keys(self, pattern: str = "*") -> List[str]:
        ...

    @abstractmethod
    def lock(self, key: str):
        """Context manager serializing writers on ``key``."""

    def close(self) -> None:
        pass


class MemoryKeyValueStore(KeyValueStore):
    """
    In-process store with Redis-like semantics.

    Expired keys are dropped lazily on access. Type mismatches (e.g. hget on a
    set) raise TypeError the way Redis raises WRONGTYPE.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._mutex = threading.RLock()
        self._key_locks: List[threading.Lock] = [threading.Lock() for _ in range(KEY_LOCK_STRIPES)]

    # ---- internals -------------------------------------------------

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _read(self, key: str, kind: type) -> Any:
        self._purge_if_expired(key)
        value = self._data.get(key)
        if value is not None and not isinstance(value, kind):
            raise TypeError(f"key {key!r} holds {type(value).__name__}, not {kind.__name__}")
        return value

    def _after_write(self) -> None:
        """Hook for persistent subclasses."""

    # ---- strings ---------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        with self._mutex:
            return self._read(key, str)

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        with self._mutex:
            self._data[key] = str(value)
            if ttl_seconds is not None:
                self._expiry[key] = self._clock() + float(ttl_seconds)
            else:
                self._expiry.pop(key, None)
            self._after_write()

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._mutex:
            for key in keys:
                self._purge_if_expired(key)
                if key in self._data:
                    del self._data[key]
                    removed += 1
                self._expiry.pop(key, None)
            if removed:
                self._after_write()
        return removed

    def exists(self, key: str) -> bool:
        with self._mutex:
            self._purge_if_expired(key)
            return key in self._data

    def expire(self, key: str, ttl_seconds: float) -> bool:
        with self._mutex:
            self._purge_if_expired(key)
            if key not in self._data:
                return False
            self._expiry[key] = self._clock() + float(ttl_seconds)
            self._after_write()
            return True

    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, None when the key has no expiry or is missing."""
        with self._mutex:
            self._purge_if_expired(key)
            deadline = self._expiry.get(key)
            if deadline is None or key not in self._data:
                return None
            return max(0.0, deadline - self._clock())

    # ---- hashes ----------------------------------------------------

    def hget(self, key: str, field: str) -> Optional[str]:
        with self._mutex:
            value = self._read(key, dict)
            return None if value is None else value.get(field)

    def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        with self._mutex:
            value = self._read(key, dict)
            if value is None:
                value = {}
                self._data[key] = value
            for field, item in mapping.items():
                value[str(field)] = str(item)
            self._after_write()

    def hgetall(self, key: str) -> Dict[str, str]:
        with self._mutex:
            value = self._read(key, dict)
            return dict(value) if value else {}

    # ---- sets ------------------------------------------------------

    def sadd(self, key: str, *members: str) -> int:
        with self._mutex:
            value = self._read(key, set)
            if value is None:
                value = set()
                self._data[key] = value
            before = len(value)
            value.update(str(m) for m in members)
            added = len(value) - before
            if added:
                self._after_write()
            return added

    def srem(self, key: str, *members: str) -> int:
        with self._mutex:
            value = self._read(key, set)
            if not value:
                return 0
            removed = 0
            for member in members:
                if member in value:
                    value.discard(member)
                    removed += 1
            if not value:
                self._data.pop(key, None)
                self._expiry.pop(key, None)
            if removed:
                self._after_write()
            return removed

    def smembers(self, key: str) -> Set[str]:
        with self._mutex:
            value = self._read(key, set)
            return set(value) if value else set()

    # ---- lists -----------------------------------------------------

    def rpush(self, key: str, *values: str) -> int:
        with self._mutex:
            value = self._read(key, list)
            if value is None:
                value = []
                self._data[key] = value
            value.extend(str(v) for v in values)
            self._after_write()
            return len(value)

    def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        with self._mutex:
            value = self._read(key, list)
            if not value:
                return []
            # Redis LRANGE end index is inclusive
            stop = None if end == -1 else end + 1
            return list(value[start:stop])

    # ---- misc ------------------------------------------------------

    def keys(self, pattern: str = "*") -> List[str]:
        with self._mutex:
            for key in list(self._data):
                self._purge_if_expired(key)
            return sorted(k for k in self._data if fnmatch.fnmatchcase(k, pattern))

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        key_lock = self._key_locks[zlib.crc32(key.encode("utf-8")) % KEY_LOCK_STRIPES]
        with key_lock:
            yield


class JsonFileKeyValueStore(MemoryKeyValueStore):
    """
    Memory store persisted to a JSON file.

    Every write is flushed with a temp file + os.replace so a crash never
    leaves a half-written store behind.
    """

    def __init__(self, path: str, clock: Callable[[], float] = time.time):
        super().__init__(clock=clock)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("Initialized JsonFileKeyValueStore at %s", self.path)

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No store file found at %s, starting empty", self.path)
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to load store file %s: %s", self.path, e)
            return

        for key, entry in (payload.get("data") or {}).items():
            kind = entry.get("type")
            raw = entry.get("value")
            if kind == "set":
                self._data[key] = set(raw or [])
            elif kind == "hash":
                self._data[key] = dict(raw or {})
            elif kind == "list":
                self._data[key] = list(raw or [])
            else:
                self._data[key] = str(raw)
        self._expiry = {k: float(v) for k, v in (payload.get("expiry") or {}).items()}

    def _serialize(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key, value in self._data.items():
            if isinstance(value, set):
                data[key] = {"type": "set", "value": sorted(value)}
            elif isinstance(value, dict):
                data[key] = {"type": "hash", "value": value}
            elif isinstance(value, list):
                data[key] = {"type": "list", "value": value}
            else:
                data[key] = {"type": "string", "value": value}
        return {"data": data, "expiry": dict(self._expiry)}

    def _after_write(self) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".kv_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(self._serialize(), f, indent=2, sort_keys=True)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise


class RedisKeyValueStore(KeyValueStore):
    """Adapter over a redis client; responses are decoded to str."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None,
        lock_timeout: float = 10.0,
        lock_blocking_timeout: float = 5.0,
    ):
        self._client = client or redis.Redis.from_url(url, decode_responses=True)
        self._lock_timeout = lock_timeout
        self._lock_blocking_timeout = lock_blocking_timeout
        logger.info("Initialized RedisKeyValueStore at %s", url)

    def get(self, key: str) -> Optional[str]:
        return self._client.get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        if ttl_seconds is not None:
            self._client.set(key, value, px=max(1, int(ttl_seconds * 1000)))
        else:
            self._client.set(key, value)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._client.delete(*keys))

    def exists(self, key: str) -> bool:
        return bool(self._client.exists(key))

    def expire(self, key: str, ttl_seconds: float) -> bool:
        return bool(self._client.pexpire(key, max(1, int(ttl_seconds * 1000))))

    def hget(self, key: str, field: str) -> Optional[str]:
        return self._client.hget(key, field)

    def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        self._client.hset(key, mapping={str(k): str(v) for k, v in mapping.items()})

    def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self._client.hgetall(key) or {})

    def sadd(self, key: str, *members: str) -> int:
        return int(self._client.sadd(key, *members)) if members else 0

    def srem(self, key: str, *members: str) -> int:
        return int(self._client.srem(key, *members)) if members else 0

    def smembers(self, key: str) -> Set[str]:
        return set(self._client.smembers(key) or set())

    def rpush(self, key: str, *values: str) -> int:
        return int(self._client.rpush(key, *values)) if values else 0

    def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        return list(self._client.lrange(key, start, end))

    def keys(self, pattern: str = "*") -> List[str]:
        return sorted(self._client.scan_iter(match=pattern))

    def lock(self, key: str):
        return self._client.lock(
            f"lock:{key}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_blocking_timeout,
        )

    def close(self) -> None:
        self._client.close()


def create_kv_store_from_config(cfg: Optional[Dict[str, Any]], clock: Callable[[], float] = time.time) -> KeyValueStore:
    """
    Build a store from the ``store`` block of app.yaml.

    Example:
        store:
          backend: redis
          redis_url: ${REDIS_URL}
    """
    cfg = cfg or {}
    backend = str(cfg.get("backend", "memory")).lower()

    if backend == "memory":
        return MemoryKeyValueStore(clock=clock)
    if backend == "json":
        path = cfg.get("path") or os.getenv("KV_STORE_FILE", "data/.kv_store.json")
        return JsonFileKeyValueStore(os.path.expandvars(path), clock=clock)
    if backend == "redis":
        url = cfg.get("redis_url") or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        url = os.path.expandvars(url)
        if not url or "${" in url:
            raise ConfigurationError("store.redis_url is required for the redis backend")
        return RedisKeyValueStore(
            url=url,
            lock_timeout=float(cfg.get("lock_timeout_seconds", 10.0)),
            lock_blocking_timeout=float(cfg.get("lock_blocking_timeout_seconds", 5.0)),
        )
    raise ConfigurationError(f"Unknown store backend: {backend}")
