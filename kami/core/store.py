from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from kami.core.errors import StoreUnavailableError
from kami.core.metrics import metrics

logger = logging.getLogger(__name__)


def encode_value(value: Any) -> str:
    # Strings are JSON-quoted too, so a summary like "30" reads back as a string.
    return json.dumps(value, ensure_ascii=False)


def decode_value(raw: Any) -> Any:
    # Some clients hand back already-parsed objects; plain strings may or may not be JSON.
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class KeyValueStore:
    backend = "abstract"

    async def get(self, key: str) -> Any | None:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> bool:
        raise NotImplementedError

    async def set_with_expiry(self, key: str, value: Any, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    backend = "memory"

    def __init__(self) -> None:
        self._store: dict[str, tuple[float | None, str]] = {}
        self._lock = Lock()

    async def get(self, key: str) -> Any | None:
        now = time.time()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at is not None and expires_at <= now:
                self._store.pop(key, None)
                return None
        return decode_value(payload)

    async def set(self, key: str, value: Any) -> bool:
        with self._lock:
            self._store[key] = (None, encode_value(value))
        return True

    async def set_with_expiry(self, key: str, value: Any, ttl_seconds: int) -> bool:
        expires_at = time.time() + max(1, int(ttl_seconds))
        with self._lock:
            self._store[key] = (expires_at, encode_value(value))
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._store.pop(key, None) is not None:
                    removed += 1
        return removed

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._store.keys())


class RedisStore(KeyValueStore):
    backend = "redis"

    def __init__(self, redis_url: str, client: Any | None = None) -> None:
        self._redis = client if client is not None else redis_asyncio.Redis.from_url(redis_url, decode_responses=True)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("redis get failed for key %s: %s", key, exc)
            metrics.inc("kv_errors_total", {"op": "get"})
            return None
        return decode_value(raw)

    async def set(self, key: str, value: Any) -> bool:
        try:
            await self._redis.set(key, encode_value(value))
        except RedisError as exc:
            logger.warning("redis set failed for key %s: %s", key, exc)
            metrics.inc("kv_errors_total", {"op": "set"})
            return False
        return True

    async def set_with_expiry(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            await self._redis.set(key, encode_value(value), ex=max(1, int(ttl_seconds)))
        except RedisError as exc:
            logger.warning("redis setex failed for key %s: %s", key, exc)
            metrics.inc("kv_errors_total", {"op": "set"})
            return False
        return True

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._redis.delete(*keys))
        except RedisError as exc:
            metrics.inc("kv_errors_total", {"op": "delete"})
            raise StoreUnavailableError(f"redis delete failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.error("redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def create_store(redis_url: str | None) -> KeyValueStore:
    if redis_url:
        logger.info("session store backend: redis")
        return RedisStore(redis_url)
    logger.warning("REDIS_URL not set, session state is kept in process memory")
    metrics.inc("kv_fallback_total")
    return MemoryStore()
