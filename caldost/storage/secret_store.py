from __future__ import annotations

import json
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from caldost.logging import get_logger
from caldost.service.errors import TransientError

logger = get_logger(__name__)


class FieldMatch(str, Enum):
    """Outcome of an atomic compare-and-delete on a JSON secret."""

    ABSENT = "absent"
    MISMATCH = "mismatch"
    MATCHED = "matched"


class SecretStore(Protocol):
    """Key/value store with per-key TTL for OTPs, sessions and access grants.

    Every write carries a TTL; there is no way to store a secret forever.
    """

    async def connect(self) -> None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def pop_if_field_matches(
        self, key: str, field: str, expected: str
    ) -> Tuple[FieldMatch, Optional[str]]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def _check_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if ttl <= 0:
        raise ValueError("secret store entries require a positive TTL")
    return ttl


class RedisSecretStore:
    """Redis-backed secret store. Redis failures surface as ``TransientError``."""

    # Atomic read-compare-delete on a JSON payload field.
    # Returns {0} when absent, {1} on mismatch (entry kept), {2, raw} on match (entry deleted).
    _POP_IF_MATCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {0}
end
local ok, decoded = pcall(cjson.decode, raw)
if not ok or type(decoded) ~= 'table' then
  return {1}
end
local current = decoded[ARGV[1]]
if current == nil or tostring(current) ~= ARGV[2] then
  return {1}
end
redis.call('DEL', KEYS[1])
return {2, raw}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._pop_if_match = self.client.register_script(self._POP_IF_MATCH_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def connect(self) -> None:
        try:
            await self.client.ping()
        except RedisError as exc:
            logger.error("secret_store_connect_failed", error=str(exc))
            raise TransientError("secret store unavailable") from exc
        logger.info("secret_store_connected", backend="redis")

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        try:
            await self.client.set(key, value, ex=ttl)
        except RedisError as exc:
            logger.error("secret_store_write_failed", key=key, error=str(exc))
            raise TransientError("secret store unavailable") from exc

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as exc:
            logger.error("secret_store_read_failed", key=key, error=str(exc))
            raise TransientError("secret store unavailable") from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            logger.error("secret_store_delete_failed", key=key, error=str(exc))
            raise TransientError("secret store unavailable") from exc

    async def pop_if_field_matches(
        self, key: str, field: str, expected: str
    ) -> Tuple[FieldMatch, Optional[str]]:
        try:
            result = await self._pop_if_match(keys=[key], args=[field, expected])
        except RedisError as exc:
            logger.error("secret_store_compare_delete_failed", key=key, error=str(exc))
            raise TransientError("secret store unavailable") from exc
        code = int(result[0])
        if code == 2:
            return FieldMatch.MATCHED, result[1]
        if code == 1:
            return FieldMatch.MISMATCH, None
        return FieldMatch.ABSENT, None

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close the Redis connection pool. Called at shutdown or runtime reset."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemorySecretStore:
    """In-process secret store with the same TTL and atomicity guarantees.

    ``clock`` returns monotonic seconds and is injectable so tests can move
    time forward past a TTL without sleeping.
    """

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._connected = False

    def verify_connection(self) -> None:
        return None

    async def connect(self) -> None:
        self._connected = True
        logger.info("secret_store_connected", backend="memory")

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def pop_if_field_matches(
        self, key: str, field: str, expected: str
    ) -> Tuple[FieldMatch, Optional[str]]:
        with self._lock:
            raw = self._live_value(key)
            if raw is None:
                return FieldMatch.ABSENT, None
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError:
                return FieldMatch.MISMATCH, None
            if not isinstance(decoded, dict) or field not in decoded:
                return FieldMatch.MISMATCH, None
            if str(decoded[field]) != expected:
                return FieldMatch.MISMATCH, None
            del self._entries[key]
            return FieldMatch.MATCHED, raw

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
        self._connected = False


__all__ = ["FieldMatch", "MemorySecretStore", "RedisSecretStore", "SecretStore"]
