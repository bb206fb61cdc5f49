import logging
import time
from typing import Any, Dict, Optional, Tuple

import orjson
from redis.exceptions import RedisError

from quizroom.errors import CachePayloadError

logger = logging.getLogger(__name__)


def fast_dumps(obj) -> str:
    return orjson.dumps(obj).decode("utf-8")


class ResultCache:
    """Hybrid Redis + in-memory memoization for computed payloads.

    Uses the Redis client it is constructed with, or an in-process TTL map
    when none is given. Entries only ever disappear by expiry or explicit
    delete. Nothing correctness-critical lives here: a Redis outage reads as
    a miss and writes are dropped with a warning.
    """

    def __init__(self, redis_client=None):
        self._redis = redis_client
        self._mem: Dict[str, Tuple[float, str]] = {}

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    async def get(self, key: str) -> Optional[str]:
        if self._redis is not None:
            try:
                return await self._redis.get(key)
            except RedisError as e:
                logger.warning(f"Cache read failed for {key}: {e}")
                return None

        entry = self._mem.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            self._mem.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int):
        if self._redis is not None:
            try:
                await self._redis.set(key, value, ex=ttl_seconds)
            except RedisError as e:
                logger.warning(f"Cache write failed for {key}: {e}")
            return
        self._mem[key] = (time.monotonic() + ttl_seconds, value)

    async def exists(self, key: str) -> bool:
        if self._redis is not None:
            try:
                return bool(await self._redis.exists(key))
            except RedisError as e:
                logger.warning(f"Cache exists check failed for {key}: {e}")
                return False
        return await self.get(key) is not None

    async def delete(self, *keys: str):
        for key in keys:
            self._mem.pop(key, None)
        if self._redis is not None and keys:
            try:
                await self._redis.delete(*keys)
            except RedisError as e:
                logger.warning(f"Cache delete failed for {keys}: {e}")

    async def load(self, key: str) -> Optional[Any]:
        """Return the decoded payload stored under key, or None on a miss.

        A payload that does not decode is an error, not a miss.
        """
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.error(f"An error occurred while retrieving {key} from the cache")
            raise CachePayloadError(f"An error occurred while retrieving {key} from the cache")

    async def store(self, key: str, value: Any, ttl_seconds: int):
        await self.set(key, fast_dumps(value), ttl_seconds)

    async def ping(self) -> bool:
        if self._redis is None:
            return True
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False
