"""
Sliding-window attempt limiter for face verification.

HTTP-level limits are handled by slowapi; this limiter counts verification
attempts per identity so that repeated face mismatches are throttled even
across different endpoints. The check and the append happen atomically in the
store, so concurrent attempts cannot both slip through the last free slot.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple
from uuid import uuid4

import redis.asyncio as redis

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW_MINUTES = 10


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int


class InMemoryAttemptStore:
    """Single-process store; a lock guards the prune-count-append sequence."""

    def __init__(self):
        self._attempts: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    async def check_and_record(self, identity: str, now: float, window_seconds: float, max_attempts: int) -> Tuple[bool, int]:
        cutoff = now - window_seconds
        with self._lock:
            # Penceresi tamamen dolmuş kimlikler haritadan atılır.
            stale = [key for key, times in self._attempts.items() if not times or times[-1] <= cutoff]
            for key in stale:
                del self._attempts[key]

            recent = [t for t in self._attempts.get(identity, []) if t > cutoff]
            allowed = len(recent) < max_attempts
            if allowed:
                recent.append(now)
            if recent:
                self._attempts[identity] = recent
            else:
                self._attempts.pop(identity, None)
            return allowed, len(recent)

    async def reset(self, identity: str):
        with self._lock:
            self._attempts.pop(identity, None)


# ZSET skorları milisaniye cinsinden deneme zamanlarıdır.
CHECK_AND_RECORD_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count < max_attempts then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, window)
    return {1, count + 1}
end
return {0, count}
"""


class RedisAttemptStore:
    """Store shared by every worker; the Lua script runs atomically on the server."""

    def __init__(self, connection: redis.Redis, key_prefix: str = "face_attempts"):
        self._redis = connection
        self._key_prefix = key_prefix
        self._script = connection.register_script(CHECK_AND_RECORD_SCRIPT)

    def _key(self, identity: str) -> str:
        return f"{self._key_prefix}:{identity}"

    async def check_and_record(self, identity: str, now: float, window_seconds: float, max_attempts: int) -> Tuple[bool, int]:
        now_ms = int(now * 1000)
        member = f"{now_ms}-{uuid4().hex}"
        allowed, count = await self._script(
            keys=[self._key(identity)],
            args=[now_ms, int(window_seconds * 1000), max_attempts, member],
        )
        return bool(int(allowed)), int(count)

    async def reset(self, identity: str):
        await self._redis.delete(self._key(identity))


class RateLimiter:
    """
    Args:
        store: InMemoryAttemptStore or RedisAttemptStore.
        clock: Returns the current time in seconds; injectable for tests.
    """

    def __init__(self, store=None, clock: Callable[[], float] = time.time):
        self._store = store if store is not None else InMemoryAttemptStore()
        self._clock = clock

    async def check(
        self,
        identity: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_minutes: float = DEFAULT_WINDOW_MINUTES,
    ) -> RateLimitResult:
        allowed, count = await self._store.check_and_record(
            identity, self._clock(), window_minutes * 60, max_attempts
        )
        if not allowed:
            logger.warning(f"Rate limit exceeded for '{identity}': {count}/{max_attempts} attempts in {window_minutes} minutes.")
        return RateLimitResult(allowed=allowed, remaining=max(max_attempts - count, 0))

    async def reset(self, identity: str):
        await self._store.reset(identity)
