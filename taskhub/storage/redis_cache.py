from __future__ import annotations

import hashlib
import math
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from taskhub.storage.models import BackoffEntry, RateWindow


class RedisRateLimitStore:
    """Rate-limit store shared by every instance through Redis.

    Window counters use a Lua script so increment and expiry happen as one
    step; Redis key expiry replaces the periodic sweep.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed window: first hit in a window sets the expiry, later hits only count
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_key(key: str) -> str:
        """Hash keys so user-controlled parts (email, path) cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit(self, key: str, window_seconds: float, now: float) -> RateWindow:
        window_ms = max(1, int(window_seconds * 1000))
        count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_key(key)], args=[window_ms]
        )
        return RateWindow(count=int(count), reset_at=now + int(ttl_ms) / 1000.0)

    async def get(self, key: str) -> Optional[BackoffEntry]:
        raw = await self.client.hgetall(self._normalize_key(key))
        if not raw:
            return None
        try:
            return BackoffEntry(count=int(raw["count"]), last_attempt=float(raw["last_attempt"]))
        except (KeyError, TypeError, ValueError):
            # Corrupted entry - treat as absent
            return None

    async def put(self, key: str, entry: BackoffEntry, ttl_seconds: float) -> None:
        safe_key = self._normalize_key(key)
        pipe = self.client.pipeline()
        pipe.hset(safe_key, mapping={"count": entry.count, "last_attempt": entry.last_attempt})
        pipe.expire(safe_key, max(1, math.ceil(ttl_seconds)))
        await pipe.execute()

    async def delete(self, key: str) -> None:
        await self.client.delete(self._normalize_key(key))

    async def sweep(self, now: float) -> int:
        return 0

    async def close(self) -> None:
        await self.client.aclose()
