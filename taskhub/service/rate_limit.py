from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Protocol, Tuple

from taskhub.logging import get_logger
from taskhub.storage.models import BackoffEntry, RateWindow

logger = get_logger(__name__)

# Backoff grows as 2^(n-1) seconds up to this cap; an entry idle this long resets
BACKOFF_MAX_SECONDS = 30 * 60
BACKOFF_RESET_SECONDS = 30 * 60


@dataclass(frozen=True)
class RateLimitRule:
    name: str
    max_requests: int
    window_seconds: int


RATE_LIMIT_RULES: Dict[str, RateLimitRule] = {
    "auth": RateLimitRule("auth", 10, 15 * 60),
    "api": RateLimitRule("api", 100, 60),
    "read": RateLimitRule("read", 200, 60),
    "password_reset": RateLimitRule("password_reset", 3, 60 * 60),
}


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


@dataclass(frozen=True)
class BackoffDecision:
    allowed: bool
    wait_seconds: int = 0


class RateLimitStore(Protocol):
    async def hit(self, key: str, window_seconds: float, now: float) -> RateWindow: ...

    async def get(self, key: str) -> Optional[BackoffEntry]: ...

    async def put(self, key: str, entry: BackoffEntry, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def sweep(self, now: float) -> int: ...


class InMemoryRateLimitStore:
    """Per-process rate-limit state.

    All access goes through one lock so the sweep can run alongside live
    requests; the sweep only drops entries whose window or idle TTL is over.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._windows: Dict[str, RateWindow] = {}
        self._backoff: Dict[str, Tuple[BackoffEntry, float]] = {}

    async def hit(self, key: str, window_seconds: float, now: float) -> RateWindow:
        with self._lock:
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = RateWindow(count=1, reset_at=now + window_seconds)
                self._windows[key] = window
            else:
                window.count += 1
            return replace(window)

    async def get(self, key: str) -> Optional[BackoffEntry]:
        with self._lock:
            stored = self._backoff.get(key)
            return replace(stored[0]) if stored else None

    async def put(self, key: str, entry: BackoffEntry, ttl_seconds: float) -> None:
        with self._lock:
            self._backoff[key] = (replace(entry), entry.last_attempt + ttl_seconds)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._backoff.pop(key, None)

    async def sweep(self, now: float) -> int:
        with self._lock:
            expired_windows = [k for k, w in self._windows.items() if w.reset_at <= now]
            for key in expired_windows:
                del self._windows[key]
            expired_backoff = [k for k, (_, exp) in self._backoff.items() if exp <= now]
            for key in expired_backoff:
                del self._backoff[key]
        return len(expired_windows) + len(expired_backoff)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows) + len(self._backoff)


def backoff_wait_seconds(attempts: int) -> int:
    """Mandatory wait after ``attempts`` recorded login attempts."""
    if attempts <= 0:
        return 0
    return min(2 ** (attempts - 1), BACKOFF_MAX_SECONDS)


class RateLimiter:
    """Fixed-window request limits plus login backoff.

    The two mechanisms keep separate keys and never reset each other.
    Every key is scoped by requester so one client cannot starve others.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.rules = dict(rules or RATE_LIMIT_RULES)
        self._clock = clock
        self._backoff_lock = asyncio.Lock()

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def window_key(rule: RateLimitRule, ip: str, path: str) -> str:
        return f"{rule.name}:{ip}:{path}"

    @staticmethod
    def backoff_key(ip: str, email: str) -> str:
        return f"login:{ip}:{email}"

    async def check(self, rule_name: str, ip: str, path: str) -> RateLimitDecision:
        rule = self.rules[rule_name]
        now = self._clock()
        window = await self.store.hit(self.window_key(rule, ip, path), rule.window_seconds, now)
        allowed = window.count <= rule.max_requests
        retry_after = 0 if allowed else max(1, math.ceil(window.reset_at - now))
        return RateLimitDecision(
            allowed=allowed,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - window.count),
            reset_at=window.reset_at,
            retry_after=retry_after,
        )

    async def check_login_backoff(self, ip: str, email: str) -> BackoffDecision:
        """Record a login attempt for (ip, email) unless it arrives too early.

        A denied attempt leaves the entry untouched, so the counter only
        advances once the caller has waited out the current backoff.
        """
        key = self.backoff_key(ip, email)
        async with self._backoff_lock:
            now = self._clock()
            entry = await self.store.get(key)
            if entry is None:
                await self.store.put(key, BackoffEntry(1, now), BACKOFF_RESET_SECONDS)
                return BackoffDecision(allowed=True)

            wait = backoff_wait_seconds(entry.count)
            elapsed = now - entry.last_attempt
            if elapsed < wait:
                return BackoffDecision(allowed=False, wait_seconds=max(1, math.ceil(wait - elapsed)))

            if elapsed >= BACKOFF_RESET_SECONDS:
                updated = BackoffEntry(1, now)
            else:
                updated = BackoffEntry(entry.count + 1, now)
            await self.store.put(key, updated, BACKOFF_RESET_SECONDS)
            return BackoffDecision(allowed=True)

    async def reset_login_backoff(self, ip: str, email: str) -> None:
        async with self._backoff_lock:
            await self.store.delete(self.backoff_key(ip, email))

    async def sweep(self) -> int:
        removed = await self.store.sweep(self._clock())
        if removed:
            logger.debug("rate_limit_sweep", removed=removed)
        return removed


__all__ = [
    "BACKOFF_MAX_SECONDS",
    "BACKOFF_RESET_SECONDS",
    "BackoffDecision",
    "InMemoryRateLimitStore",
    "RATE_LIMIT_RULES",
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimitStore",
    "RateLimiter",
    "backoff_wait_seconds",
]
