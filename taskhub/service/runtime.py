from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from taskhub.config import get_settings, reset_settings_cache
from taskhub.logging import get_logger
from taskhub.service.auth import AuthService
from taskhub.service.authenticator import (
    Authenticator,
    LegacyTokenVerifier,
    SessionArtifactVerifier,
)
from taskhub.service.credentials import CredentialStore
from taskhub.service.linking import AccountLinkingPolicy
from taskhub.service.oauth import OAuthSessionProvider
from taskhub.service.passwords import PasswordHasher
from taskhub.service.rate_limit import InMemoryRateLimitStore, RateLimiter
from taskhub.service.tokens import LegacyTokenService, SessionArtifactCodec
from taskhub.storage.memory import MemoryStore
from taskhub.storage.postgres import PostgresStore
from taskhub.storage.redis_cache import RedisRateLimitStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            netloc = f"{parsed.username or ''}:***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    ``clock`` drives lockout, backoff and token expiry; tests pass a fake.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.rate_limit_store = self._build_rate_limit_store()
        self.redis_enabled = not isinstance(self.rate_limit_store, InMemoryRateLimitStore)
        self.rate_limiter = RateLimiter(self.rate_limit_store, clock=clock)

        def _now() -> datetime:
            return datetime.fromtimestamp(clock(), tz=timezone.utc)

        self.hasher = PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.credentials = CredentialStore(
            self.store,
            self.hasher,
            max_login_attempts=self.settings.max_login_attempts,
            lock_duration=timedelta(minutes=self.settings.lockout_minutes),
            now=_now,
        )
        self.tokens = LegacyTokenService(
            self.settings.jwt_secret,
            ttl=timedelta(days=self.settings.legacy_token_ttl_days),
            clock=clock,
        )
        self.session_codec = SessionArtifactCodec(
            self.settings.auth_secret,
            ttl=timedelta(days=self.settings.session_ttl_days),
            clock=clock,
        )
        self.linking = AccountLinkingPolicy(self.credentials)
        self.oauth = OAuthSessionProvider(
            self.settings,
            self.credentials,
            self.linking,
            self.session_codec,
            transport=oauth_transport,
            now=_now,
        )
        self.authenticator = Authenticator(
            [
                SessionArtifactVerifier(
                    self.session_codec,
                    self.credentials,
                    cookie_name=self.settings.session_cookie_name,
                ),
                LegacyTokenVerifier(self.tokens),
            ]
        )
        self.auth = AuthService(
            self.credentials, self.linking, self.tokens, self.rate_limiter, self.oauth
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis_enabled,
            oauth_providers=self.oauth.configured_providers(),
        )

    def _build_rate_limit_store(self):
        if not self.settings.redis_url:
            return InMemoryRateLimitStore()
        try:
            store = RedisRateLimitStore(self.settings.redis_url)
            store.verify_connection()
            return store
        except Exception as exc:
            # Counters become per-process until Redis is back
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return InMemoryRateLimitStore()

    async def sweep(self) -> int:
        """Drop expired rate-limit entries and OAuth states."""
        removed = await self.rate_limiter.sweep()
        removed += self.oauth.cleanup_expired_states()
        return removed

    async def close(self) -> None:
        if self.redis_enabled:
            await self.rate_limit_store.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


async def run_sweep_loop(runtime: Runtime, interval_seconds: float) -> None:
    """Background loop that sweeps expired rate-limit state once per interval."""
    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await runtime.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("rate_limit_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("rate_limit_sweep_task_cancelled")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    clock: Callable[[], float] = time.time,
    oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock, oauth_transport=oauth_transport)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "run_sweep_loop"]
