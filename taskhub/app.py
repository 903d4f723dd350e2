from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskhub.api.error_handling import register_exception_handlers
from taskhub.api.middleware import register_middleware
from taskhub.api.routes import router
from taskhub.config import Settings, get_settings
from taskhub.logging import get_logger
from taskhub.service.runtime import get_runtime, run_sweep_loop

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime and run the rate-limit sweep for the app's lifetime."""
    runtime = get_runtime()
    sweep_task = asyncio.create_task(
        run_sweep_loop(runtime, runtime.settings.rate_limit_sweep_interval_seconds)
    )
    logger.info(
        "rate_limit_sweep_started",
        interval_seconds=runtime.settings.rate_limit_sweep_interval_seconds,
    )

    yield

    try:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard since credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


async def health() -> Dict[str, Any]:
    """Report account store and rate-limit store status."""
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.redis_enabled:
        limiter_ok = await _run_bounded("redis", runtime.rate_limit_store.verify_connection)
        checks["rate_limit_store"] = {
            "status": "healthy" if limiter_ok else "unhealthy",
            "type": "redis",
        }
    else:
        checks["rate_limit_store"] = {"status": "healthy", "type": "memory"}
        limiter_ok = True

    healthy = db_ok and limiter_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="TaskHub", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )
    register_middleware(app)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    return app


app = create_app()


__all__ = ["app", "create_app", "lifespan"]
