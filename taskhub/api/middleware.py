from __future__ import annotations

from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from taskhub.logging import get_logger, set_correlation_id
from taskhub.service.runtime import get_runtime
from taskhub.service.security import SECURITY_HEADERS

logger = get_logger(__name__)

# Fixed route classification for the boundary guard
PROTECTED_PREFIXES = ("/dashboard",)
AUTH_PREFIXES = ("/auth/login", "/auth/register")
LOGIN_PATH = "/auth/login"
HOME_PATH = "/dashboard"


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in prefixes)


def classify_path(path: str) -> str | None:
    """Return ``"protected"``, ``"auth"`` or None for unguarded paths."""
    if _matches(path, PROTECTED_PREFIXES):
        return "protected"
    if _matches(path, AUTH_PREFIXES):
        return "auth"
    return None


def register_middleware(app: FastAPI) -> None:
    """Install middleware; the last one registered runs first."""

    @app.middleware("http")
    async def guard_boundary(request: Request, call_next):
        kind = classify_path(request.url.path)
        if kind is None:
            return await call_next(request)
        result = get_runtime().authenticator.authenticate(request)
        if kind == "protected" and not result.authenticated:
            target = f"{LOGIN_PATH}?{urlencode({'callbackUrl': request.url.path})}"
            logger.debug("boundary_redirect_to_login", path=request.url.path)
            return RedirectResponse(target, status_code=307)
        if kind == "auth" and result.authenticated:
            logger.debug("boundary_redirect_home", path=request.url.path)
            return RedirectResponse(HOME_PATH, status_code=307)
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Echo X-Request-ID, or mint one, and bind it to the log context."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response


__all__ = [
    "AUTH_PREFIXES",
    "PROTECTED_PREFIXES",
    "classify_path",
    "register_middleware",
]
