from __future__ import annotations

import functools
import inspect
import math
import typing
from typing import Any, Awaitable, Callable

from fastapi import Request, Response

from taskhub.logging import get_logger, log_security_event
from taskhub.service.authenticator import Principal
from taskhub.service.errors import AuthenticationError, NotFoundError, RateLimitedError
from taskhub.service.rate_limit import RateLimitDecision
from taskhub.service.runtime import get_runtime

logger = get_logger(__name__)

AUTH_REQUIRED = "Authentication required"
TOO_MANY_REQUESTS = "Too many requests. Please try again later."


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def apply_rate_limit_headers(response: Response, decision: RateLimitDecision, now: float) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    response.headers["X-RateLimit-Reset"] = str(max(0, math.ceil(decision.reset_at - now)))


def rate_limit(rule_name: str) -> Callable[..., Awaitable[RateLimitDecision]]:
    """Dependency factory enforcing one fixed-window rule per client IP and path."""

    async def _enforce(request: Request, response: Response) -> RateLimitDecision:
        runtime = get_runtime()
        ip = get_client_ip(request)
        path = request.url.path
        decision = await runtime.rate_limiter.check(rule_name, ip, path)
        if not decision.allowed:
            log_security_event("rate_limit", ip=ip, path=path, rule=rule_name)
            raise RateLimitedError(TOO_MANY_REQUESTS, retry_after=decision.retry_after)
        apply_rate_limit_headers(response, decision, runtime.rate_limiter.now())
        return decision

    _enforce.__name__ = f"rate_limit_{rule_name}"
    return _enforce


def authenticate_request(request: Request) -> Principal:
    """Resolve the caller or raise a generic 401."""
    result = get_runtime().authenticator.authenticate(request)
    if not result.authenticated:
        log_security_event(
            "unauthorized",
            ip=get_client_ip(request),
            path=request.url.path,
            reason=result.error,
        )
        raise AuthenticationError(AUTH_REQUIRED)
    request.state.principal = result.principal
    return result.principal


async def require_auth(request: Request) -> Principal:
    return authenticate_request(request)


def requires_auth(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Decorator form of :func:`require_auth`.

    The wrapped handler receives the resolved caller as ``principal``; the
    handler body never runs for an unauthenticated request.
    """
    signature = inspect.signature(handler)
    hints = typing.get_type_hints(handler)
    takes_request = "request" in signature.parameters
    parameters = [
        param.replace(annotation=hints.get(name, param.annotation))
        for name, param in signature.parameters.items()
        if name != "principal"
    ]
    if not takes_request:
        parameters.append(
            inspect.Parameter("request", inspect.Parameter.KEYWORD_ONLY, annotation=Request)
        )

    @functools.wraps(handler)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        request = kwargs["request"] if takes_request else kwargs.pop("request")
        principal = authenticate_request(request)
        return await handler(*args, principal=principal, **kwargs)

    wrapper.__signature__ = signature.replace(
        parameters=parameters, return_annotation=inspect.Signature.empty
    )
    return wrapper


def ensure_owner(resource_owner_id: str, principal: Principal) -> None:
    """Raise 404 when the resource belongs to another account."""
    if resource_owner_id != principal.user_id:
        logger.info("ownership_check_failed", user_id=principal.user_id)
        raise NotFoundError("Resource not found")


__all__ = [
    "AUTH_REQUIRED",
    "TOO_MANY_REQUESTS",
    "apply_rate_limit_headers",
    "authenticate_request",
    "ensure_owner",
    "get_client_ip",
    "rate_limit",
    "require_auth",
    "requires_auth",
]
