from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from taskhub.logging import get_logger
from taskhub.service.credentials import CredentialStore
from taskhub.service.tokens import LegacyTokenService, SessionArtifactCodec

logger = get_logger(__name__)

LEGACY_TOKEN_COOKIE = "token"
NO_TOKEN = "No authentication token provided"
INVALID_TOKEN = "Invalid or expired token"


@dataclass(frozen=True)
class Principal:
    """Caller identity for the duration of one request; never persisted."""

    user_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    avatar: str = ""
    source: str = "legacy"


@dataclass(frozen=True)
class AuthResult:
    principal: Optional[Principal]
    error: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.principal is not None


class RequestLike(Protocol):
    headers: Any
    cookies: Any


class Verifier(Protocol):
    name: str

    def present(self, request: RequestLike) -> bool: ...

    def verify(self, request: RequestLike) -> Optional[Principal]: ...


class SessionArtifactVerifier:
    """Resolves the session cookie to the account it points at.

    The principal is built from current store state, never from the
    artifact's own claims; a missing account is a failed verification.
    """

    name = "session"

    def __init__(
        self, codec: SessionArtifactCodec, credentials: CredentialStore, *, cookie_name: str
    ) -> None:
        self.codec = codec
        self.credentials = credentials
        self.cookie_name = cookie_name

    def present(self, request: RequestLike) -> bool:
        return bool(request.cookies.get(self.cookie_name))

    def verify(self, request: RequestLike) -> Optional[Principal]:
        artifact = request.cookies.get(self.cookie_name)
        if not artifact:
            return None
        claims = self.codec.decode(artifact)
        if claims is None or not claims.email:
            return None
        try:
            account = self.credentials.find_by_email(claims.email)
        except Exception as exc:
            logger.warning("session_account_lookup_failed", error=str(exc))
            return None
        if account is None:
            logger.info("session_account_missing", user_id=claims.user_id)
            return None
        return Principal(
            user_id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            avatar=account.avatar,
            source=self.name,
        )


class LegacyTokenVerifier:
    """Bearer header first, then the ``token`` cookie."""

    name = "legacy"

    def __init__(self, tokens: LegacyTokenService, *, cookie_name: str = LEGACY_TOKEN_COOKIE) -> None:
        self.tokens = tokens
        self.cookie_name = cookie_name

    def extract_token(self, request: RequestLike) -> Optional[str]:
        header = request.headers.get("authorization")
        if header and header.lower().startswith("bearer "):
            return header.split(" ", 1)[1].strip() or None
        return request.cookies.get(self.cookie_name) or None

    def present(self, request: RequestLike) -> bool:
        return self.extract_token(request) is not None

    def verify(self, request: RequestLike) -> Optional[Principal]:
        payload = self.tokens.verify(self.extract_token(request))
        if payload is None:
            return None
        return Principal(user_id=payload.user_id, email=payload.email, source=self.name)


class Authenticator:
    """Tries each verifier in priority order and returns the first principal.

    Side-effect free apart from the account read the session verifier does.
    The error string is for logs; callers only ever see a generic 401.
    """

    def __init__(self, verifiers: Sequence[Verifier]) -> None:
        self.verifiers = list(verifiers)

    def authenticate(self, request: RequestLike) -> AuthResult:
        for verifier in self.verifiers:
            principal = verifier.verify(request)
            if principal is not None:
                return AuthResult(principal=principal)
        if any(verifier.present(request) for verifier in self.verifiers):
            reason = INVALID_TOKEN
        else:
            reason = NO_TOKEN
        logger.debug("authentication_failed", reason=reason)
        return AuthResult(principal=None, error=reason)


__all__ = [
    "AuthResult",
    "Authenticator",
    "INVALID_TOKEN",
    "LEGACY_TOKEN_COOKIE",
    "LegacyTokenVerifier",
    "NO_TOKEN",
    "Principal",
    "SessionArtifactVerifier",
]
