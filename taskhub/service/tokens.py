from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from cryptography.fernet import Fernet, InvalidToken

from taskhub.logging import get_logger

logger = get_logger(__name__)

DEFAULT_LEGACY_TTL = timedelta(days=7)
DEFAULT_SESSION_TTL = timedelta(days=7)


@dataclass(frozen=True)
class LegacyTokenPayload:
    user_id: str
    email: str
    iat: int
    exp: int


class LegacyTokenService:
    """HS256 tokens carried in the ``token`` cookie or a Bearer header.

    Stateless: there is no revocation list, so logout only clears the cookie.
    ``verify`` returns None for every failure; the reason goes to debug logs.
    """

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_LEGACY_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("legacy token secret is required")
        self._secret = secret.encode()
        self.ttl = ttl
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user_id: str, email: str) -> str:
        now = int(self._clock())
        payload = {
            "userId": user_id,
            "email": email,
            "iat": now,
            "exp": now + int(self.ttl.total_seconds()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: Optional[str]) -> Optional[LegacyTokenPayload]:
        if not token:
            return None
        # Issued tokens are ASCII base64url
        if not token.isascii():
            logger.debug("legacy_token_rejected", reason="malformed")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.debug("legacy_token_rejected", reason="malformed")
            return None

        # Reject alg confusion before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("legacy_token_rejected", reason="header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.debug("legacy_token_rejected", reason="bad_algorithm")
            return None

        # compare_digest only accepts ASCII str, so compare bytes
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            logger.debug("legacy_token_rejected", reason="bad_signature")
            return None

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.debug("legacy_token_rejected", reason="payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            logger.debug("legacy_token_rejected", reason="payload_not_object")
            return None

        user_id = payload.get("userId")
        email = payload.get("email")
        try:
            iat = int(payload.get("iat", 0))
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            logger.debug("legacy_token_rejected", reason="bad_claims")
            return None
        if not isinstance(user_id, str) or not isinstance(email, str) or not user_id:
            logger.debug("legacy_token_rejected", reason="bad_claims")
            return None
        if exp <= self._clock():
            logger.debug("legacy_token_rejected", reason="expired")
            return None
        return LegacyTokenPayload(user_id=user_id, email=email, iat=iat, exp=exp)


@dataclass
class SessionClaims:
    """Display claims carried by the session artifact.

    The artifact points at an email; user_id and the display fields are
    refreshed from the account store whenever it is reachable.
    """

    email: str
    user_id: str
    provider: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    avatar: str = ""
    iat: int = 0
    exp: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionClaims":
        return cls(
            email=str(data["email"]),
            user_id=str(data["user_id"]),
            provider=data.get("provider"),
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            avatar=data.get("avatar") or "",
            iat=int(data.get("iat", 0)),
            exp=int(data["exp"]),
        )


class SessionArtifactCodec:
    """Opaque, encrypted session artifact keyed from AUTH_SECRET."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("session artifact secret is required")
        self._cipher = Fernet(self._derive_cipher_key(secret))
        self.ttl = ttl
        self._clock = clock

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def issue(self, claims: SessionClaims) -> str:
        now = int(self._clock())
        claims.iat = now
        claims.exp = now + int(self.ttl.total_seconds())
        raw = json.dumps(claims.to_dict(), separators=(",", ":")).encode()
        return self._cipher.encrypt_at_time(raw, now).decode()

    def decode(self, artifact: Optional[str]) -> Optional[SessionClaims]:
        if not artifact:
            return None
        try:
            raw = self._cipher.decrypt(artifact.encode())
        except InvalidToken:
            logger.debug("session_artifact_rejected", reason="invalid")
            return None
        try:
            claims = SessionClaims.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError):
            logger.debug("session_artifact_rejected", reason="bad_claims")
            return None
        if claims.exp <= self._clock():
            logger.debug("session_artifact_rejected", reason="expired")
            return None
        return claims


__all__ = [
    "LegacyTokenPayload",
    "LegacyTokenService",
    "SessionArtifactCodec",
    "SessionClaims",
]
