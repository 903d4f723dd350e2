from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from taskhub.config import Settings
from taskhub.logging import get_logger
from taskhub.service.credentials import CredentialStore
from taskhub.service.errors import AuthenticationError, ValidationError
from taskhub.service.linking import AccountLinkingPolicy, LinkResult, OAuthIdentity
from taskhub.service.tokens import SessionArtifactCodec, SessionClaims
from taskhub.storage.models import User, utcnow

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "label": "Google",
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "label": "GitHub",
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)
OAUTH_FAILED_MESSAGE = "OAuth sign-in failed"

logger = get_logger(__name__)


def provider_label(provider: Optional[str]) -> str:
    config = OAUTH_PROVIDERS.get(provider or "")
    return config["label"] if config else (provider or "").title()


@dataclass
class OAuthSignIn:
    account: User
    link: LinkResult
    artifact: str
    claims: SessionClaims


class OAuthSessionProvider:
    """Google/GitHub sign-in that ends in a session artifact.

    The whole exchange is one server-side step: code in, account and
    artifact out. Upstream failures surface as AuthenticationError.
    """

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        linking: AccountLinkingPolicy,
        codec: SessionArtifactCodec,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.linking = linking
        self.codec = codec
        self._transport = transport
        self._now = now
        self._state_lock = threading.Lock()
        self._oauth_states: Dict[str, Tuple[str, datetime]] = {}
        self._oauth_code_registry: Dict[Tuple[str, str], dict] = {}
        self.logger = logger

    def _get_oauth_credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        if provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def configured_providers(self) -> list[str]:
        return [name for name in OAUTH_PROVIDERS if self._get_oauth_credentials(name)[0]]

    @staticmethod
    def _validate_redirect_uri(redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [state for state, (_, expires_at) in self._oauth_states.items() if expires_at <= now]
            for state in expired:
                self._oauth_states.pop(state, None)
        if expired:
            self.logger.debug("oauth_state_cleanup", cleaned=len(expired))
        return len(expired)

    def start(self, provider: str) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")
        # The token exchange reuses this same configured URI
        callback_uri = self.settings.oauth_redirect_uri
        if not callback_uri:
            self.logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")
        callback_uri = self._validate_redirect_uri(callback_uri)

        state = uuid.uuid4().hex
        with self._state_lock:
            self._oauth_states[state] = (provider, self._now() + OAUTH_STATE_TTL)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an exchanged OAuth payload for testing or offline flows."""

        self._oauth_code_registry[(provider, code)] = payload

    def _consume_state(self, provider: str, state: str) -> bool:
        with self._state_lock:
            stored = self._oauth_states.pop(state, None)
        if not stored:
            return False
        stored_provider, expires_at = stored
        return stored_provider == provider and expires_at > self._now()

    @staticmethod
    def _parse_oauth_userinfo(provider: str, userinfo: dict) -> dict:
        """Parse user info from OAuth provider into standardized format."""
        if provider == "google":
            return {
                "provider_uid": userinfo.get("id") or userinfo.get("sub"),
                "email": userinfo.get("email"),
                "name": userinfo.get("name"),
                "picture": userinfo.get("picture"),
            }
        if provider == "github":
            uid = userinfo.get("id")
            return {
                "provider_uid": str(uid) if uid is not None else None,
                "email": userinfo.get("email"),
                "name": userinfo.get("name") or userinfo.get("login"),
                "picture": userinfo.get("avatar_url"),
            }
        return {"provider_uid": userinfo.get("id") or userinfo.get("sub")}

    @staticmethod
    def _identity_from_payload(provider: str, payload: dict) -> Optional[OAuthIdentity]:
        provider_uid = payload.get("provider_uid")
        email = payload.get("email")
        if not provider_uid or not email:
            return None
        return OAuthIdentity(
            provider=provider,
            provider_id=str(provider_uid),
            email=str(email),
            name=payload.get("name") or "",
            avatar=payload.get("picture") or "",
        )

    async def _fetch_identity(self, provider: str, code: str) -> dict:
        client_id, client_secret = self._get_oauth_credentials(provider)
        redirect_uri = self.settings.oauth_redirect_uri
        if not client_id or not client_secret or not redirect_uri:
            self.logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError(OAUTH_FAILED_MESSAGE)
        provider_config = OAUTH_PROVIDERS[provider]

        async with httpx.AsyncClient(
            timeout=self.settings.oauth_timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            token_response = await client.post(
                provider_config["token_url"],
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "code": code,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
            token_response.raise_for_status()
            token_result = token_response.json()
            access_token = token_result.get("access_token") if isinstance(token_result, dict) else None
            if not access_token:
                self.logger.error("oauth_no_access_token", provider=provider)
                raise AuthenticationError(OAUTH_FAILED_MESSAGE)

            userinfo_headers = {"Authorization": f"Bearer {access_token}"}
            if provider == "github":
                userinfo_headers["Accept"] = "application/vnd.github+json"
            userinfo_response = await client.get(
                provider_config["userinfo_url"], headers=userinfo_headers
            )
            userinfo_response.raise_for_status()
            userinfo = userinfo_response.json()
            if not isinstance(userinfo, dict):
                self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                raise AuthenticationError(OAUTH_FAILED_MESSAGE)
            identity = self._parse_oauth_userinfo(provider, userinfo)

            # GitHub hides private emails from /user
            if provider == "github" and not identity.get("email"):
                emails_response = await client.get(
                    provider_config["emails_url"], headers=userinfo_headers
                )
                if emails_response.status_code == 200:
                    emails = emails_response.json()
                    identity["email"] = next(
                        (
                            e["email"]
                            for e in emails
                            if isinstance(e, dict) and e.get("primary") and e.get("verified")
                        ),
                        None,
                    )
            return identity

    async def exchange_code(self, provider: str, code: str) -> OAuthIdentity:
        """Exchange an authorization code for the upstream identity."""
        if provider not in OAUTH_PROVIDERS:
            raise AuthenticationError(OAUTH_FAILED_MESSAGE)
        payload = self._oauth_code_registry.pop((provider, code), None)
        if payload is None:
            try:
                payload = await self._fetch_identity(provider, code)
            except httpx.HTTPStatusError as exc:
                self.logger.error(
                    "oauth_exchange_http_error",
                    provider=provider,
                    status_code=exc.response.status_code,
                )
                raise AuthenticationError(OAUTH_FAILED_MESSAGE) from exc
            except httpx.TimeoutException as exc:
                self.logger.error("oauth_exchange_timeout", provider=provider)
                raise AuthenticationError(OAUTH_FAILED_MESSAGE) from exc
            except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                self.logger.error("oauth_exchange_error", provider=provider, error=str(exc))
                raise AuthenticationError(OAUTH_FAILED_MESSAGE) from exc

        identity = self._identity_from_payload(provider, payload)
        if identity is None:
            self.logger.error("oauth_identity_incomplete", provider=provider)
            raise AuthenticationError(OAUTH_FAILED_MESSAGE)
        self.logger.info("oauth_exchange_success", provider=provider, provider_uid=identity.provider_id)
        return identity

    def issue_session(self, account: User) -> Tuple[str, SessionClaims]:
        claims = SessionClaims(
            email=account.email,
            user_id=account.id,
            provider=account.provider,
            first_name=account.first_name,
            last_name=account.last_name,
            avatar=account.avatar,
        )
        return self.codec.issue(claims), claims

    async def complete(self, provider: str, code: str, state: str) -> OAuthSignIn:
        """Validate state, exchange the code, link the account and mint the artifact."""
        if not self._consume_state(provider, state):
            self.logger.info("oauth_state_rejected", provider=provider)
            raise AuthenticationError(OAUTH_FAILED_MESSAGE)
        identity = await self.exchange_code(provider, code)
        link = self.linking.link_oauth_identity(identity)
        artifact, claims = self.issue_session(link.account)
        return OAuthSignIn(account=link.account, link=link, artifact=artifact, claims=claims)

    def refresh_claims(self, claims: SessionClaims) -> SessionClaims:
        """Overwrite display claims from the account store.

        Stale claims are kept when the store cannot be reached.
        """
        try:
            account = self.credentials.find_by_email(claims.email)
        except Exception as exc:
            self.logger.warning("session_claims_refresh_failed", error=str(exc))
            return claims
        if account is None:
            return claims
        claims.user_id = account.id
        claims.first_name = account.first_name
        claims.last_name = account.last_name
        claims.avatar = account.avatar or claims.avatar
        claims.provider = account.provider
        return claims


def describe_providers(provider: OAuthSessionProvider) -> list[dict[str, Any]]:
    return [
        {"id": name, "name": OAUTH_PROVIDERS[name]["label"]}
        for name in provider.configured_providers()
    ]


__all__ = [
    "OAUTH_FAILED_MESSAGE",
    "OAUTH_PROVIDERS",
    "OAUTH_STATE_TTL",
    "OAuthSessionProvider",
    "OAuthSignIn",
    "provider_label",
    "describe_providers",
]
