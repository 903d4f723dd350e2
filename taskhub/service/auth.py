from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from taskhub.logging import get_logger, log_auth_event, log_security_event
from taskhub.service.credentials import CredentialStore
from taskhub.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from taskhub.service.linking import AccountLinkingPolicy, RegistrationOutcome, RegistrationResult
from taskhub.service.oauth import OAuthSessionProvider, OAuthSignIn, provider_label
from taskhub.service.passwords import validate_password_strength
from taskhub.service.rate_limit import RateLimiter
from taskhub.service.security import ensure_secure_fields, sanitize_email, sanitize_input
from taskhub.service.tokens import LegacyTokenService
from taskhub.storage.models import User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
ACCOUNT_LOCKED = (
    "Your account has been temporarily locked due to too many failed attempts. "
    "Please try again later."
)
PASSWORD_SET = "Password set successfully. You can now login with email and password."
PASSWORD_CHANGED = "Password changed successfully"
ACCOUNT_CREATED = "Account created successfully"
CURRENT_PASSWORD_INCORRECT = "Current password is incorrect"
PASSWORD_REUSED = "New password must be different from current password"


def oauth_only_message(provider: Optional[str]) -> str:
    label = provider_label(provider)
    return (
        f"This account was created with {label}. Please sign in using {label}, "
        "or register with this email to set a password."
    )


@dataclass
class IssuedLogin:
    account: User
    token: str


@dataclass
class Registration:
    result: RegistrationResult
    token: str

    @property
    def account(self) -> User:
        return self.result.account

    @property
    def message(self) -> str:
        if self.result.outcome == RegistrationOutcome.PASSWORD_SET:
            return PASSWORD_SET
        return ACCOUNT_CREATED


class AuthService:
    """Login, registration and password flows over the credential store."""

    def __init__(
        self,
        credentials: CredentialStore,
        linking: AccountLinkingPolicy,
        tokens: LegacyTokenService,
        rate_limiter: RateLimiter,
        oauth: OAuthSessionProvider,
    ) -> None:
        self.credentials = credentials
        self.linking = linking
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.oauth = oauth
        self.logger = logger

    def issue_token(self, account: User) -> str:
        return self.tokens.issue(account.id, account.email)

    @staticmethod
    def _check_strength(password: str, *, field: str) -> None:
        strength = validate_password_strength(password)
        if not strength.is_valid:
            raise ValidationError(
                "Password is not strong enough",
                detail=[{"field": field, "message": message} for message in strength.feedback],
            )

    @staticmethod
    def _clean_name(value: str, field: str, label: str) -> str:
        cleaned = sanitize_input(value).strip()
        if not cleaned:
            raise ValidationError(
                f"{label} is required", detail=[{"field": field, "message": f"{label} is required"}]
            )
        return cleaned

    async def login(self, email: str, password: str, *, ip: str) -> IssuedLogin:
        email = sanitize_email(email)

        backoff = await self.rate_limiter.check_login_backoff(ip, email)
        if not backoff.allowed:
            log_security_event(
                "rate_limit", ip=ip, path="/api/auth/login", reason="login_attempts_exceeded"
            )
            raise RateLimitedError(
                f"Too many login attempts. Please try again in {backoff.wait_seconds} seconds.",
                retry_after=backoff.wait_seconds,
            )

        account = self.credentials.find_by_email(email)
        if account is None:
            self.logger.info("login_failed", ip=ip, reason="user_not_found")
            raise AuthenticationError(INVALID_CREDENTIALS)

        if account.is_oauth_only:
            self.logger.info("login_failed", ip=ip, user_id=account.id, reason="oauth_no_password")
            raise AuthenticationError(oauth_only_message(account.provider))

        if self.credentials.is_locked(account):
            log_security_event("account_locked", ip=ip, user_id=account.id)
            raise AuthenticationError(ACCOUNT_LOCKED)

        if not await asyncio.to_thread(self.credentials.compare_password, account, password):
            self.credentials.increment_login_attempts(account)
            self.logger.info("login_failed", ip=ip, user_id=account.id, reason="invalid_password")
            raise AuthenticationError(INVALID_CREDENTIALS)

        if self.credentials.hasher.needs_rehash(account.password_hash):
            account.set_password(password)
            account = await asyncio.to_thread(self.credentials.save, account)
            self.logger.info("password_rehashed", user_id=account.id)

        account = self.credentials.reset_login_attempts(account) or account
        await self.rate_limiter.reset_login_backoff(ip, email)
        log_auth_event("login", account.email, ip=ip)
        return IssuedLogin(account=account, token=self.issue_token(account))

    async def register(
        self,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: str,
        ip: str = "unknown",
    ) -> Registration:
        email = sanitize_email(email)
        first_name = self._clean_name(first_name, "first_name", "First name")
        last_name = self._clean_name(last_name, "last_name", "Last name")
        ensure_secure_fields(
            {"first_name": first_name, "last_name": last_name}, ip=ip, path="/api/auth/register"
        )
        self._check_strength(password, field="password")

        result = await asyncio.to_thread(
            self.linking.register, email, password, first_name=first_name, last_name=last_name
        )
        if result.outcome == RegistrationOutcome.PASSWORD_SET:
            log_auth_event("oauth_password_set", email, ip=ip)
        else:
            log_auth_event("register", email, ip=ip)
        return Registration(result=result, token=self.issue_token(result.account))

    async def change_password(
        self,
        user_id: str,
        *,
        current_password: Optional[str],
        new_password: str,
        ip: str = "unknown",
    ) -> str:
        """Change a password, or set the first one on an OAuth-only account."""
        self._check_strength(new_password, field="new_password")

        account = self.credentials.find_by_id(user_id)
        if account is None:
            raise NotFoundError("User not found")

        if account.is_oauth_only:
            account.set_password(new_password)
            await asyncio.to_thread(self.credentials.save, account)
            log_auth_event("password_set", account.email, ip=ip, provider=account.provider)
            return PASSWORD_SET

        matches = await asyncio.to_thread(
            self.credentials.compare_password, account, current_password
        )
        if not matches:
            log_security_event(
                "password_change_failed", ip=ip, user_id=user_id, reason="invalid_current_password"
            )
            raise ValidationError(
                CURRENT_PASSWORD_INCORRECT,
                detail=[{"field": "current_password", "message": CURRENT_PASSWORD_INCORRECT}],
            )

        if await asyncio.to_thread(self.credentials.compare_password, account, new_password):
            raise ValidationError(
                PASSWORD_REUSED, detail=[{"field": "new_password", "message": PASSWORD_REUSED}]
            )

        account.set_password(new_password)
        await asyncio.to_thread(self.credentials.save, account)
        log_auth_event("password_change", account.email, ip=ip)
        return PASSWORD_CHANGED

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
        ip: str = "unknown",
    ) -> User:
        account = self.credentials.find_by_id(user_id)
        if account is None:
            raise NotFoundError("User not found")

        if first_name is not None:
            first_name = self._clean_name(first_name, "first_name", "First name")
        if last_name is not None:
            last_name = self._clean_name(last_name, "last_name", "Last name")
        if bio is not None:
            bio = sanitize_input(bio)
        ensure_secure_fields(
            {"first_name": first_name, "last_name": last_name, "bio": bio},
            ip=ip,
            path="/api/user/profile",
        )

        for name, value in (
            ("first_name", first_name),
            ("last_name", last_name),
            ("bio", bio),
            ("avatar", avatar),
        ):
            if value is not None:
                setattr(account, name, value)
        updated = self.credentials.save(account)
        self.logger.debug("profile_updated", user_id=user_id)
        return updated

    async def complete_oauth(self, provider: str, code: str, state: str, *, ip: str) -> OAuthSignIn:
        sign_in = await self.oauth.complete(provider, code, state)
        log_auth_event(
            "oauth_sign_in",
            sign_in.account.email,
            ip=ip,
            provider=provider,
            outcome=sign_in.link.outcome.value,
        )
        return sign_in


__all__ = [
    "ACCOUNT_CREATED",
    "ACCOUNT_LOCKED",
    "AuthService",
    "CURRENT_PASSWORD_INCORRECT",
    "INVALID_CREDENTIALS",
    "IssuedLogin",
    "PASSWORD_CHANGED",
    "PASSWORD_REUSED",
    "PASSWORD_SET",
    "Registration",
    "oauth_only_message",
]
