from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from taskhub.logging import get_logger
from taskhub.service.credentials import CredentialStore
from taskhub.service.errors import ConflictError
from taskhub.service.security import sanitize_email
from taskhub.storage.errors import ConstraintViolation
from taskhub.storage.models import CREDENTIALS_PROVIDER, User

logger = get_logger(__name__)

ACCOUNT_EXISTS_MESSAGE = "An account with this email already exists. Please login instead."


@dataclass
class OAuthIdentity:
    """Identity returned by an upstream provider after a code exchange."""

    provider: str
    provider_id: str
    email: str
    name: str = ""
    avatar: str = ""


class LinkOutcome(str, Enum):
    CREATED = "created"
    ATTACHED = "attached"
    EXISTING = "existing"


class RegistrationOutcome(str, Enum):
    CREATED = "created"
    PASSWORD_SET = "password_set"


@dataclass
class LinkResult:
    account: User
    outcome: LinkOutcome


@dataclass
class RegistrationResult:
    account: User
    outcome: RegistrationOutcome


def split_display_name(name: str | None) -> Tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "User", ""
    return parts[0], " ".join(parts[1:])


class AccountLinkingPolicy:
    """Decides how a sign-in or registration maps onto account records.

    This is the only place accounts are created. Creation relies on the
    store's unique email constraint, so a retried sign-in that loses a race
    resolves to the account the winner created.
    """

    def __init__(self, credentials: CredentialStore) -> None:
        self.credentials = credentials

    def link_oauth_identity(self, identity: OAuthIdentity) -> LinkResult:
        email = sanitize_email(identity.email)
        existing = self.credentials.find_by_email(email)
        if existing is None:
            first_name, last_name = split_display_name(identity.name)
            try:
                account = self.credentials.create(
                    email,
                    first_name=first_name,
                    last_name=last_name,
                    provider=identity.provider,
                    provider_id=identity.provider_id,
                    avatar=identity.avatar or "",
                    email_verified=True,
                )
            except ConstraintViolation:
                existing = self.credentials.find_by_email(email)
                if existing is None:
                    raise
                logger.info("oauth_link_create_raced", provider=identity.provider)
            else:
                logger.info("oauth_account_created", provider=identity.provider, user_id=account.id)
                return LinkResult(account, LinkOutcome.CREATED)

        if existing.provider is None:
            attached = self.credentials.attach_provider(
                existing, identity.provider, identity.provider_id, avatar=identity.avatar or None
            )
            logger.info("oauth_provider_attached", provider=identity.provider, user_id=existing.id)
            return LinkResult(attached or existing, LinkOutcome.ATTACHED)

        # First linked provider wins; sign-in still succeeds on the existing account
        if existing.provider != identity.provider:
            logger.info(
                "oauth_provider_kept",
                linked_provider=existing.provider,
                provider=identity.provider,
                user_id=existing.id,
            )
        return LinkResult(existing, LinkOutcome.EXISTING)

    def register(
        self, email: str, password: str, *, first_name: str, last_name: str
    ) -> RegistrationResult:
        """Create a credentials account, or give an OAuth-only account its first password."""
        existing = self.credentials.find_by_email(email)
        if existing is not None:
            if not existing.is_oauth_only:
                raise ConflictError(ACCOUNT_EXISTS_MESSAGE)
            existing.set_password(password)
            existing.first_name = first_name
            existing.last_name = last_name
            account = self.credentials.save(existing)
            return RegistrationResult(account, RegistrationOutcome.PASSWORD_SET)

        try:
            account = self.credentials.create(
                email,
                first_name=first_name,
                last_name=last_name,
                password=password,
                provider=CREDENTIALS_PROVIDER,
            )
        except ConstraintViolation:
            raise ConflictError(ACCOUNT_EXISTS_MESSAGE)
        return RegistrationResult(account, RegistrationOutcome.CREATED)


__all__ = [
    "ACCOUNT_EXISTS_MESSAGE",
    "AccountLinkingPolicy",
    "LinkOutcome",
    "LinkResult",
    "OAuthIdentity",
    "RegistrationOutcome",
    "RegistrationResult",
    "split_display_name",
]
