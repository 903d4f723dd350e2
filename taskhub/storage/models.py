from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

CREDENTIALS_PROVIDER = "credentials"
OAUTH_PROVIDERS = ("google", "github")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str = ""
    password_hash: Optional[str] = None
    provider: Optional[str] = CREDENTIALS_PROVIDER
    provider_id: Optional[str] = None
    avatar: str = ""
    bio: str = ""
    email_verified: bool = False
    last_login: Optional[datetime] = None
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Plaintext staged by set_password(); hashed and cleared on save
    pending_password: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def is_oauth_only(self) -> bool:
        """True for accounts minted by an OAuth sign-in that never set a password."""
        return (
            self.provider is not None
            and self.provider != CREDENTIALS_PROVIDER
            and not self.password_hash
        )

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lock_until is None:
            return False
        return self.lock_until > (now or utcnow())

    def set_password(self, plaintext: str) -> None:
        self.pending_password = plaintext

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass
class RateWindow:
    """Fixed-window counter state for one (scope, identity) key."""

    count: int
    reset_at: float


@dataclass
class BackoffEntry:
    """Login backoff state for one (ip, email) key."""

    count: int
    last_attempt: float
