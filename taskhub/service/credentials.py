from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from taskhub.logging import get_logger
from taskhub.storage.models import CREDENTIALS_PROVIDER, User, utcnow
from taskhub.service.passwords import PasswordHasher

logger = get_logger(__name__)

DEFAULT_MAX_LOGIN_ATTEMPTS = 5
DEFAULT_LOCK_DURATION = timedelta(hours=2)

# Fields ``save`` writes back; lockout and provider linkage have dedicated operations
_PROFILE_FIELDS = ("first_name", "last_name", "avatar", "bio", "email_verified")


class AccountStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        first_name: str,
        last_name: str = "",
        password_hash: Optional[str] = None,
        provider: Optional[str] = CREDENTIALS_PROVIDER,
        provider_id: Optional[str] = None,
        avatar: str = "",
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def attach_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: str,
        *,
        avatar: Optional[str] = None,
    ) -> Optional[User]: ...

    def increment_login_attempts(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def reset_login_attempts(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def verify_connection(self) -> None: ...


class CredentialStore:
    """Account records plus the password and lockout rules that guard them.

    Lockout mutations are delegated to the backing store as single atomic
    operations; this class never does a read-modify-write of the counter.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        *,
        max_login_attempts: int = DEFAULT_MAX_LOGIN_ATTEMPTS,
        lock_duration: timedelta = DEFAULT_LOCK_DURATION,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.max_login_attempts = max_login_attempts
        self.lock_duration = lock_duration
        self._now = now

    def find_by_email(self, email: str) -> Optional[User]:
        return self.store.get_user_by_email(email)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.store.get_user(user_id)

    def create(
        self,
        email: str,
        *,
        first_name: str,
        last_name: str = "",
        password: Optional[str] = None,
        provider: Optional[str] = CREDENTIALS_PROVIDER,
        provider_id: Optional[str] = None,
        avatar: str = "",
        email_verified: bool = False,
    ) -> User:
        """Create an account; the plaintext password, if any, is hashed first."""
        if not password and (provider is None or provider == CREDENTIALS_PROVIDER):
            raise ValueError("account needs a password or an OAuth provider")
        password_hash = self.hasher.hash(password) if password else None
        return self.store.create_user(
            email,
            first_name=first_name,
            last_name=last_name,
            password_hash=password_hash,
            provider=provider,
            provider_id=provider_id,
            avatar=avatar,
            email_verified=email_verified,
        )

    def save(self, account: User) -> User:
        """Persist profile fields, hashing a staged plaintext password if present.

        Without a staged password the stored hash is left untouched.
        """
        fields: dict[str, Any] = {name: getattr(account, name) for name in _PROFILE_FIELDS}
        if account.pending_password:
            fields["password_hash"] = self.hasher.hash(account.pending_password)
        updated = self.store.update_user(account.id, **fields)
        account.pending_password = None
        if updated is None:
            raise LookupError(f"account {account.id} no longer exists")
        return updated

    def compare_password(self, account: User, candidate: Optional[str]) -> bool:
        if not account.password_hash or not candidate:
            return False
        return self.hasher.verify(candidate, account.password_hash)

    def is_locked(self, account: User) -> bool:
        return account.is_locked(self._now())

    def increment_login_attempts(self, account: User) -> Optional[User]:
        updated = self.store.increment_login_attempts(
            account.id,
            max_attempts=self.max_login_attempts,
            lock_duration=self.lock_duration,
            now=self._now(),
        )
        if updated and updated.lock_until and not account.is_locked(self._now()):
            logger.info(
                "account_locked",
                user_id=account.id,
                attempts=updated.login_attempts,
                lock_until=updated.lock_until.isoformat(),
            )
        return updated

    def reset_login_attempts(self, account: User) -> Optional[User]:
        return self.store.reset_login_attempts(account.id, now=self._now())

    def attach_provider(
        self, account: User, provider: str, provider_id: str, *, avatar: Optional[str] = None
    ) -> Optional[User]:
        return self.store.attach_provider(account.id, provider, provider_id, avatar=avatar)


__all__ = ["AccountStore", "CredentialStore"]
