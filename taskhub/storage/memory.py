from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from taskhub.logging import get_logger
from taskhub.storage.errors import ConstraintViolation
from taskhub.storage.models import CREDENTIALS_PROVIDER, User, utcnow

# Columns callers may change through update_user; lockout and provider
# linkage have their own conditional operations.
_UPDATABLE_FIELDS = frozenset(
    {"first_name", "last_name", "avatar", "bio", "password_hash", "email_verified"}
)


class MemoryStore:
    """In-memory account store persisted as JSON under ``fs_root``.

    Every mutation runs under a single re-entrant lock, so read-modify-write
    sequences such as the lockout increment are atomic per process.
    """

    def __init__(self, fs_root: str = "/tmp/taskhub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    # users
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
    ) -> User:
        normalized = self._normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                first_name=first_name,
                last_name=last_name,
                password_hash=password_hash,
                provider=provider,
                provider_id=provider_id,
                avatar=avatar or "",
                email_verified=email_verified,
                created_at=now,
                updated_at=now,
            )
            with self._transaction():
                self.users[user.id] = user
                self._email_index[normalized] = user.id
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(self._normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            with self._transaction():
                for name, value in fields.items():
                    setattr(user, name, value)
                user.updated_at = utcnow()
            return replace(user)

    def attach_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: str,
        *,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        """Link an OAuth provider only if the account has none yet.

        The avatar is backfilled only when the account has no avatar.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.provider is None:
                with self._transaction():
                    user.provider = provider
                    user.provider_id = provider_id
                    if not user.avatar and avatar:
                        user.avatar = avatar
                    user.updated_at = utcnow()
            return replace(user)

    def increment_login_attempts(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            with self._transaction():
                if user.lock_until is not None and user.lock_until <= now:
                    # Expired lock: start a fresh count
                    user.login_attempts = 1
                    user.lock_until = None
                else:
                    user.login_attempts += 1
                    already_locked = user.lock_until is not None and user.lock_until > now
                    if user.login_attempts >= max_attempts and not already_locked:
                        user.lock_until = now + lock_duration
                user.updated_at = now
            return replace(user)

    def reset_login_attempts(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            with self._transaction():
                user.login_attempts = 0
                user.lock_until = None
                user.last_login = now
                user.updated_at = now
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            with self._transaction():
                user = self.users.pop(user_id)
                self._email_index.pop(user.email, None)
            return True

    # persistence
    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Apply a mutation and persist it, restoring the prior state if the write fails.

        Callers hold ``_data_lock``.
        """
        users = {user_id: replace(user) for user_id, user in self.users.items()}
        email_index = dict(self._email_index)
        yield
        try:
            self._persist_state()
        except RuntimeError:
            self.users = users
            self._email_index = email_index
            raise

    def _persist_state(self) -> None:
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        try:
            path = self._state_path()
            staging = path.with_suffix(".tmp")
            staging.write_text(json.dumps(state, indent=2))
            staging.replace(path)
        except (OSError, TypeError, ValueError) as exc:
            self.logger.error(
                "memory_store_persist_failed", fs_root=str(self.fs_root), error=str(exc)
            )
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self._email_index = {u.email: u.id for u in self.users.values()}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "password_hash": user.password_hash,
            "provider": user.provider,
            "provider_id": user.provider_id,
            "avatar": user.avatar,
            "bio": user.bio,
            "email_verified": user.email_verified,
            "last_login": self._serialize_datetime(user.last_login),
            "login_attempts": user.login_attempts,
            "lock_until": self._serialize_datetime(user.lock_until),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            password_hash=data.get("password_hash"),
            provider=data.get("provider"),
            provider_id=data.get("provider_id"),
            avatar=data.get("avatar") or "",
            bio=data.get("bio") or "",
            email_verified=bool(data.get("email_verified", False)),
            last_login=self._deserialize_datetime(data.get("last_login")),
            login_attempts=int(data.get("login_attempts", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
