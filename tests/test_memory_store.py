"""Tests for the JSON-persisted in-memory account store."""

from datetime import datetime, timedelta, timezone

import pytest

from taskhub.storage.errors import ConstraintViolation
from taskhub.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_email_is_unique_case_insensitively(store):
    store.create_user("dup@example.com", first_name="One", password_hash="h")
    with pytest.raises(ConstraintViolation):
        store.create_user("DUP@example.com", first_name="Two", password_hash="h")


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        "persist@example.com", first_name="Per", last_name="Sist", password_hash="h"
    )
    store.increment_login_attempts(
        user.id,
        max_attempts=1,
        lock_duration=timedelta(hours=2),
        now=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_user_by_email("persist@example.com")

    assert restored.id == user.id
    assert restored.last_name == "Sist"
    assert restored.login_attempts == 1
    assert restored.lock_until == datetime(2024, 1, 1, 2, tzinfo=timezone.utc)
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_returned_records_are_copies(store):
    user = store.create_user("copy@example.com", first_name="Copy", password_hash="h")
    user.first_name = "Changed"

    assert store.get_user(user.id).first_name == "Copy"


def test_update_rejects_lockout_and_provider_fields(store):
    user = store.create_user("guard@example.com", first_name="G", password_hash="h")
    with pytest.raises(ValueError):
        store.update_user(user.id, login_attempts=0)
    with pytest.raises(ValueError):
        store.update_user(user.id, provider="google")


def test_update_of_missing_user_returns_none(store):
    assert store.update_user("missing", first_name="x") is None
    assert store.increment_login_attempts(
        "missing", max_attempts=5, lock_duration=timedelta(hours=2)
    ) is None


def test_attach_provider_keeps_existing_avatar(store):
    user = store.create_user(
        "avatar@example.com",
        first_name="A",
        password_hash="h",
        provider=None,
        avatar="https://example.com/mine.png",
    )
    attached = store.attach_provider(
        user.id, "google", "g-1", avatar="https://example.com/theirs.png"
    )

    assert attached.provider == "google"
    assert attached.avatar == "https://example.com/mine.png"


def test_delete_user_frees_email(store):
    user = store.create_user("gone@example.com", first_name="Gone", password_hash="h")
    assert store.delete_user(user.id) is True
    assert store.get_user_by_email("gone@example.com") is None
    store.create_user("gone@example.com", first_name="Back", password_hash="h")


def test_list_users_newest_first(store):
    store.create_user("first@example.com", first_name="F", password_hash="h")
    store.create_user("second@example.com", first_name="S", password_hash="h")

    emails = [user.email for user in store.list_users()]
    assert set(emails) == {"first@example.com", "second@example.com"}
    assert len(store.list_users(limit=1)) == 1


def _fail_writes(store, monkeypatch):
    def unwritable():
        raise PermissionError("read-only file system")

    monkeypatch.setattr(store, "_state_path", unwritable)


def test_failed_write_rolls_back_update(store, monkeypatch):
    user = store.create_user("roll@example.com", first_name="Roll", password_hash="h")
    _fail_writes(store, monkeypatch)

    with pytest.raises(RuntimeError):
        store.update_user(user.id, first_name="Changed")
    with pytest.raises(RuntimeError):
        store.increment_login_attempts(
            user.id, max_attempts=1, lock_duration=timedelta(hours=2)
        )

    current = store.get_user(user.id)
    assert current.first_name == "Roll"
    assert current.login_attempts == 0
    assert current.lock_until is None


def test_failed_write_rolls_back_create_and_delete(store, monkeypatch):
    kept = store.create_user("kept@example.com", first_name="Kept", password_hash="h")
    _fail_writes(store, monkeypatch)

    with pytest.raises(RuntimeError):
        store.create_user("new@example.com", first_name="New", password_hash="h")
    with pytest.raises(RuntimeError):
        store.delete_user(kept.id)

    assert store.get_user_by_email("new@example.com") is None
    assert store.get_user_by_email("kept@example.com").id == kept.id
    monkeypatch.delattr(store, "_state_path")
    assert store.create_user("new@example.com", first_name="New", password_hash="h")
