"""Tests for the account linking policy."""

from unittest.mock import patch

import pytest

from taskhub.service.credentials import CredentialStore
from taskhub.service.errors import ConflictError
from taskhub.service.linking import (
    ACCOUNT_EXISTS_MESSAGE,
    AccountLinkingPolicy,
    LinkOutcome,
    OAuthIdentity,
    RegistrationOutcome,
    split_display_name,
)
from taskhub.service.passwords import PasswordHasher
from taskhub.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(store):
    return CredentialStore(store, PasswordHasher(time_cost=1, memory_cost=1024))


@pytest.fixture
def policy(credentials):
    return AccountLinkingPolicy(credentials)


def _google_bob(**overrides):
    fields = dict(
        provider="google",
        provider_id="g-bob",
        email="Bob@Example.com",
        name="Bob Stone",
        avatar="https://example.com/bob.png",
    )
    fields.update(overrides)
    return OAuthIdentity(**fields)


class TestOAuthLinking:
    def test_new_identity_creates_passwordless_verified_account(self, policy):
        result = policy.link_oauth_identity(_google_bob())

        assert result.outcome == LinkOutcome.CREATED
        account = result.account
        assert account.email == "bob@example.com"
        assert account.first_name == "Bob"
        assert account.last_name == "Stone"
        assert account.provider == "google"
        assert account.provider_id == "g-bob"
        assert account.email_verified is True
        assert account.has_password is False

    def test_repeated_sign_in_is_idempotent(self, policy, store):
        first = policy.link_oauth_identity(_google_bob())
        second = policy.link_oauth_identity(_google_bob())

        assert second.outcome == LinkOutcome.EXISTING
        assert second.account.id == first.account.id
        assert len(store.list_users()) == 1

    def test_account_without_provider_gets_attached(self, policy, store):
        existing = store.create_user(
            "bob@example.com", first_name="Robert", password_hash="h", provider=None
        )
        result = policy.link_oauth_identity(_google_bob())

        assert result.outcome == LinkOutcome.ATTACHED
        assert result.account.id == existing.id
        assert result.account.provider == "google"
        assert result.account.avatar == "https://example.com/bob.png"
        assert result.account.first_name == "Robert"

    def test_first_linked_provider_wins(self, policy):
        policy.link_oauth_identity(_google_bob())
        result = policy.link_oauth_identity(
            _google_bob(provider="github", provider_id="gh-bob")
        )

        assert result.outcome == LinkOutcome.EXISTING
        assert result.account.provider == "google"
        assert result.account.provider_id == "g-bob"

    def test_credentials_account_is_not_relinked(self, policy, credentials):
        alice = credentials.create("alice@example.com", first_name="Alice", password="Passw0rd!")
        result = policy.link_oauth_identity(
            OAuthIdentity(provider="google", provider_id="g-alice", email="alice@example.com")
        )

        assert result.outcome == LinkOutcome.EXISTING
        assert result.account.id == alice.id
        assert result.account.provider == "credentials"

    def test_lost_creation_race_resolves_to_winner(self, policy, credentials, store):
        winner = store.create_user(
            "bob@example.com", first_name="Bob", provider="google", provider_id="g-bob"
        )
        real_lookup = credentials.find_by_email
        with patch.object(
            credentials, "find_by_email", side_effect=[None, real_lookup("bob@example.com")]
        ):
            result = policy.link_oauth_identity(_google_bob())

        assert result.outcome == LinkOutcome.EXISTING
        assert result.account.id == winner.id
        assert len(store.list_users()) == 1


class TestRegistration:
    def test_register_creates_credentials_account(self, policy, credentials):
        result = policy.register(
            "alice@example.com", "Passw0rd!", first_name="Alice", last_name="Smith"
        )

        assert result.outcome == RegistrationOutcome.CREATED
        assert result.account.provider == "credentials"
        assert credentials.compare_password(result.account, "Passw0rd!")

    def test_register_sets_password_on_oauth_only_account(self, policy, credentials):
        oauth = policy.link_oauth_identity(_google_bob()).account
        result = policy.register(
            "bob@example.com", "Secur3Pass!", first_name="Robert", last_name="Stone"
        )

        assert result.outcome == RegistrationOutcome.PASSWORD_SET
        assert result.account.id == oauth.id
        assert result.account.provider == "google"
        assert result.account.first_name == "Robert"
        assert credentials.compare_password(result.account, "Secur3Pass!")

    def test_register_conflicts_when_password_exists(self, policy):
        policy.register("alice@example.com", "Passw0rd!", first_name="Alice", last_name="S")
        with pytest.raises(ConflictError) as excinfo:
            policy.register("alice@example.com", "Other1Pass!", first_name="A", last_name="S")

        assert excinfo.value.message == ACCOUNT_EXISTS_MESSAGE
        assert excinfo.value.status_code == 409

    def test_oauth_account_with_password_conflicts(self, policy):
        policy.link_oauth_identity(_google_bob())
        policy.register("bob@example.com", "Secur3Pass!", first_name="Bob", last_name="S")
        with pytest.raises(ConflictError):
            policy.register("bob@example.com", "Another1Pass!", first_name="Bob", last_name="S")


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Bob Stone", ("Bob", "Stone")),
        ("Mary Ann Lee", ("Mary", "Ann Lee")),
        ("Cher", ("Cher", "")),
        ("", ("User", "")),
        (None, ("User", "")),
    ],
)
def test_split_display_name(name, expected):
    assert split_display_name(name) == expected
