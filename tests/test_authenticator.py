"""Tests for the two-path request authenticator."""

from dataclasses import dataclass, field
from unittest.mock import patch

import pytest

from taskhub.service.authenticator import INVALID_TOKEN, NO_TOKEN
from taskhub.service.tokens import SessionClaims


@dataclass
class FakeRequest:
    headers: dict = field(default_factory=dict)
    cookies: dict = field(default_factory=dict)


@pytest.fixture
def alice(runtime):
    return runtime.credentials.create(
        "alice@example.com", first_name="Alice", last_name="Smith", password="Passw0rd!"
    )


def _session_cookie(runtime, account, **overrides):
    claims = SessionClaims(
        email=account.email,
        user_id=account.id,
        provider=account.provider,
        first_name=overrides.pop("first_name", account.first_name),
        last_name=account.last_name,
    )
    return {runtime.settings.session_cookie_name: runtime.session_codec.issue(claims)}


class TestSessionArtifactPath:
    def test_session_artifact_wins_over_legacy_token(self, runtime, alice):
        other = runtime.credentials.create("bob@example.com", first_name="Bob", password="Passw0rd!")
        request = FakeRequest(
            headers={"authorization": f"Bearer {runtime.tokens.issue(other.id, other.email)}"},
            cookies=_session_cookie(runtime, alice),
        )

        result = runtime.authenticator.authenticate(request)

        assert result.authenticated
        assert result.principal.user_id == alice.id
        assert result.principal.source == "session"

    def test_display_fields_come_from_store(self, runtime, alice):
        cookies = _session_cookie(runtime, alice, first_name="Stale")
        runtime.store.update_user(alice.id, first_name="Alicia")

        principal = runtime.authenticator.authenticate(FakeRequest(cookies=cookies)).principal

        assert principal.first_name == "Alicia"
        assert principal.last_name == "Smith"

    def test_deleted_account_falls_back_to_legacy_token(self, runtime, alice):
        cookies = _session_cookie(runtime, alice)
        cookies["token"] = runtime.tokens.issue("user-legacy", "legacy@example.com")
        runtime.store.delete_user(alice.id)

        result = runtime.authenticator.authenticate(FakeRequest(cookies=cookies))

        assert result.principal.user_id == "user-legacy"
        assert result.principal.source == "legacy"

    def test_deleted_account_without_fallback_is_invalid(self, runtime, alice):
        cookies = _session_cookie(runtime, alice)
        runtime.store.delete_user(alice.id)

        result = runtime.authenticator.authenticate(FakeRequest(cookies=cookies))

        assert not result.authenticated
        assert result.error == INVALID_TOKEN

    def test_store_failure_falls_through(self, runtime, alice):
        cookies = _session_cookie(runtime, alice)
        cookies["token"] = runtime.tokens.issue(alice.id, alice.email)
        with patch.object(
            runtime.credentials, "find_by_email", side_effect=ConnectionError("db down")
        ):
            result = runtime.authenticator.authenticate(FakeRequest(cookies=cookies))

        assert result.principal.source == "legacy"

    def test_tampered_artifact_is_rejected(self, runtime, alice):
        cookies = _session_cookie(runtime, alice)
        name = runtime.settings.session_cookie_name
        cookies[name] = cookies[name][:-4] + "AAAA"

        result = runtime.authenticator.authenticate(FakeRequest(cookies=cookies))

        assert result.error == INVALID_TOKEN


class TestLegacyTokenPath:
    def test_bearer_header_preferred_over_cookie(self, runtime):
        request = FakeRequest(
            headers={"authorization": f"Bearer {runtime.tokens.issue('u-header', 'h@example.com')}"},
            cookies={"token": runtime.tokens.issue("u-cookie", "c@example.com")},
        )

        principal = runtime.authenticator.authenticate(request).principal

        assert principal.user_id == "u-header"
        assert principal.email == "h@example.com"

    def test_token_cookie_is_accepted(self, runtime):
        request = FakeRequest(cookies={"token": runtime.tokens.issue("u-1", "a@example.com")})

        assert runtime.authenticator.authenticate(request).principal.user_id == "u-1"

    def test_expired_token_is_invalid(self, runtime, clock):
        token = runtime.tokens.issue("u-1", "a@example.com")
        clock.advance(7 * 24 * 3600 + 1)

        result = runtime.authenticator.authenticate(FakeRequest(cookies={"token": token}))

        assert not result.authenticated
        assert result.error == INVALID_TOKEN

    def test_non_bearer_scheme_is_ignored(self, runtime):
        token = runtime.tokens.issue("u-1", "a@example.com")
        request = FakeRequest(headers={"authorization": f"Basic {token}"})

        result = runtime.authenticator.authenticate(request)

        assert result.error == NO_TOKEN


class TestNoCredentials:
    def test_missing_credentials(self, runtime):
        result = runtime.authenticator.authenticate(FakeRequest())

        assert result.principal is None
        assert result.error == NO_TOKEN

    def test_authentication_never_touches_lockout(self, runtime, alice):
        with patch.object(runtime.credentials, "increment_login_attempts") as increment:
            runtime.authenticator.authenticate(FakeRequest(cookies={"token": "garbage"}))
            runtime.authenticator.authenticate(FakeRequest(cookies=_session_cookie(runtime, alice)))

        increment.assert_not_called()
        assert runtime.store.get_user(alice.id).login_attempts == 0
