"""Tests for the legacy token service and the session artifact codec."""

import base64
import json
from datetime import timedelta

import pytest

from taskhub.service.tokens import LegacyTokenService, SessionArtifactCodec, SessionClaims


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _flip_char(segment: str, index: int) -> str:
    replacement = "A" if segment[index] != "A" else "B"
    return segment[:index] + replacement + segment[index + 1:]


@pytest.fixture
def tokens(clock):
    return LegacyTokenService("legacy-token-secret-for-unit-tests", clock=clock)


@pytest.fixture
def codec(clock):
    return SessionArtifactCodec("session-artifact-secret-for-unit-tests", clock=clock)


class TestLegacyToken:
    """Issue/verify behaviour of the HS256 legacy token."""

    def test_round_trip_returns_original_claims(self, tokens, clock):
        token = tokens.issue("user-1", "alice@example.com")
        payload = tokens.verify(token)

        assert payload is not None
        assert payload.user_id == "user-1"
        assert payload.email == "alice@example.com"
        assert payload.iat == int(clock())
        assert payload.exp == int(clock()) + 7 * 24 * 3600

    def test_payload_uses_wire_claim_names(self, tokens):
        token = tokens.issue("user-1", "alice@example.com")
        payload_segment = token.split(".")[1]
        padded = payload_segment + "=" * (-len(payload_segment) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))

        assert set(claims) == {"userId", "email", "iat", "exp"}

    def test_expired_token_is_rejected(self, tokens, clock):
        token = tokens.issue("user-1", "alice@example.com")

        clock.advance(7 * 24 * 3600 - 1)
        assert tokens.verify(token) is not None

        clock.advance(1)
        assert tokens.verify(token) is None

    def test_custom_ttl(self, clock):
        short = LegacyTokenService(
            "legacy-token-secret-for-unit-tests", ttl=timedelta(minutes=5), clock=clock
        )
        token = short.issue("user-1", "alice@example.com")
        clock.advance(301)
        assert short.verify(token) is None

    def test_tampered_payload_is_rejected(self, tokens):
        header, payload, signature = tokens.issue("user-1", "alice@example.com").split(".")
        for index in range(len(payload)):
            mutated = _flip_char(payload, index)
            assert tokens.verify(f"{header}.{mutated}.{signature}") is None

    def test_tampered_signature_is_rejected(self, tokens):
        header, payload, signature = tokens.issue("user-1", "alice@example.com").split(".")
        assert tokens.verify(f"{header}.{payload}.{_flip_char(signature, 0)}") is None

    @pytest.mark.parametrize("signature", ["\xe9\xe9", "sig☃", "\udcff"])
    def test_non_ascii_signature_is_rejected(self, tokens, signature):
        header, payload, _ = tokens.issue("user-1", "alice@example.com").split(".")
        assert tokens.verify(f"{header}.{payload}.{signature}") is None

    def test_non_ascii_payload_is_rejected(self, tokens):
        header, payload, signature = tokens.issue("user-1", "alice@example.com").split(".")
        assert tokens.verify(f"{header}.{payload}\ud800.{signature}") is None
        assert tokens.verify(f"{header}.\xe9{payload}.{signature}") is None

    def test_forged_claims_with_valid_shape_are_rejected(self, tokens, clock):
        header, _, signature = tokens.issue("user-1", "alice@example.com").split(".")
        forged = _b64(
            {"userId": "admin", "email": "root@example.com", "iat": 0, "exp": int(clock()) + 60}
        )
        assert tokens.verify(f"{header}.{forged}.{signature}") is None

    def test_alg_none_is_rejected(self, tokens):
        _, payload, signature = tokens.issue("user-1", "alice@example.com").split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        assert tokens.verify(f"{header}.{payload}.{signature}") is None
        assert tokens.verify(f"{header}.{payload}.") is None

    def test_other_secret_is_rejected(self, tokens, clock):
        other = LegacyTokenService("a-completely-different-secret", clock=clock)
        assert other.verify(tokens.issue("user-1", "alice@example.com")) is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_malformed_tokens_are_rejected(self, tokens, token):
        assert tokens.verify(token) is None

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            LegacyTokenService("")


class TestSessionArtifact:
    """Encrypted session artifact issued after OAuth sign-in."""

    def test_round_trip(self, codec, clock):
        claims = SessionClaims(
            email="bob@example.com", user_id="user-2", provider="google", first_name="Bob"
        )
        artifact = codec.issue(claims)
        decoded = codec.decode(artifact)

        assert decoded is not None
        assert decoded.email == "bob@example.com"
        assert decoded.user_id == "user-2"
        assert decoded.provider == "google"
        assert decoded.exp == int(clock()) + 7 * 24 * 3600

    def test_artifact_is_opaque(self, codec):
        artifact = codec.issue(SessionClaims(email="bob@example.com", user_id="user-2"))
        assert "bob@example.com" not in artifact

    def test_expired_artifact_is_rejected(self, codec, clock):
        artifact = codec.issue(SessionClaims(email="bob@example.com", user_id="user-2"))
        clock.advance(7 * 24 * 3600)
        assert codec.decode(artifact) is None

    def test_tampered_artifact_is_rejected(self, codec):
        artifact = codec.issue(SessionClaims(email="bob@example.com", user_id="user-2"))
        assert codec.decode(_flip_char(artifact, len(artifact) // 2)) is None

    def test_artifact_from_other_secret_is_rejected(self, codec, clock):
        other = SessionArtifactCodec("another-session-secret-value", clock=clock)
        artifact = other.issue(SessionClaims(email="bob@example.com", user_id="user-2"))
        assert codec.decode(artifact) is None

    def test_legacy_token_is_not_a_session_artifact(self, codec, tokens):
        assert codec.decode(tokens.issue("user-1", "alice@example.com")) is None

    @pytest.mark.parametrize("artifact", [None, "", "garbage"])
    def test_malformed_artifacts_are_rejected(self, codec, artifact):
        assert codec.decode(artifact) is None
