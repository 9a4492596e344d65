"""Tests for access and refresh token minting."""

import uuid

import pytest
from jose import jwt

from meeton_identity.auth.tokens import (
    ALGORITHM,
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuer,
)
from meeton_identity.database.models import Identity


@pytest.fixture
def jane() -> Identity:
    return Identity(
        id=uuid.UUID("11111111-2222-3333-4444-555555555555"),
        email="jane@example.com",
        handle="janedoe",
        display_name="Jane Doe",
    )


class TestAccessTokens:
    """Tests for access token issue and verification."""

    def test_claims(self, issuer: TokenIssuer, settings, clock, jane):
        """Test the payload of a freshly minted token."""
        token = issuer.issue_access(jane)
        payload = jwt.get_unverified_claims(token)

        assert payload["sub"] == str(jane.id)
        assert payload["email"] == "jane@example.com"
        assert payload["handle"] == "janedoe"
        assert payload["name"] == "Jane Doe"
        assert payload["type"] == "access"
        assert payload["iss"] == "meeton-api"
        assert payload["aud"] == "meeton-app"
        assert payload["iat"] == int(clock().timestamp())
        assert payload["exp"] - payload["iat"] == 30 * 60

    def test_round_trip(self, issuer: TokenIssuer, jane):
        """Test that a token decodes to the identity it was issued for."""
        claims = issuer.decode_access(issuer.issue_access(jane))

        assert claims.identity_id == jane.id
        assert claims.handle == "janedoe"
        assert claims.display_name == "Jane Doe"
        assert claims.expires_at > claims.issued_at

    def test_lifetime_follows_settings(self, settings, clock, jane):
        """Test that ACCESS_TOKEN_EXPIRY drives expiresIn."""
        settings.access_token_expiry = "15m"
        issuer = TokenIssuer(settings, clock)

        assert issuer.access_lifetime_seconds() == 900

    def test_expired(self, issuer: TokenIssuer, clock, jane):
        """Test that a token is rejected once the clock passes its expiry."""
        token = issuer.issue_access(jane)
        clock.advance(minutes=30)

        with pytest.raises(TokenExpiredError):
            issuer.decode_access(token)

    def test_valid_just_before_expiry(self, issuer: TokenIssuer, clock, jane):
        """Test the last second of a token's life."""
        token = issuer.issue_access(jane)
        clock.advance(minutes=29, seconds=59)

        assert issuer.decode_access(token).identity_id == jane.id

    def test_refresh_token_is_not_an_access_token(self, issuer: TokenIssuer):
        """Test that the secrets keep the two token kinds apart."""
        with pytest.raises(TokenInvalidError):
            issuer.decode_access(issuer.issue_refresh())

    def test_tampered_token(self, issuer: TokenIssuer, jane):
        """Test that a modified token fails signature verification."""
        token = issuer.issue_access(jane)
        header, payload, signature = token.split(".")
        tampered = ".".join([header, payload, signature[::-1]])

        with pytest.raises(TokenInvalidError):
            issuer.decode_access(tampered)

    def test_wrong_audience(self, issuer: TokenIssuer, settings, clock, jane):
        """Test that a token for another audience is rejected."""
        payload = jwt.get_unverified_claims(issuer.issue_access(jane))
        payload["aud"] = "someone-else"
        token = jwt.encode(payload, settings.access_token_secret, algorithm=ALGORITHM)

        with pytest.raises(TokenInvalidError):
            issuer.decode_access(token)

    def test_garbage(self, issuer: TokenIssuer):
        """Test that a non-JWT string is rejected."""
        with pytest.raises(TokenInvalidError):
            issuer.decode_access("not-a-token")


class TestRefreshTokens:
    """Tests for refresh token minting."""

    def test_distinct_in_same_instant(self, issuer: TokenIssuer):
        """Test that tokens minted at the same clock reading differ."""
        assert issuer.issue_refresh() != issuer.issue_refresh()

    def test_signature_verified(self, issuer: TokenIssuer):
        """Test that our refresh token verifies and has the refresh type."""
        payload = issuer.verify_refresh_signature(issuer.issue_refresh())
        assert payload["type"] == "refresh"

    def test_access_token_is_not_a_refresh_token(self, issuer: TokenIssuer, jane):
        """Test that an access token fails refresh verification."""
        with pytest.raises(TokenInvalidError):
            issuer.verify_refresh_signature(issuer.issue_access(jane))

    def test_embedded_expiry_not_enforced(self, issuer: TokenIssuer, clock):
        """Test that signature checks ignore the token's own exp."""
        token = issuer.issue_refresh()
        clock.advance(days=365)

        assert issuer.verify_refresh_signature(token)["type"] == "refresh"

    def test_row_expiry_follows_settings(self, issuer: TokenIssuer, clock):
        """Test that REFRESH_TOKEN_EXPIRY drives the stored expiry."""
        now = clock()
        assert (issuer.refresh_expires_at(now) - now).days == 14
