"""Access and refresh token minting using signed JWTs.

Access tokens are stateless: they are verified by signature and expiry
alone and cannot be revoked before they expire. Keep ACCESS_TOKEN_EXPIRY
short; logout only stops new access tokens from being minted.

Refresh tokens are signed with a different secret so that one can never
be presented as the other. Their embedded `exp` is advisory; the
`refresh_tokens` row decides whether a refresh token is still good.

## Access Token Structure

```json
{
  "sub": "identity-uuid",
  "email": "jane@example.com",
  "handle": "janedoe",
  "name": "Jane Doe",
  "iat": 1234567890,
  "exp": 1234569690,
  "iss": "meeton-api",
  "aud": "meeton-app",
  "type": "access"
}
```
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from jose import JWTError, jwt

from meeton_identity.auth.duration import apply_duration, parse_duration
from meeton_identity.config import Settings
from meeton_identity.database.models import Identity, utc_now

logger = logging.getLogger(__name__)

# JWT configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

Clock = Callable[[], datetime]


class TokenInvalidError(Exception):
    """Token is malformed, has a bad signature or the wrong claims."""


class TokenExpiredError(Exception):
    """Token signature is good but its expiry has passed."""


@dataclass
class AccessClaims:
    """Verified contents of an access token."""

    identity_id: uuid.UUID
    email: str
    handle: str
    display_name: str | None
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Mints and verifies tokens.

    Pure function of the identity, the clock and the configured secrets and
    expiry policies; it never touches storage.
    """

    def __init__(self, settings: Settings, clock: Clock = utc_now):
        self._settings = settings
        self._clock = clock

    def access_lifetime_seconds(self) -> int:
        """Lifetime of a freshly minted access token, in seconds."""
        return parse_duration(self._settings.access_token_expiry)

    def refresh_expires_at(self, issued_at: datetime) -> datetime:
        """Authoritative expiry of a refresh token issued at `issued_at`."""
        return apply_duration(issued_at, self._settings.refresh_token_expiry)

    def issue_access(self, identity: Identity) -> str:
        """Create a signed access token for an identity.

        Args:
            identity: The identity the token speaks for

        Returns:
            Signed JWT token string
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=self.access_lifetime_seconds())

        payload = {
            "sub": str(identity.id),
            "email": identity.email or "",
            "handle": identity.handle,
            "name": identity.display_name,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self._settings.token_issuer,
            "aud": self._settings.token_audience,
            "type": ACCESS_TOKEN_TYPE,
        }

        return jwt.encode(payload, self._settings.access_token_secret, algorithm=ALGORITHM)

    def issue_refresh(self) -> str:
        """Create an opaque refresh token.

        The random `jti` keeps two tokens minted in the same instant distinct.
        """
        now = self._clock()
        expires_at = self.refresh_expires_at(now)

        payload = {
            "type": REFRESH_TOKEN_TYPE,
            "timestamp": int(now.timestamp() * 1000),
            "jti": secrets.token_hex(16),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

        return jwt.encode(payload, self._settings.refresh_token_secret, algorithm=ALGORITHM)

    def decode_access(self, token: str) -> AccessClaims:
        """Verify and decode an access token.

        Args:
            token: The JWT token string

        Returns:
            AccessClaims for a valid token

        Raises:
            TokenInvalidError: Bad signature, issuer, audience, type or payload
            TokenExpiredError: Valid signature but past its expiry
        """
        # Expiry is checked against our clock below, not jose's wall clock
        try:
            payload = jwt.decode(
                token,
                self._settings.access_token_secret,
                algorithms=[ALGORITHM],
                audience=self._settings.token_audience,
                issuer=self._settings.token_issuer,
                options={"verify_exp": False},
            )
        except JWTError as e:
            logger.debug(f"Access token verification failed: {e}")
            raise TokenInvalidError("Invalid token") from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalidError("Invalid token type")

        try:
            claims = AccessClaims(
                identity_id=uuid.UUID(payload["sub"]),
                email=payload.get("email") or "",
                handle=payload["handle"],
                display_name=payload.get("name"),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Invalid access token payload: {e}")
            raise TokenInvalidError("Invalid token payload") from e

        if self._clock() >= claims.expires_at:
            raise TokenExpiredError("Token expired")

        return claims

    def verify_refresh_signature(self, token: str) -> dict[str, Any]:
        """Check that a refresh token was minted by us.

        Only the signature and token type are checked; expiry belongs to
        the refresh-token store.

        Raises:
            TokenInvalidError: If the token was not signed with the refresh secret
        """
        try:
            payload = jwt.decode(
                token,
                self._settings.refresh_token_secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as e:
            logger.debug(f"Refresh token verification failed: {e}")
            raise TokenInvalidError("Invalid refresh token") from e

        if payload.get("type") != REFRESH_TOKEN_TYPE:
            raise TokenInvalidError("Invalid token type")

        return payload
