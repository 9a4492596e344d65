"""Google identity verification.

Mobile clients complete Google sign-in on the device and send us the Google
access token. We exchange it server-to-server for the user's profile; there
is no redirect or consent step on our side.

## Endpoint

- User Info: https://www.googleapis.com/oauth2/v2/userinfo

Any failure (non-200, missing email, network error) is reported as
`AuthenticationFailedError` and is not retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

import httpx

from meeton_identity.config import Settings, get_settings
from meeton_identity.errors import AuthenticationFailedError

logger = logging.getLogger(__name__)


@dataclass
class FederatedProfile:
    """What the identity provider tells us about a user."""

    provider_id: str
    email: str
    display_name: str | None = None
    avatar_url: str | None = None
    email_verified: bool = False


class GoogleTokenVerifier:
    """Resolves a Google access token to a FederatedProfile.

    Example:
        ```python
        verifier = GoogleTokenVerifier(settings)
        profile = await verifier.verify(google_access_token)
        ```
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the verifier.

        Args:
            settings: Application settings (userinfo URL and timeout)
            transport: Optional httpx transport, for tests
        """
        self.userinfo_url = settings.google_userinfo_url
        self.timeout = settings.google_timeout_seconds
        self._transport = transport

    async def verify(self, access_token: str) -> FederatedProfile:
        """Fetch the profile behind a Google access token.

        Args:
            access_token: Access token obtained by the client from Google

        Returns:
            FederatedProfile with the user's Google details

        Raises:
            AuthenticationFailedError: If Google rejects the token or is unreachable
        """
        if not access_token:
            raise AuthenticationFailedError("Google access token is required")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(
                    self.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Google token verification error: {e}")
            raise AuthenticationFailedError("Google token verification failed") from e

        if response.status_code != 200:
            logger.warning(f"Google rejected access token: {response.status_code}")
            raise AuthenticationFailedError("Invalid Google access token")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationFailedError("Google token verification failed") from e

        provider_id = data.get("id") or data.get("sub")
        if not data.get("email") or not provider_id:
            raise AuthenticationFailedError("Google token does not contain email")

        return FederatedProfile(
            provider_id=str(provider_id),
            email=data["email"],
            display_name=data.get("name"),
            avatar_url=data.get("picture"),
            email_verified=bool(data.get("verified_email") or data.get("email_verified")),
        )


@lru_cache
def get_google_verifier() -> GoogleTokenVerifier:
    """Get cached Google verifier instance."""
    return GoogleTokenVerifier(get_settings())
