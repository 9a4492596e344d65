"""Per-request authentication.

`AuthenticationGate` turns an `Authorization: Bearer <token>` header into an
`IdentityContext`. Access tokens are checked by signature and expiry, then
the identity is re-read so that a deleted account is rejected even while
its token is still within its lifetime. Each successful check bumps the
identity's `last_active_at`.

## Usage

```python
from fastapi import Depends
from meeton_identity.auth import IdentityContext, optional_auth, require_auth

@app.get("/profile")
async def get_profile(identity: IdentityContext = Depends(require_auth)):
    return {"handle": identity.handle}

@app.get("/events")
async def list_events(identity: IdentityContext | None = Depends(optional_auth)):
    ...
```
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, Header, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meeton_identity.auth.tokens import (
    Clock,
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuer,
)
from meeton_identity.config import get_settings
from meeton_identity.database.connection import get_session_factory
from meeton_identity.database.models import Identity, utc_now
from meeton_identity.errors import AuthenticationError, IdentityError, StorageError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "bearer "


@dataclass
class IdentityContext:
    """Who is calling, attached to the request."""

    id: uuid.UUID
    email: str
    handle: str
    display_name: str | None
    issued_at: datetime
    expires_at: datetime


def extract_bearer_token(authorization: str | None) -> str:
    """Pull the token out of an Authorization header.

    Raises:
        AuthenticationError: Header missing, or not a non-empty bearer token
    """
    if not authorization:
        raise AuthenticationError("Authorization header required", reason="missing_header")

    if not authorization.lower().startswith(BEARER_PREFIX):
        raise AuthenticationError("Token required", reason="missing_token")

    token = authorization[len(BEARER_PREFIX):].strip()
    if not token:
        raise AuthenticationError("Token required", reason="missing_token")

    return token


class AuthenticationGate:
    """Verifies access tokens and resolves them to identities."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        issuer: TokenIssuer,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._issuer = issuer
        self._clock = clock

    async def authenticate(self, authorization: str | None) -> IdentityContext:
        """Resolve an Authorization header to the calling identity.

        Raises:
            AuthenticationError: With `reason` one of missing_header,
                missing_token, invalid_token, token_expired, identity_not_found
        """
        token = extract_bearer_token(authorization)

        try:
            claims = self._issuer.decode_access(token)
        except TokenExpiredError as e:
            raise AuthenticationError("Token expired", reason="token_expired") from e
        except TokenInvalidError as e:
            raise AuthenticationError("Invalid token", reason="invalid_token") from e

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    identity = await session.get(Identity, claims.identity_id)
                    if identity is not None:
                        identity.last_active_at = self._clock()
        except SQLAlchemyError as e:
            logger.error("Identity lookup failed during authentication", exc_info=True)
            raise StorageError("Could not verify identity") from e

        if identity is None:
            logger.warning(f"Access token for non-existent identity: {claims.identity_id}")
            raise AuthenticationError("User not found", reason="identity_not_found")

        return IdentityContext(
            id=claims.identity_id,
            email=identity.email or "",
            handle=identity.handle,
            display_name=identity.display_name,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )

    async def authenticate_optional(self, authorization: str | None) -> IdentityContext | None:
        """Like `authenticate`, but any failure yields None instead of an error."""
        try:
            return await self.authenticate(authorization)
        except IdentityError as e:
            logger.debug(f"Optional authentication skipped: {e}")
            return None


def get_authentication_gate() -> AuthenticationGate:
    """FastAPI dependency providing the gate for the running application."""
    return AuthenticationGate(get_session_factory(), TokenIssuer(get_settings()))


async def require_auth(
    request: Request,
    authorization: str | None = Header(default=None),
    gate: AuthenticationGate = Depends(get_authentication_gate),
) -> IdentityContext:
    """Require an authenticated caller.

    Raises 401 (via the installed error handlers) if not authenticated.
    """
    identity = await gate.authenticate(authorization)
    request.state.identity = identity
    return identity


async def optional_auth(
    request: Request,
    authorization: str | None = Header(default=None),
    gate: AuthenticationGate = Depends(get_authentication_gate),
) -> IdentityContext | None:
    """Attach the caller's identity if the request carries a usable token.

    Use this for routes that work with or without authentication.
    """
    identity = await gate.authenticate_optional(authorization)
    request.state.identity = identity
    return identity
