"""Authentication module for the identity engine.

Issues and rotates bearer credentials, reconciles password and Google
identities, and resolves every protected request to an identity.

## Token Model

1. Login (password or Google) returns an access token and a refresh token
2. The access token authorizes requests until it expires (default 30m)
3. The refresh token is exchanged for a new pair; the old one dies
4. Logout deletes refresh tokens; issued access tokens run out on their own

## Google Flow

1. The mobile client signs in with Google and obtains a Google access token
2. The client posts it to us
3. We fetch the Google profile server-to-server
4. Find or create the local identity, then issue our own tokens

## Security

- Access and refresh tokens are signed with different secrets
- Refresh tokens are single use; rotation is atomic
- Passwords are hashed with bcrypt (work factor 12)
- Recovery tokens are single use and time boxed
"""

from meeton_identity.auth.dependencies import (
    AuthenticationGate,
    IdentityContext,
    get_authentication_gate,
    optional_auth,
    require_auth,
)
from meeton_identity.auth.duration import apply_duration, parse_duration
from meeton_identity.auth.facade import IdentitySummary, SessionFacade, TokenResponse
from meeton_identity.auth.google import (
    FederatedProfile,
    GoogleTokenVerifier,
    get_google_verifier,
)
from meeton_identity.auth.handles import generate_handle, is_handle_available
from meeton_identity.auth.reconciler import IdentityReconciler
from meeton_identity.auth.recovery import CredentialRecovery
from meeton_identity.auth.refresh_store import RefreshTokenStore
from meeton_identity.auth.tokens import AccessClaims, TokenIssuer

__all__ = [
    "AccessClaims",
    "AuthenticationGate",
    "CredentialRecovery",
    "FederatedProfile",
    "GoogleTokenVerifier",
    "IdentityContext",
    "IdentityReconciler",
    "IdentitySummary",
    "RefreshTokenStore",
    "SessionFacade",
    "TokenIssuer",
    "TokenResponse",
    "apply_duration",
    "generate_handle",
    "get_authentication_gate",
    "get_google_verifier",
    "is_handle_available",
    "optional_auth",
    "parse_duration",
    "require_auth",
]
