"""Error taxonomy for the identity engine.

Every failure leaving a public component is one of these exceptions.
Storage-layer exceptions are translated at the component boundary and never
surface raw. Each class carries the HTTP status and a stable error code so
the host application can render it without knowing the engine's internals
(see `meeton_identity.api.errors`).
"""

from __future__ import annotations

from typing import Any


class IdentityError(Exception):
    """Base class for identity engine errors."""

    status_code: int = 400
    error_code: str = "identity_error"

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConflictError(IdentityError):
    """An email or handle is already taken (409)."""

    status_code = 409
    error_code = "conflict"

    def __init__(self, message: str, *, field: str) -> None:
        super().__init__(message, detail={"field": field})
        self.field = field


class InvalidCredentialError(IdentityError):
    """Bad password, or a bad, expired or already-used token (401)."""

    status_code = 401
    error_code = "invalid_credential"


class ExpiredCredentialError(InvalidCredentialError):
    """A credential that was once valid has passed its expiry."""

    error_code = "credential_expired"


class InvalidOrExpiredTokenError(InvalidCredentialError):
    """A recovery or verification token is unknown, used or expired."""

    error_code = "invalid_or_expired_token"


class AuthenticationFailedError(IdentityError):
    """Federated login could not be completed (401).

    The underlying cause is logged, never exposed.
    """

    status_code = 401
    error_code = "authentication_failed"


class AuthenticationError(IdentityError):
    """A protected request carried no usable access token (401).

    `reason` is one of `missing_header`, `missing_token`, `invalid_token`,
    `token_expired` or `identity_not_found`.
    """

    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message, detail={"reason": reason})
        self.reason = reason


class NotFoundError(IdentityError):
    """The identity, or the credential the operation needs, does not exist (404)."""

    status_code = 404
    error_code = "not_found"


class StorageError(IdentityError):
    """The store failed or timed out (503)."""

    status_code = 503
    error_code = "storage_unavailable"
