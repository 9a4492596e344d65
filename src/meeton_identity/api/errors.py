"""Exception handlers mapping engine errors to HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from meeton_identity.errors import IdentityError

logger = logging.getLogger(__name__)


def error_body(exc: IdentityError) -> dict:
    """Build the JSON envelope for an engine error."""
    return {
        "error": {
            "code": exc.error_code,
            "message": exc.message,
            "detail": exc.detail,
        }
    }


async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code}")

    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    """Register the engine's exception handlers on an application."""
    app.add_exception_handler(IdentityError, identity_error_handler)
