"""FastAPI application factory.

Creates an application hosting the identity engine: database lifespan,
CORS, error handlers and a health check. Host applications include their
own routers and protect them with `require_auth` / `optional_auth`.

## Usage

```python
from fastapi import Depends
from meeton_identity.api import create_app
from meeton_identity.auth import IdentityContext, require_auth

app = create_app()

@app.get("/me")
async def me(identity: IdentityContext = Depends(require_auth)):
    return {"id": str(identity.id), "handle": identity.handle}
```

## Configuration

The app is configured via environment variables. See `meeton_identity.config`
for available settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meeton_identity.api.errors import install_error_handlers
from meeton_identity.config import get_settings
from meeton_identity.database.connection import close_db, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Opens the database engine on startup and disposes it on shutdown.
    """
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    await init_db(settings)

    yield

    logger.info("Shutting down")
    await close_db()


def create_app(use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        use_lifespan: Set False when the caller manages the database itself
            (tests wiring an in-memory engine)

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()
    # Docs stay off in production even with DEBUG set
    show_docs = settings.debug and not settings.is_production

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Identity and session engine",
        docs_url="/docs" if show_docs else None,
        redoc_url="/redoc" if show_docs else None,
        openapi_url="/openapi.json" if show_docs else None,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )

    install_error_handlers(app)

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app
