"""FastAPI host wiring for the identity engine.

The engine does not ship business routes. It provides:

- `create_app` - an application with the database lifespan, CORS and a
  health check, ready for the host to mount its own routers
- `install_error_handlers` - renders every `IdentityError` as JSON

## Error Envelope

```json
{"error": {"code": "unauthorized", "message": "Token expired", "detail": {"reason": "token_expired"}}}
```

401 responses also carry `WWW-Authenticate: Bearer`.
"""

from meeton_identity.api.app import create_app
from meeton_identity.api.errors import install_error_handlers

__all__ = ["create_app", "install_error_handlers"]
