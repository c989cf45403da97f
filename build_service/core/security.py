"""
Bearer token authentication middleware.

PUBLIC ROUTES (no auth required):
- /health

PROTECTED ROUTES:
- /build, /metrics - Authorization: Bearer <AUTH_TOKEN>
- /update          - Authorization: Bearer <UPDATE_AUTH_TOKEN>

An empty secret never matches, so an unconfigured route stays locked.
"""
import hmac
import logging
from typing import Callable

from fastapi import Request
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from build_service.core.config import Settings, get_settings
from build_service.core.errors import AuthError

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset([
    "/health",
])

# Path -> settings attribute holding the expected token
PROTECTED_PATHS = {
    "/build": "auth_token",
    "/metrics": "auth_token",
    "/update": "update_auth_token",
}


def bearer_token(request: Request) -> str:
    """Extract the token from an Authorization: Bearer header ('' if absent)."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return ""


def token_matches(provided: str, expected: str) -> bool:
    """Constant-time comparison; an empty expected secret never matches."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class BearerTokenMiddleware(BaseHTTPMiddleware):
    """Enforce the per-route bearer secret before any handler runs."""

    def __init__(self, app, settings_factory: Callable[[], Settings] = get_settings):
        super().__init__(app)
        self._settings_factory = settings_factory

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in PUBLIC_PATHS:
            return await call_next(request)

        secret_name = PROTECTED_PATHS.get(path)
        if secret_name is None:
            # Unknown routes fall through to 404/405
            return await call_next(request)

        expected = getattr(self._settings_factory(), secret_name)
        if not token_matches(bearer_token(request), expected):
            # Never log the tokens themselves
            logger.warning(f"auth_failed path={path}")
            return PlainTextResponse(AuthError.message, status_code=AuthError.status_code)

        return await call_next(request)
