"""Internal API-key middleware for FastAPI.

The assistant calls the ``/whoop`` routes with
``Authorization: Bearer <INTERNAL_API_KEY>``.  The OAuth routes and the
service index stay public so the user can complete authorization in a
browser.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings

logger = logging.getLogger("whoop_bridge.auth")

# Path prefixes that require the internal API key
PROTECTED_PREFIXES: tuple[str, ...] = ("/whoop",)


def _is_protected(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in PROTECTED_PREFIXES)


def _unauthorized(message: str) -> Response:
    return Response(
        content=f'{{"error":"UNAUTHORIZED","message":"{message}"}}',
        status_code=401,
        media_type="application/json",
    )


class ApiKeyMiddleware(BaseHTTPMiddleware):
    """Reject protected requests that do not carry the internal API key."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not _is_protected(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Missing or invalid Authorization header")

        api_key = auth_header.removeprefix("Bearer ").strip()
        expected = self._settings.internal_api_key
        if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
            logger.warning("Rejected request to %s: invalid API key", request.url.path)
            return _unauthorized("Invalid API key")

        return await call_next(request)
