"""Admin token check for the HTTP surface.

When AUTH_ENABLED is set every route except the allowlist needs
`Authorization: Bearer <ADMIN_TOKEN>`.
"""

from __future__ import annotations

import logging
import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/health"})


def _parse_bearer_token(header_value: str) -> str | None:
    """Return the token from a Bearer header value, or None."""
    scheme, _, token = (header_value or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class BearerTokenMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        *,
        token: str,
        allow_paths: set[str] | None = None,
        realm: str = "TaskBridge",
    ):
        super().__init__(app)
        self.token = token
        self.public_paths = frozenset(allow_paths) if allow_paths else PUBLIC_PATHS
        self.challenge = f'Bearer realm="{realm}"'

    def is_authorized(self, request: Request) -> bool:
        presented = _parse_bearer_token(request.headers.get("Authorization", ""))
        if presented is None:
            return False
        return secrets.compare_digest(presented.encode(), self.token.encode())

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.public_paths or self.is_authorized(request):
            return await call_next(request)

        logger.warning(f"Rejected unauthenticated {request.method} {request.url.path}")
        return JSONResponse(
            {"detail": "Missing or invalid admin token"},
            status_code=401,
            headers={"WWW-Authenticate": self.challenge},
        )
