"""
Authentication Middleware.

The gateway in front of the pipeline authenticates callers and forwards
their id in X-User-Id; this layer only checks that the header is present
and well-formed.
"""
import logging
import re
from typing import Callable, Optional

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:@-]{1,128}$")

PUBLIC_PATHS = frozenset({
    "/",
    "/health",
    "/health/live",
    "/health/ready",
    "/docs",
    "/redoc",
    "/openapi.json",
})

# Artifacts carry a signature; admin routes check X-Admin-Secret.
PUBLIC_PREFIXES = ("/artifacts/", "/admin/")


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def auth_error(code: str, message: str) -> dict:
    return {"error": "Authentication required", "code": code, "message": message}


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Sets request.state.user_id from the gateway header.

    Public paths always get None. With require_auth=False a missing header
    is let through and left to the route dependencies.
    """

    def __init__(self, app, require_auth: bool = True):
        super().__init__(app)
        self.require_auth = require_auth

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.user_id = None
        if is_public_path(request.url.path):
            return await call_next(request)

        user_id: Optional[str] = request.headers.get(USER_ID_HEADER)

        if user_id and not USER_ID_PATTERN.match(user_id):
            logger.warning(f"Malformed {USER_ID_HEADER} on {request.method} {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content=auth_error("INVALID_USER_ID", f"Malformed {USER_ID_HEADER} header"),
            )

        if not user_id and self.require_auth:
            logger.warning(f"Missing {USER_ID_HEADER} on {request.method} {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content=auth_error("AUTH_REQUIRED", f"Missing {USER_ID_HEADER} header"),
            )

        request.state.user_id = user_id
        return await call_next(request)


__all__ = ["AuthMiddleware", "USER_ID_HEADER", "is_public_path"]
