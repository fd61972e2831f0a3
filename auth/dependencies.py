"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Session cookie ("access_token") -- set by sign-up / sign-in responses.
  2. Authorization: Bearer <token> header -- API clients.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated, with the
token state (invalid / expired / revoked) as the error code.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import AuthError, ExpiredTokenError, InvalidTokenError, RevokedTokenError
from auth.models import User


def get_request_token(request: Request) -> str | None:
    """Return the raw session token from cookie or Bearer header, if any."""
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def _resolve(request: Request) -> User:
    token = get_request_token(request)
    if token is None:
        raise InvalidTokenError("Authentication required.")
    return request.app.state.auth_service.authenticate(token)


def try_get_current_user(request: Request) -> User | None:
    """Authenticate the request. Returns None on any token failure.

    Storage failures still propagate -- an outage is not the same as being
    logged out.
    """
    try:
        return _resolve(request)
    except (InvalidTokenError, ExpiredTokenError, RevokedTokenError):
        return None


def get_current_user(request: Request) -> User:
    """Require an active session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    try:
        return _resolve(request)
    except (InvalidTokenError, ExpiredTokenError, RevokedTokenError) as exc:
        raise HTTPException(status_code=401, detail=_detail(exc)) from exc


def _detail(exc: AuthError) -> dict:
    return {"code": exc.kind, "message": exc.message}
