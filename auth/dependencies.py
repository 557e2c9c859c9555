"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

One auth method: Authorization: Bearer <access token>. Access tokens are
stateless JWTs (auth/tokens.py), so verification costs no database round
trip beyond loading the user.

try_get_current_user() returns None for any unauthenticated request;
get_current_user() turns that None into a 401 with WWW-Authenticate: Bearer.

Layer rule: auth/dependencies.py may import from fastapi (for Request and
HTTPException) because this module is part of the FastAPI dependency
injection system. It does not import from api/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import UnauthenticatedError
from auth.models import User
from auth.session import SessionService

logger = logging.getLogger("passgate.auth.dependencies")


def get_sessions(request: Request) -> SessionService:
    """Return the SessionService built by the app lifespan."""
    return request.app.state.sessions


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via the Bearer header.

    Every UnauthenticatedError (missing header, bad signature, expired, unknown
    subject) is logged at INFO and collapsed to None.
    """
    try:
        return get_sessions(request).authenticate(request.headers.get("Authorization"))
    except UnauthenticatedError as exc:
        logger.info("Unauthenticated request to %s: %s (%s)", request.url.path, type(exc).__name__, exc)
        return None


def get_current_user(request: Request) -> User:
    """Return the bearer-authenticated User or raise HTTP 401.

    The 401 body is the same for every failure kind -- the precise reason
    (expired, bad signature, ...) is only logged.

    Use as a FastAPI dependency:
        @router.get("/auth/me")
        def me(current_user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
