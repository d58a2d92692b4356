"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and roles.

Access tokens arrive only as "Authorization: Bearer <token>". The refresh
cookie is never accepted here -- it can mint tokens but never authorizes a
business operation.

get_current_identity() verifies the bearer token via the SessionManager and
raises HTTP 401 on any AuthError. require_roles() wraps it and applies the
Authorization Guard, raising HTTP 403 on denial. The three convenience
dependencies mirror auth/guard.py's role sets.

Layer rule: no imports from api/ or ledger/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from fastapi import HTTPException, Request

from auth.guard import ADMIN_ONLY, ANY_ROLE, CLERK_OR_ADMIN, authorize
from auth.models import AuthError, Identity, Role
from auth.sessions import SessionManager


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_identity(request: Request) -> Identity:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Access token required.", "retryable": False},
            headers={"WWW-Authenticate": "Bearer"},
        )
    sessions: SessionManager = request.app.state.sessions
    result = sessions.verify(token)
    if isinstance(result, AuthError):
        raise HTTPException(
            status_code=401,
            detail={"code": result.kind.value, "message": result.message, "retryable": result.retryable},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return result


def require_roles(allowed_roles: Iterable[Role]) -> Callable[[Request], Identity]:
    """Build a dependency that authenticates, then checks the caller's role."""
    allowed = frozenset(allowed_roles)

    def dependency(request: Request) -> Identity:
        identity = get_current_identity(request)
        denied = authorize(identity.role, allowed)
        if denied is not None:
            raise HTTPException(
                status_code=403,
                detail={"code": denied.kind.value, "message": denied.message, "retryable": False},
            )
        return identity

    return dependency


require_admin = require_roles(ADMIN_ONLY)
require_clerk_or_admin = require_roles(CLERK_OR_ADMIN)
require_any_role = require_roles(ANY_ROLE)
