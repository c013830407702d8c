"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Identity tokens are read in priority order:
  1. "access_token" cookie -- set by POST /api/v1/auth/login.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a SessionContext validated by AuthorizationFacade, so a
revoked or idle session is rejected here even while its token is in date.

get_current_session() raises HTTP 401 when no token is presented at all;
every other failure is raised as the typed AuthError and rendered by the
AuthError handler in api/main.py.

require_permission(...) builds a dependency that also checks the caller's
effective permissions (any one of the names given is enough).

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.facade import AuthorizationFacade
from auth.models import SessionContext


def get_facade(request: Request) -> AuthorizationFacade:
    return request.app.state.facade


def extract_token(request: Request) -> str | None:
    """Return the presented identity token (cookie first, then Bearer), or None."""
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def _require_token(request: Request) -> str:
    token = extract_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return token


def get_current_session(request: Request) -> SessionContext:
    """Require a valid identity token bound to a live session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: SessionContext = Depends(get_current_session)): ...
    """
    return get_facade(request).require(_require_token(request))


def require_permission(*permissions: str) -> Callable[[Request], SessionContext]:
    """Dependency factory: authenticated AND holding at least one of permissions.

    Use as a FastAPI dependency:
        @router.post("/admin/thing")
        def route(ctx: SessionContext = Depends(require_permission("role.manage"))): ...
    """

    def dependency(request: Request) -> SessionContext:
        return get_facade(request).require_any(_require_token(request), permissions)

    return dependency
