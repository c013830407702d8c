"""
api/routes/v1/admin.py -- Administrative mutations on roles, overrides, and accounts.

Routes:
  POST   /api/v1/admin/users/{id}/roles                 -- assign a role (role.manage)
  DELETE /api/v1/admin/users/{id}/roles/{role_id}       -- remove a role (role.manage)
  POST   /api/v1/admin/users/{id}/overrides             -- set a grant/revoke override (user.manage)
  DELETE /api/v1/admin/users/{id}/overrides/{perm}      -- clear an override (user.manage)
  POST   /api/v1/admin/roles/{id}/parents               -- role {id} inherits parent (role.manage)
  DELETE /api/v1/admin/roles/{id}/parents/{parent_id}   -- drop inheritance (role.manage)
  GET    /api/v1/admin/users/{id}/permissions           -- effective set (either permission)
  POST   /api/v1/admin/users/{id}/deactivate            -- deactivate + revoke sessions (user.manage)

Every mutation goes through AuthorizationFacade, which writes to the store and
invalidates the permission cache before returning. The response is only sent
after invalidation, so the next authorize() already sees the change.

Security:
  [M4] POST /deactivate blocks self-deactivation.
  Unknown users and roles are answered with 404 before any write.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    CountResponse,
    EffectivePermissionsResponse,
    MessageResponse,
    OverrideRequest,
    ParentEdgeRequest,
    PolarityEnum,
    RoleAssignRequest,
)
from auth.dependencies import get_facade, require_permission
from auth.facade import AuthorizationFacade
from auth.models import SessionContext

ROLE_MANAGE = "role.manage"
USER_MANAGE = "user.manage"

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_user(facade: AuthorizationFacade, user_id: int) -> None:
    if facade.get_user(user_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )


def _require_role(facade: AuthorizationFacade, role_id: int) -> None:
    if facade.store.get_role(role_id) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Role not found."},
        )


def _effective(facade: AuthorizationFacade, user_id: int) -> EffectivePermissionsResponse:
    resolution = facade.effective_permissions(user_id)
    return EffectivePermissionsResponse(
        user_id=user_id,
        permissions=list(resolution.permissions),
        role_ids=list(resolution.role_ids),
        role_names=list(resolution.role_names),
    )


# ---------------------------------------------------------------------------
# Role assignments
# ---------------------------------------------------------------------------


@router.post("/admin/users/{user_id}/roles", response_model=EffectivePermissionsResponse, status_code=201)
def assign_role(
    request: Request,
    user_id: int,
    body: RoleAssignRequest,
    ctx: SessionContext = Depends(require_permission(ROLE_MANAGE)),
) -> EffectivePermissionsResponse:
    """Assign a role, optionally time-bounded. Returns the user's new effective set."""
    facade = get_facade(request)
    _require_user(facade, user_id)
    _require_role(facade, body.role_id)
    facade.assign_role(
        user_id,
        body.role_id,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        granted_by=ctx.principal_id,
    )
    return _effective(facade, user_id)


@router.delete("/admin/users/{user_id}/roles/{role_id}", status_code=204)
def remove_role(
    request: Request,
    user_id: int,
    role_id: int,
    ctx: SessionContext = Depends(require_permission(ROLE_MANAGE)),
) -> Response:
    facade = get_facade(request)
    if facade.remove_role(user_id, role_id, actor_id=ctx.principal_id) == 0:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Role assignment not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


@router.post("/admin/users/{user_id}/overrides", response_model=EffectivePermissionsResponse, status_code=201)
def set_override(
    request: Request,
    user_id: int,
    body: OverrideRequest,
    ctx: SessionContext = Depends(require_permission(USER_MANAGE)),
) -> EffectivePermissionsResponse:
    """Grant or revoke one permission for one user, replacing any active override for it."""
    facade = get_facade(request)
    _require_user(facade, user_id)
    if facade.store.get_permission(body.permission) is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Permission not found."},
        )
    setter = facade.grant_override if body.polarity == PolarityEnum.grant else facade.revoke_override
    setter(
        user_id,
        body.permission,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        granted_by=ctx.principal_id,
        notes=body.notes,
    )
    return _effective(facade, user_id)


@router.delete("/admin/users/{user_id}/overrides/{permission}", status_code=204)
def clear_override(
    request: Request,
    user_id: int,
    permission: str,
    ctx: SessionContext = Depends(require_permission(USER_MANAGE)),
) -> Response:
    facade = get_facade(request)
    if facade.clear_override(user_id, permission, actor_id=ctx.principal_id) == 0:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Override not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Role hierarchy
# ---------------------------------------------------------------------------


@router.post("/admin/roles/{role_id}/parents", response_model=MessageResponse)
def add_parent(
    request: Request,
    role_id: int,
    body: ParentEdgeRequest,
    response: Response,
    ctx: SessionContext = Depends(require_permission(ROLE_MANAGE)),
) -> MessageResponse:
    """Make role_id inherit parent_id. 409 hierarchy_cycle if that would close a loop."""
    facade = get_facade(request)
    _require_role(facade, role_id)
    _require_role(facade, body.parent_id)
    if facade.add_hierarchy_edge(body.parent_id, role_id, actor_id=ctx.principal_id):
        response.status_code = 201
        return MessageResponse(message="Inheritance added.")
    return MessageResponse(message="Inheritance already present.")


@router.delete("/admin/roles/{role_id}/parents/{parent_id}", status_code=204)
def remove_parent(
    request: Request,
    role_id: int,
    parent_id: int,
    ctx: SessionContext = Depends(require_permission(ROLE_MANAGE)),
) -> Response:
    if not get_facade(request).remove_hierarchy_edge(parent_id, role_id, actor_id=ctx.principal_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Inheritance not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/admin/users/{user_id}/permissions", response_model=EffectivePermissionsResponse)
def user_permissions(
    request: Request,
    user_id: int,
    ctx: SessionContext = Depends(require_permission(USER_MANAGE, ROLE_MANAGE)),
) -> EffectivePermissionsResponse:
    facade = get_facade(request)
    _require_user(facade, user_id)
    return _effective(facade, user_id)


@router.post("/admin/users/{user_id}/deactivate", response_model=CountResponse)
def deactivate_user(
    request: Request,
    user_id: int,
    ctx: SessionContext = Depends(require_permission(USER_MANAGE)),
) -> CountResponse:
    """Deactivate an account and revoke every session it holds. Returns sessions closed.

    [M4] An administrator cannot deactivate their own account.
    """
    facade = get_facade(request)
    _require_user(facade, user_id)
    if user_id == ctx.principal_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    return CountResponse(count=facade.deactivate_user(user_id, actor_id=ctx.principal_id))
