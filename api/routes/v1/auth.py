"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/login            -- password login; sets access + refresh cookies
  POST   /api/v1/auth/refresh          -- exchange a refresh secret for a new identity token
  POST   /api/v1/auth/logout           -- end the presented session; clears cookies
  POST   /api/v1/auth/logout-all       -- end every session of the caller (requires auth)
  GET    /api/v1/auth/me               -- identity plus effective permissions (requires auth)
  GET    /api/v1/auth/sessions         -- caller's active sessions (requires auth)
  DELETE /api/v1/auth/sessions/{id}    -- revoke one of the caller's sessions (requires auth)
  POST   /api/v1/auth/authorize        -- decide one permission for the presented token
  POST   /api/v1/auth/password         -- change password; closes every other session

Handlers are plain `def` so FastAPI runs them on its worker thread pool; the
core is synchronous and does blocking database I/O.

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] AuthorizationFacade.authenticate() provides timing equalization.
  [M5] Cache-Control: no-store on every response that carries credentials.
  Refresh failures delete the client's credential cookies.
  IDOR guard: DELETE /sessions/{id} only revokes sessions owned by the caller.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AnomalyResponse,
    AuthorizeRequest,
    CountResponse,
    DecisionResponse,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
)
from auth.dependencies import extract_token, get_current_session, get_facade
from auth.errors import AuthError, InvalidRefreshToken, SessionNotFound
from auth.models import ClientMeta, SessionContext
from auth.tokens import clear_auth_cookies, set_auth_cookie, set_refresh_cookie
from core.config import get_settings

# Auth policy:
# - POST   /api/v1/auth/login:          public -- login endpoint must be unauthenticated
# - POST   /api/v1/auth/refresh:        public -- the refresh secret is the credential
# - POST   /api/v1/auth/logout:         public -- an expired token must still be able to log out
# - POST   /api/v1/auth/authorize:      public -- answers deny for a missing/invalid token
# - everything else:                    requires a live session (get_current_session)
router = APIRouter()


def _client_meta(request: Request, device_info: dict | None = None) -> ClientMeta:
    return ClientMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        device_info=device_info or {},
    )


def _seconds_until(moment, now) -> int:
    return max(int((moment - now).total_seconds()), 0)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2] must be ABOVE @router
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; issue a session.

    Wrong username, wrong password, and inactive account all produce the same
    401 "invalid_credentials" so the response never reveals which it was.
    """
    facade = get_facade(request)
    result = facade.authenticate(body.username, body.password, _client_meta(request, body.device_info))
    issued = result.session
    now = facade.now()

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=issued.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_seconds_until(issued.access_expires_at, now),
            refresh_token=issued.refresh_secret,
            session_id=issued.session_id,
            refresh_expires_at=issued.expires_at,
            user_id=result.user.id,
            username=result.user.username,
            permissions=list(result.permissions),
            anomaly=AnomalyResponse(
                is_suspicious=result.anomaly.is_suspicious,
                new_ip=result.anomaly.new_ip,
                recent_session_count=result.anomaly.recent_session_count,
                unique_ips=result.anomaly.unique_ips,
                risk_level=result.anomaly.risk_level,
                recommendations=list(result.anomaly.recommendations),
            ),
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, issued.access_token, _seconds_until(issued.access_expires_at, now))
    set_refresh_cookie(resp, issued.refresh_secret, _seconds_until(issued.expires_at, now))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange a refresh secret (body or cookie) for a new identity token.

    With rotation on, the response carries a new refresh secret and the old
    one stops working; presenting the old one again revokes the session.
    """
    facade = get_facade(request)
    secret = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    try:
        if not secret:
            raise InvalidRefreshToken()
        refreshed = facade.refresh(secret, _client_meta(request), session_id=body.session_id if body else None)
    except AuthError as exc:
        resp = JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
        )
        clear_auth_cookies(resp)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    now = facade.now()
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=refreshed.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106
            expires_in=_seconds_until(refreshed.access_expires_at, now),
            refresh_token=refreshed.refresh_secret,
            session_id=refreshed.session_id,
            refresh_expires_at=refreshed.expires_at,
        ).model_dump(mode="json"),
    )
    set_auth_cookie(resp, refreshed.access_token, _seconds_until(refreshed.access_expires_at, now))
    set_refresh_cookie(resp, refreshed.refresh_secret, _seconds_until(refreshed.expires_at, now))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest | None = None) -> JSONResponse:
    """End the presented session and clear cookies.

    Accepts a refresh secret or an identity token (even an expired one).
    Logging out a session that is already gone still succeeds.
    """
    facade = get_facade(request)
    token = extract_token(request)
    secret = (body.refresh_token if body else None) or request.cookies.get("refresh_token")
    if token or secret:
        try:
            facade.logout(token=token, refresh_secret=secret)
        except SessionNotFound:
            pass
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/authorize", response_model=DecisionResponse)
def authorize(request: Request, body: AuthorizeRequest) -> DecisionResponse:
    """Answer whether the presented token's principal holds `permission` right now.

    Always 200: a missing or invalid token is a deny with its reason code.
    """
    decision = get_facade(request).authorize(extract_token(request) or "", body.permission)
    return DecisionResponse(allowed=decision.allowed, reason=decision.reason)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=CountResponse)
def logout_all(request: Request, ctx: SessionContext = Depends(get_current_session)) -> JSONResponse:
    """Close every session of the caller, including this one."""
    closed = get_facade(request).logout_all(ctx.principal_id)
    resp = JSONResponse(content=CountResponse(count=closed).model_dump())
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, ctx: SessionContext = Depends(get_current_session)) -> MeResponse:
    """Return identity information and the effective permission set for the caller."""
    facade = get_facade(request)
    user = facade.get_user(ctx.principal_id)
    if user is None:
        raise SessionNotFound()
    resolution = facade.effective_permissions(ctx.principal_id)
    return MeResponse(
        user_id=user.id,
        username=user.username,
        session_id=ctx.session_id,
        organization_id=user.organization_id,
        department_id=user.department_id,
        permissions=list(resolution.permissions),
        roles=list(resolution.role_names),
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, ctx: SessionContext = Depends(get_current_session)) -> list[SessionResponse]:
    """List the caller's active sessions, most recently used first. Secrets are never returned."""
    sessions = get_facade(request).sessions.list_active_sessions(ctx.principal_id)
    return [
        SessionResponse(
            id=s.id,
            created_at=s.created_at,
            last_activity=s.last_activity,
            expires_at=s.expires_at,
            ip_address=s.ip_address,
            device_info=s.device_info,
            current=s.id == ctx.session_id,
        )
        for s in sessions
    ]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    ctx: SessionContext = Depends(get_current_session),
) -> Response:
    """Revoke one of the caller's sessions [IDOR guard]."""
    get_facade(request).revoke_own_session(ctx.principal_id, session_id)
    return Response(status_code=204)


@router.post("/auth/password", response_model=CountResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    ctx: SessionContext = Depends(get_current_session),
) -> CountResponse:
    """Change the caller's password. Every other session is closed; this one survives."""
    closed = get_facade(request).change_password(
        ctx.principal_id, body.current_password, body.new_password, current_session_id=ctx.session_id
    )
    return CountResponse(count=closed)
