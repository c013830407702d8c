"""
auth/facade.py -- Single entry point for request-handling code.

AuthorizationFacade composes the session manager, the permission cache (and
the resolver behind it), the credential store, and the audit dispatcher.
Route handlers, dependencies, and the CLI talk to this class only.

Rules it enforces:
  - authorize() never raises. Every failure becomes a deny Decision whose
    reason is a coarse code safe to hand to a client. System failures
    (DataIntegrityError, Timeout, store errors) are logged at ERROR so they
    page someone, and still fail closed.
  - Permissions are always read from the cache/resolver, never from a token.
  - Every administrative mutation writes to the store, then invalidates the
    cache, then returns. A caller never gets confirmation before the next
    authorize() would see the change.

Layer rule: no imports from api/. The permission cache is injected, so this
module does not import cache/ at runtime either.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from auth import audit
from auth.audit import AuditDispatcher, AuditEvent
from auth.errors import (
    AuthError,
    DataIntegrityError,
    InvalidCredentials,
    PermissionDenied,
    SessionNotFound,
    Timeout,
)
from auth.models import (
    GRANT,
    REVOKE,
    AuthResult,
    ClientMeta,
    Decision,
    PermissionOverride,
    RefreshedSession,
    Resolution,
    RoleAssignment,
    SessionContext,
    User,
)
from auth.resolver import PermissionResolver
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import authenticate_user, hash_password, utcnow
from core.config import Settings
from core.deadline import Deadline

if TYPE_CHECKING:
    from cache.store import PermissionCache

logger = logging.getLogger("warden.auth")

GRANTED = "granted"
MISSING_PERMISSION = "missing_permission"
STORE_UNAVAILABLE = "store_unavailable"


class AuthorizationFacade:
    def __init__(
        self,
        store: CredentialStore,
        resolver: PermissionResolver,
        cache: PermissionCache,
        sessions: SessionManager,
        audit_dispatcher: AuditDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.cache = cache
        self.sessions = sessions
        self.audit = audit_dispatcher
        self.settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(
        self,
        username: str,
        password: str,
        client_meta: ClientMeta | None = None,
        deadline: Deadline | None = None,
    ) -> AuthResult:
        """Password login. Raises InvalidCredentials for every kind of failure.

        Anomaly detection runs before the session is created and is advisory:
        a suspicious signal is logged and audited but never blocks the login.
        """
        meta = client_meta or ClientMeta()
        user = authenticate_user(self.store, username, password, deadline=deadline)
        if user is None:
            self.audit.record(
                audit.FAILED_LOGIN,
                resource_type="user",
                metadata={"username": username, "ip_address": meta.ip_address},
                success=False,
                error_message=InvalidCredentials.code,
            )
            raise InvalidCredentials()

        anomaly = self.sessions.detect_anomalies(user.id, meta.ip_address)
        if anomaly.is_suspicious:
            logger.warning(
                "Suspicious login for principal %s from %s (%d sessions in window, risk %s)",
                user.id,
                meta.ip_address,
                anomaly.recent_session_count,
                anomaly.risk_level,
            )
            self.audit.record(
                audit.SUSPICIOUS_LOGIN,
                user.id,
                metadata={"ip_address": meta.ip_address, "risk_level": anomaly.risk_level},
            )

        device_info = dict(meta.device_info)
        if meta.user_agent:
            device_info.setdefault("user_agent", meta.user_agent)
        issued = self.sessions.create_session(user.id, device_info, meta.ip_address, deadline=deadline)
        self.store.update_last_login(user.id, self._clock())
        permissions = tuple(self.cache.get_effective(user.id, deadline=deadline))

        self.audit.record(
            audit.LOGIN,
            user.id,
            resource_type="session",
            resource_id=issued.session_id,
            metadata={"ip_address": meta.ip_address, "new_ip": anomaly.new_ip},
        )
        return AuthResult(user=user, session=issued, permissions=permissions, anomaly=anomaly)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(self, token: str, permission: str, deadline: Deadline | None = None) -> Decision:
        """Decide whether the token's principal holds permission right now. Never raises."""
        deadline = deadline or Deadline.after(self.settings.authorize_timeout_seconds)
        context: SessionContext | None = None
        try:
            context = self.sessions.validate_token(token, deadline=deadline)
            effective = self.cache.get_effective(context.principal_id, deadline=deadline)
        except (DataIntegrityError, Timeout) as exc:
            logger.error("Authorization for %r could not be decided: %s", permission, exc.code)
            return self._deny(exc.code, permission, context)
        except AuthError as exc:
            return self._deny(exc.code, permission, context)
        except SQLAlchemyError:
            logger.exception("Credential store unavailable during authorization")
            return self._deny(STORE_UNAVAILABLE, permission, context)

        if permission not in effective:
            return self._deny(MISSING_PERMISSION, permission, context)
        return Decision(
            allowed=True,
            reason=GRANTED,
            principal_id=context.principal_id,
            session_id=context.session_id,
        )

    def _deny(self, reason: str, permission: str, context: SessionContext | None) -> Decision:
        principal_id = context.principal_id if context else None
        session_id = context.session_id if context else None
        self.audit.emit(
            AuditEvent(
                action=audit.AUTHORIZATION_DENIED,
                principal_id=principal_id,
                resource_type="permission",
                resource_id=permission,
                metadata={"session_id": session_id},
                success=False,
                error_message=reason,
            )
        )
        return Decision(allowed=False, reason=reason, principal_id=principal_id, session_id=session_id)

    def require(self, token: str, permission: str | None = None, deadline: Deadline | None = None) -> SessionContext:
        """Raising variant of authorize() for HTTP dependencies.

        With permission=None only the token and its session are checked.
        Raises the typed AuthError; PermissionDenied for a missing permission.
        """
        deadline = deadline or Deadline.after(self.settings.authorize_timeout_seconds)
        context = self.sessions.validate_token(token, deadline=deadline)
        if permission is None:
            return context
        if permission not in self.cache.get_effective(context.principal_id, deadline=deadline):
            self._deny(MISSING_PERMISSION, permission, context)
            raise PermissionDenied()
        return context

    def require_any(self, token: str, permissions: tuple[str, ...]) -> SessionContext:
        """Like require() but satisfied by any one of permissions."""
        deadline = Deadline.after(self.settings.authorize_timeout_seconds)
        context = self.sessions.validate_token(token, deadline=deadline)
        effective = set(self.cache.get_effective(context.principal_id, deadline=deadline))
        if effective.isdisjoint(permissions):
            self._deny(MISSING_PERMISSION, "|".join(permissions), context)
            raise PermissionDenied()
        return context

    def effective_permissions(self, principal_id: int) -> Resolution:
        return self.cache.get_resolution(principal_id)

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def refresh(
        self,
        refresh_secret: str,
        client_meta: ClientMeta | None = None,
        session_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> RefreshedSession:
        meta = client_meta or ClientMeta()
        deadline = deadline or Deadline.after(self.settings.refresh_timeout_seconds)
        try:
            refreshed = self.sessions.refresh(refresh_secret, meta.ip_address, session_id=session_id, deadline=deadline)
        except AuthError as exc:
            self.audit.record(
                audit.REFRESH,
                resource_type="session",
                resource_id=session_id,
                metadata={"ip_address": meta.ip_address},
                success=False,
                error_message=exc.code,
            )
            raise
        self.audit.record(
            audit.REFRESH,
            refreshed.principal_id,
            resource_type="session",
            resource_id=refreshed.session_id,
        )
        return refreshed

    def logout(
        self,
        token: str | None = None,
        refresh_secret: str | None = None,
        session_id: str | None = None,
    ) -> str:
        """End one session, identified by refresh secret, identity token, or id (tried in that order).

        Returns the session id. Raises SessionNotFound if nothing matches.
        """
        if refresh_secret:
            try:
                closed = self.sessions.revoke(refresh_secret)
            except SessionNotFound:
                if not (token or session_id):
                    raise
            else:
                self.audit.record(audit.LOGOUT, resource_type="session", resource_id=closed)
                return closed
        if token:
            closed = self.sessions.revoke(token)
        elif session_id:
            self.sessions.revoke_session(session_id)
            closed = session_id
        else:
            raise SessionNotFound()
        self.audit.record(audit.LOGOUT, resource_type="session", resource_id=closed)
        return closed

    def logout_all(self, principal_id: int, except_session_id: str | None = None) -> int:
        closed = self.sessions.revoke_all(principal_id, except_session_id=except_session_id)
        self.audit.record(audit.LOGOUT, principal_id, resource_type="user", metadata={"sessions_closed": closed})
        return closed

    def revoke_own_session(self, principal_id: int, session_id: str) -> None:
        """Revoke one of the caller's sessions. Someone else's session reads as not found."""
        session = self.sessions.get_session(session_id)
        if session is None or session.user_id != principal_id:
            raise SessionNotFound()
        self.sessions.revoke_session(session_id)
        self.audit.record(audit.LOGOUT, principal_id, resource_type="session", resource_id=session_id)

    # ------------------------------------------------------------------
    # Account status
    # ------------------------------------------------------------------

    def change_password(
        self, principal_id: int, current_password: str, new_password: str, current_session_id: str | None = None
    ) -> int:
        """Verify the current password, store the new hash, close every other session.

        Returns how many sessions were closed. Raises InvalidCredentials on a
        wrong current password.
        """
        user = self.store.get_user(principal_id)
        if user is None or authenticate_user(self.store, user.username, current_password) is None:
            raise InvalidCredentials()
        self.store.update_user(principal_id, hashed_password=hash_password(new_password))
        closed = self.sessions.revoke_all(principal_id, except_session_id=current_session_id)
        self.audit.record(audit.PASSWORD_CHANGED, principal_id, metadata={"sessions_closed": closed})
        return closed

    def deactivate_user(self, principal_id: int, actor_id: int | None = None) -> int:
        """Deactivate an account and close all of its sessions. Returns sessions closed."""
        if not self.store.update_user(principal_id, is_active=False):
            raise DataIntegrityError("Unknown principal.")
        closed = self.sessions.revoke_all(principal_id)
        self.cache.invalidate(principal_id)
        self.audit.record(
            audit.USER_DEACTIVATED,
            actor_id,
            resource_type="user",
            resource_id=str(principal_id),
            metadata={"sessions_closed": closed},
        )
        return closed

    # ------------------------------------------------------------------
    # Administrative mutations -- write, invalidate, then return
    # ------------------------------------------------------------------

    def assign_role(
        self,
        principal_id: int,
        role_id: int,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        granted_by: int | None = None,
    ) -> int:
        if self.store.get_user(principal_id) is None or self.store.get_role(role_id) is None:
            raise DataIntegrityError("Unknown principal or role.")
        assignment_id = self.store.create_role_assignment(
            RoleAssignment(
                user_id=principal_id,
                role_id=role_id,
                valid_from=valid_from,
                valid_until=valid_until,
                granted_by=granted_by,
            )
        )
        self.cache.invalidate(principal_id)
        self.audit.record(
            audit.ROLE_ASSIGNED,
            granted_by,
            resource_type="user",
            resource_id=str(principal_id),
            metadata={"role_id": role_id},
        )
        return assignment_id

    def remove_role(self, principal_id: int, role_id: int, actor_id: int | None = None) -> int:
        removed = self.store.deactivate_role_assignments(principal_id, role_id)
        self.cache.invalidate(principal_id)
        self.audit.record(
            audit.ROLE_REMOVED,
            actor_id,
            resource_type="user",
            resource_id=str(principal_id),
            metadata={"role_id": role_id, "assignments": removed},
        )
        return removed

    def grant_override(self, principal_id: int, permission: str, **window) -> int:
        return self._set_override(principal_id, permission, GRANT, **window)

    def revoke_override(self, principal_id: int, permission: str, **window) -> int:
        return self._set_override(principal_id, permission, REVOKE, **window)

    def _set_override(
        self,
        principal_id: int,
        permission: str,
        polarity: str,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        granted_by: int | None = None,
        notes: str | None = None,
    ) -> int:
        if self.store.get_user(principal_id) is None:
            raise DataIntegrityError("Unknown principal.")
        if self.store.get_permission(permission) is None:
            raise DataIntegrityError("Unknown permission.")
        override_id = self.store.upsert_override(
            PermissionOverride(
                user_id=principal_id,
                permission=permission,
                polarity=polarity,
                valid_from=valid_from,
                valid_until=valid_until,
                granted_by=granted_by,
                notes=notes,
            )
        )
        self.cache.invalidate(principal_id)
        self.audit.record(
            audit.OVERRIDE_SET,
            granted_by,
            resource_type="user",
            resource_id=str(principal_id),
            metadata={"permission": permission, "polarity": polarity},
        )
        return override_id

    def clear_override(self, principal_id: int, permission: str, actor_id: int | None = None) -> int:
        cleared = self.store.deactivate_override(principal_id, permission)
        self.cache.invalidate(principal_id)
        self.audit.record(
            audit.OVERRIDE_CLEARED,
            actor_id,
            resource_type="user",
            resource_id=str(principal_id),
            metadata={"permission": permission},
        )
        return cleared

    def add_hierarchy_edge(self, parent_id: int, child_id: int, actor_id: int | None = None) -> bool:
        """Make child_id inherit parent_id. Raises CycleError / HierarchyTooDeep / DataIntegrityError."""
        added = self.resolver.add_edge(parent_id, child_id, created_by=actor_id)
        if added:
            self.cache.invalidate_by_role(child_id)
            self.audit.record(
                audit.HIERARCHY_CHANGED,
                actor_id,
                resource_type="role",
                resource_id=str(child_id),
                metadata={"parent_id": parent_id, "change": "added"},
            )
        return added

    def remove_hierarchy_edge(self, parent_id: int, child_id: int, actor_id: int | None = None) -> bool:
        removed = self.resolver.remove_edge(parent_id, child_id)
        if removed:
            # Cached closures built through the dropped edge still contain parent_id.
            self.cache.invalidate_by_role(parent_id)
            self.cache.invalidate_by_role(child_id)
            self.audit.record(
                audit.HIERARCHY_CHANGED,
                actor_id,
                resource_type="role",
                resource_id=str(child_id),
                metadata={"parent_id": parent_id, "change": "removed"},
            )
        return removed

    def set_role_permissions(self, role_id: int, permissions: list[str], actor_id: int | None = None) -> None:
        if self.store.get_role(role_id) is None:
            raise DataIntegrityError("Unknown role.")
        self.store.set_role_permissions(role_id, permissions)
        self.cache.invalidate_by_role(role_id)
        self.audit.record(
            audit.ROLE_PERMISSIONS_CHANGED,
            actor_id,
            resource_type="role",
            resource_id=str(role_id),
            metadata={"permissions": sorted(set(permissions))},
        )

    def get_user(self, principal_id: int) -> User | None:
        return self.store.get_user(principal_id)

    def now(self) -> datetime:
        return self._clock()
