"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store, resolver, and session manager do the work.

Time values are timezone-aware UTC datetimes throughout. The store converts
at its boundary so nothing above it sees a naive datetime.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

GRANT = "grant"
REVOKE = "revoke"
POLARITIES = (GRANT, REVOKE)


@dataclass
class User:
    """An authenticated identity (principal).

    organization_id / department_id scope the principal; None means unscoped.
    hashed_password is a bcrypt hash. is_active is flipped by administrative
    deactivation, never by the auth core on its own.
    """

    username: str
    id: int | None = None
    hashed_password: str | None = None
    organization_id: int | None = None
    department_id: int | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class Permission:
    name: str  # dotted, e.g. "device.read"
    description: str = ""
    is_active: bool = True


@dataclass
class Role:
    """A named bundle of permissions.

    organization_id None marks a system-wide role. `permissions` is filled by
    the store when the role is loaded with its grants; it is always a sorted
    list, never a polymorphic blob.
    """

    name: str
    id: int | None = None
    organization_id: int | None = None
    description: str = ""
    is_active: bool = True
    permissions: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RoleHierarchyEdge:
    """child inherits every permission of parent (and of parent's ancestors)."""

    parent_id: int
    child_id: int


@dataclass
class RoleAssignment:
    user_id: int
    role_id: int
    valid_from: datetime | None = None
    valid_until: datetime | None = None  # None = unbounded
    is_active: bool = True
    granted_by: int | None = None
    id: int | None = None


@dataclass
class PermissionOverride:
    """Per-principal grant or revoke, evaluated after role-derived permissions."""

    user_id: int
    permission: str
    polarity: str  # GRANT | REVOKE
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True
    granted_by: int | None = None
    notes: str | None = None
    id: int | None = None


@dataclass
class Session:
    """Server-side record binding a principal to an issued credential pair.

    refresh_token_hash is HMAC-SHA256(SECRET_KEY, refresh_secret). The raw
    secret is never stored. previous_refresh_hash holds the hash consumed by
    the most recent rotation so a replayed secret can be recognised.
    version increments on every refresh (optimistic concurrency).
    """

    id: str
    user_id: int
    refresh_token_hash: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    previous_refresh_hash: str | None = None
    device_info: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    is_active: bool = True
    version: int = 1


@dataclass(frozen=True)
class ClientMeta:
    """What the transport layer knows about the caller."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_info: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resolution:
    """Effective permission set plus the role closure it was derived from.

    next_boundary is the earliest upcoming valid_from or valid_until among the
    assignments and overrides behind it; the set is only good until then.
    """

    principal_id: int
    permissions: tuple[str, ...]
    role_ids: tuple[int, ...]
    role_names: tuple[str, ...]
    next_boundary: datetime | None = None


@dataclass(frozen=True)
class SessionContext:
    """Identity established by a validated identity token."""

    principal_id: int
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedSession:
    access_token: str
    refresh_secret: str  # shown once, never stored
    session_id: str
    expires_at: datetime  # session / refresh-secret expiry
    access_expires_at: datetime


@dataclass(frozen=True)
class RefreshedSession:
    access_token: str
    access_expires_at: datetime
    refresh_secret: str  # new secret when rotating, the presented one otherwise
    session_id: str
    expires_at: datetime
    principal_id: int


@dataclass(frozen=True)
class AnomalySignal:
    """Advisory result of DetectAnomalies -- never an authentication failure by itself."""

    is_suspicious: bool
    new_ip: bool
    recent_session_count: int
    unique_ips: int
    risk_level: str  # "low" | "medium" | "high"
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class Decision:
    """Outcome of Authorize.

    reason is a coarse, client-safe code: "granted", "missing_permission", or
    the code of the AuthError that prevented a decision. Truthiness mirrors
    allowed so `if facade.authorize(...)` reads naturally.
    """

    allowed: bool
    reason: str
    principal_id: int | None = None
    session_id: str | None = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class AuthResult:
    user: User
    session: IssuedSession
    permissions: tuple[str, ...]
    anomaly: AnomalySignal
