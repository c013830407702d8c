"""
auth/store.py -- SQLAlchemy Core persistence layer for the credential store.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
the _row_to_* helpers are the mappers. The resolver, session manager, and
route code never touch SQL directly.

The store owns no business rules. It answers "what rows exist" and "write
this row"; whether an expired session may refresh, or whether an inactive role
still contributes permissions, is decided above it. The one exception is the
time-window predicate (_valid_at): every read that filters by validity uses
the same half-open [valid_from, valid_until) clause so filtering is consistent
across assignments and overrides.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Role name uniqueness within an organization scope is enforced in code
  rather than SQL because SQLite treats two NULL organization_id values as
  distinct in UNIQUE constraints, which would allow duplicate system-wide
  roles. create_role() does the check.

Time: all datetimes are stored as naive UTC and returned timezone-aware.

Deadlines: every public method accepts deadline=None and checks it before
touching the database, raising auth.errors.Timeout once it has passed.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    and_,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.errors import Timeout
from auth.models import Permission, PermissionOverride, Role, RoleAssignment, RoleHierarchyEdge, Session, User
from core.config import get_settings
from core.deadline import Deadline, DeadlineExceeded

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("organization_id", Integer),
    Column("department_id", Integer),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False),
    Column("last_login", DateTime),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("name", String(150), primary_key=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("organization_id", Integer),  # NULL = system-wide
    Column("description", Text, nullable=False, server_default=""),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False),
    # Note: UNIQUE(organization_id, name) enforced in code, not SQL.
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, nullable=False),
    Column("permission_name", String(150), nullable=False),
    PrimaryKeyConstraint("role_id", "permission_name"),
)

_role_hierarchy = Table(
    "role_hierarchy",
    _metadata,
    Column("parent_role_id", Integer, nullable=False),
    Column("child_role_id", Integer, nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("created_by", Integer),
    PrimaryKeyConstraint("parent_role_id", "child_role_id"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role_id", Integer, nullable=False, index=True),
    Column("valid_from", DateTime),
    Column("valid_until", DateTime),  # NULL = unbounded
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("granted_by", Integer),
    Column("created_at", DateTime, nullable=False),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("permission_name", String(150), nullable=False),
    Column("polarity", String(10), nullable=False),  # "grant" | "revoke"
    Column("valid_from", DateTime),
    Column("valid_until", DateTime),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("granted_by", Integer),
    Column("notes", Text),
    Column("created_at", DateTime, nullable=False),
)

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("previous_refresh_hash", String(64)),
    Column("device_info", Text),  # JSON object
    Column("ip_address", String(64)),
    Column("created_at", DateTime, nullable=False),
    Column("last_activity", DateTime, nullable=False),
    Column("expires_at", DateTime, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("version", Integer, nullable=False, server_default="1"),
)

Index("ix_user_sessions_previous_hash", _sessions.c.previous_refresh_hash)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(moment: datetime | None) -> datetime | None:
    """Normalise to naive UTC for storage."""
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(moment: datetime | None) -> datetime | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _valid_at(table: Table, now: datetime):
    """Active and now within [valid_from, valid_until); NULL bounds are open."""
    at = _to_db(now)
    return and_(
        table.c.is_active == 1,
        or_(table.c.valid_from.is_(None), table.c.valid_from <= at),
        or_(table.c.valid_until.is_(None), table.c.valid_until > at),
    )


def _check(deadline: Deadline | None, operation: str) -> None:
    if deadline is None:
        return
    try:
        deadline.check(operation)
    except DeadlineExceeded as exc:
        raise Timeout() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for principals, roles, overrides, and sessions.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        uid = store.create_user(User(username="alice", hashed_password=hash_password("secret")))
        role_id = store.create_role(Role(name="nurse"))
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Cheap liveness check for the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    organization_id=user.organization_id,
                    department_id=user.department_id,
                    is_active=1 if user.is_active else 0,
                    created_at=_to_db(user.created_at or _now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int, deadline: Deadline | None = None) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        _check(deadline, "get_user")
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str, deadline: Deadline | None = None) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        _check(deadline, "get_user_by_username")
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: is_active, hashed_password, organization_id, department_id.
        is_active must be passed as bool; this method converts to int for SQLite.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int, when: datetime | None = None) -> None:
        """Stamp last_login after every successful password authentication."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_to_db(when or _now())))
            conn.commit()

    # ------------------------------------------------------------------
    # Permission definitions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> None:
        """Insert a permission definition. Raises IntegrityError on a duplicate name."""
        with self.engine.connect() as conn:
            conn.execute(
                _permissions.insert().values(
                    name=permission.name,
                    description=permission.description,
                    is_active=1 if permission.is_active else 0,
                )
            )
            conn.commit()

    def get_permission(self, name: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.name)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def active_permission_names(self, names, deadline: Deadline | None = None) -> set[str]:
        """Subset of `names` whose definition exists and is active."""
        wanted = list(set(names))
        if not wanted:
            return set()
        _check(deadline, "active_permission_names")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.name).where(and_(_permissions.c.name.in_(wanted), _permissions.c.is_active == 1))
            ).fetchall()
        return {r.name for r in rows}

    def set_permission_active(self, name: str, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _permissions.update().where(_permissions.c.name == name).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID.

        Raises ValueError if a role with the same name already exists in the
        same organization scope (system-wide roles share the NULL scope).
        """
        with self.engine.connect() as conn:
            if conn.execute(_role_name_query(role.name, role.organization_id)).fetchone() is not None:
                raise ValueError(f"Role {role.name!r} already exists in this scope")
            result = conn.execute(
                _roles.insert().values(
                    name=role.name,
                    organization_id=role.organization_id,
                    description=role.description,
                    is_active=1 if role.is_active else 0,
                    created_at=_to_db(_now()),
                )
            )
            role_id = result.inserted_primary_key[0]
            for name in sorted(set(role.permissions)):
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_name=name))
            conn.commit()
            return role_id

    def get_role(self, role_id: int) -> Role | None:
        roles = self.get_roles([role_id])
        return roles.get(role_id)

    def get_role_by_name(self, name: str, organization_id: int | None = None) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_role_name_query(name, organization_id)).fetchone()
        if row is None:
            return None
        return self.get_role(row.id)

    def get_roles(self, role_ids, deadline: Deadline | None = None) -> dict[int, Role]:
        """Load roles by ID with their active permission grants.

        Missing IDs are simply absent from the result; the caller decides
        whether that is an integrity problem. Permissions whose definition is
        inactive or missing are not attached.
        """
        ids = list(set(role_ids))
        if not ids:
            return {}
        _check(deadline, "get_roles")
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.id.in_(ids))).fetchall()
            grants = conn.execute(
                select(_role_permissions.c.role_id, _role_permissions.c.permission_name)
                .select_from(
                    _role_permissions.join(
                        _permissions,
                        _permissions.c.name == _role_permissions.c.permission_name,
                    )
                )
                .where(and_(_role_permissions.c.role_id.in_(ids), _permissions.c.is_active == 1))
            ).fetchall()
        by_role: dict[int, list[str]] = {}
        for g in grants:
            by_role.setdefault(g.role_id, []).append(g.permission_name)
        return {r.id: _row_to_role(r, sorted(by_role.get(r.id, []))) for r in rows}

    def list_roles(self, organization_id: int | None = None) -> list[Role]:
        """Return roles visible in a scope: the scope's own plus system-wide ones."""
        query = _roles.select().order_by(_roles.c.name)
        if organization_id is not None:
            query = query.where(or_(_roles.c.organization_id == organization_id, _roles.c.organization_id.is_(None)))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return list(self.get_roles([r.id for r in rows]).values())

    def set_role_active(self, role_id: int, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(is_active=1 if is_active else 0))
            conn.commit()
        return result.rowcount > 0

    def set_role_permissions(self, role_id: int, permissions: list[str]) -> None:
        """Replace the role's permission grants in one transaction."""
        with self.engine.connect() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            for name in sorted(set(permissions)):
                conn.execute(_role_permissions.insert().values(role_id=role_id, permission_name=name))
            conn.commit()

    def add_role_permission(self, role_id: int, permission: str) -> bool:
        """Grant one permission to a role. Returns False if it was already granted."""
        with self.engine.connect() as conn:
            exists = conn.execute(
                select(_role_permissions.c.role_id).where(
                    and_(_role_permissions.c.role_id == role_id, _role_permissions.c.permission_name == permission)
                )
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_name=permission))
            conn.commit()
        return True

    # ------------------------------------------------------------------
    # Role hierarchy
    # ------------------------------------------------------------------

    def list_hierarchy_edges(self, deadline: Deadline | None = None) -> list[RoleHierarchyEdge]:
        """Snapshot of every hierarchy edge, in a stable order."""
        _check(deadline, "list_hierarchy_edges")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_role_hierarchy.c.parent_role_id, _role_hierarchy.c.child_role_id).order_by(
                    _role_hierarchy.c.child_role_id, _role_hierarchy.c.parent_role_id
                )
            ).fetchall()
        return [RoleHierarchyEdge(parent_id=r.parent_role_id, child_id=r.child_role_id) for r in rows]

    def insert_hierarchy_edge(self, parent_id: int, child_id: int, created_by: int | None = None) -> bool:
        """Insert an edge. Returns False if it already exists. No cycle check -- see PermissionResolver.add_edge."""
        with self.engine.connect() as conn:
            exists = conn.execute(
                select(_role_hierarchy.c.parent_role_id).where(
                    and_(_role_hierarchy.c.parent_role_id == parent_id, _role_hierarchy.c.child_role_id == child_id)
                )
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(
                _role_hierarchy.insert().values(
                    parent_role_id=parent_id,
                    child_role_id=child_id,
                    created_at=_to_db(_now()),
                    created_by=created_by,
                )
            )
            conn.commit()
        return True

    def delete_hierarchy_edge(self, parent_id: int, child_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_hierarchy.delete().where(
                    and_(_role_hierarchy.c.parent_role_id == parent_id, _role_hierarchy.c.child_role_id == child_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    def create_role_assignment(self, assignment: RoleAssignment) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.insert().values(
                    user_id=assignment.user_id,
                    role_id=assignment.role_id,
                    valid_from=_to_db(assignment.valid_from),
                    valid_until=_to_db(assignment.valid_until),
                    is_active=1 if assignment.is_active else 0,
                    granted_by=assignment.granted_by,
                    created_at=_to_db(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def deactivate_role_assignments(self, user_id: int, role_id: int) -> int:
        """Soft-delete every active assignment of role_id to user_id. Returns rows changed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.update()
                .where(
                    and_(_user_roles.c.user_id == user_id, _user_roles.c.role_id == role_id, _user_roles.c.is_active == 1)
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def list_valid_role_assignments(
        self, user_id: int, now: datetime, deadline: Deadline | None = None
    ) -> list[RoleAssignment]:
        """Assignments that are active and time-valid at `now`."""
        _check(deadline, "list_valid_role_assignments")
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_roles.select()
                .where(and_(_user_roles.c.user_id == user_id, _valid_at(_user_roles, now)))
                .order_by(_user_roles.c.role_id, _user_roles.c.id)
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def list_role_assignments(self, user_id: int) -> list[RoleAssignment]:
        """Every assignment for a user regardless of validity (admin views)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_roles.select().where(_user_roles.c.user_id == user_id).order_by(_user_roles.c.id)
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def user_ids_with_roles(self, role_ids, now: datetime) -> set[int]:
        """Principals holding any of role_ids through a currently valid assignment."""
        ids = list(set(role_ids))
        if not ids:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_user_roles.c.user_id)
                .where(and_(_user_roles.c.role_id.in_(ids), _valid_at(_user_roles, now)))
                .distinct()
            ).fetchall()
        return {r.user_id for r in rows}

    # ------------------------------------------------------------------
    # Permission overrides
    # ------------------------------------------------------------------

    def upsert_override(self, override: PermissionOverride) -> int:
        """Write an override, deactivating any active one for the same (user, permission).

        Both statements run on one connection and commit together, so readers
        never observe two active overrides for the same pair.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _user_permissions.update()
                .where(
                    and_(
                        _user_permissions.c.user_id == override.user_id,
                        _user_permissions.c.permission_name == override.permission,
                        _user_permissions.c.is_active == 1,
                    )
                )
                .values(is_active=0)
            )
            result = conn.execute(
                _user_permissions.insert().values(
                    user_id=override.user_id,
                    permission_name=override.permission,
                    polarity=override.polarity,
                    valid_from=_to_db(override.valid_from),
                    valid_until=_to_db(override.valid_until),
                    is_active=1 if override.is_active else 0,
                    granted_by=override.granted_by,
                    notes=override.notes,
                    created_at=_to_db(_now()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def deactivate_override(self, user_id: int, permission: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_permissions.update()
                .where(
                    and_(
                        _user_permissions.c.user_id == user_id,
                        _user_permissions.c.permission_name == permission,
                        _user_permissions.c.is_active == 1,
                    )
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def list_valid_overrides(
        self, user_id: int, now: datetime, deadline: Deadline | None = None
    ) -> list[PermissionOverride]:
        _check(deadline, "list_valid_overrides")
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_permissions.select()
                .where(and_(_user_permissions.c.user_id == user_id, _valid_at(_user_permissions, now)))
                .order_by(_user_permissions.c.permission_name, _user_permissions.c.id)
            ).fetchall()
        return [_row_to_override(r) for r in rows]

    def list_overrides(self, user_id: int) -> list[PermissionOverride]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_permissions.select().where(_user_permissions.c.user_id == user_id).order_by(_user_permissions.c.id)
            ).fetchall()
        return [_row_to_override(r) for r in rows]

    def next_validity_boundary(
        self, user_id: int, now: datetime, deadline: Deadline | None = None
    ) -> datetime | None:
        """Earliest valid_from or valid_until after `now` on the user's active assignments and overrides.

        That is the next moment the user's effective set can change without a
        write. None when every window is open-ended or already past.
        """
        _check(deadline, "next_validity_boundary")
        at = _to_db(now)
        candidates = []
        with self.engine.connect() as conn:
            for table in (_user_roles, _user_permissions):
                for column in (table.c.valid_from, table.c.valid_until):
                    value = conn.execute(
                        select(func.min(column)).where(
                            and_(table.c.user_id == user_id, table.c.is_active == 1, column > at)
                        )
                    ).scalar()
                    if value is not None:
                        candidates.append(_from_db(value))
        return min(candidates) if candidates else None

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, deadline: Deadline | None = None) -> None:
        _check(deadline, "create_session")
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    refresh_token_hash=session.refresh_token_hash,
                    previous_refresh_hash=session.previous_refresh_hash,
                    device_info=json.dumps(session.device_info or {}),
                    ip_address=session.ip_address,
                    created_at=_to_db(session.created_at),
                    last_activity=_to_db(session.last_activity),
                    expires_at=_to_db(session.expires_at),
                    is_active=1 if session.is_active else 0,
                    version=session.version,
                )
            )
            conn.commit()

    def get_session(self, session_id: str, deadline: Deadline | None = None) -> Session | None:
        _check(deadline, "get_session")
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_session_by_refresh_hash(self, token_hash: str, deadline: Deadline | None = None) -> Session | None:
        """Look up a session by its current refresh-secret hash. O(1) via UNIQUE index."""
        _check(deadline, "find_session_by_refresh_hash")
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_session_by_previous_hash(self, token_hash: str, deadline: Deadline | None = None) -> Session | None:
        """Look up a session whose most recently consumed refresh hash matches."""
        _check(deadline, "find_session_by_previous_hash")
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.previous_refresh_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, when: datetime, deadline: Deadline | None = None) -> bool:
        """Stamp last_activity on an active session. Lost updates here are tolerable.

        Returns False if the session is gone or no longer active.
        """
        _check(deadline, "touch_session")
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(and_(_sessions.c.id == session_id, _sessions.c.is_active == 1))
                .values(last_activity=_to_db(when))
            )
            conn.commit()
        return result.rowcount > 0

    def compare_and_swap_session(
        self,
        session_id: str,
        expected_version: int,
        when: datetime,
        ip_address: str | None = None,
        new_refresh_hash: str | None = None,
        consumed_refresh_hash: str | None = None,
        deadline: Deadline | None = None,
    ) -> bool:
        """Atomically record a refresh if nobody else has since the caller read the row.

        The WHERE clause pins version and is_active, so a concurrent refresh
        or revocation makes this a no-op (returns False) rather than a lost
        update. When new_refresh_hash is given the stored secret is rotated.
        """
        _check(deadline, "compare_and_swap_session")
        values: dict = {"last_activity": _to_db(when), "version": _sessions.c.version + 1}
        if ip_address:
            values["ip_address"] = ip_address
        if new_refresh_hash is not None:
            values["refresh_token_hash"] = new_refresh_hash
            values["previous_refresh_hash"] = consumed_refresh_hash
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    and_(
                        _sessions.c.id == session_id,
                        _sessions.c.version == expected_version,
                        _sessions.c.is_active == 1,
                    )
                )
                .values(**values)
            )
            conn.commit()
        return result.rowcount == 1

    def deactivate_session(self, session_id: str, deadline: Deadline | None = None) -> bool:
        """Mark a session inactive. Returns True if the session exists (active or not)."""
        _check(deadline, "deactivate_session")
        with self.engine.connect() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(is_active=0))
            conn.commit()
            found = conn.execute(select(_sessions.c.id).where(_sessions.c.id == session_id)).fetchone()
        return found is not None

    def deactivate_user_sessions(self, user_id: int, except_session_id: str | None = None) -> int:
        """Deactivate every active session of a user, optionally sparing one. Returns rows changed."""
        condition = and_(_sessions.c.user_id == user_id, _sessions.c.is_active == 1)
        if except_session_id is not None:
            condition = and_(condition, _sessions.c.id != except_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(is_active=0))
            conn.commit()
        return result.rowcount

    def list_active_sessions(self, user_id: int, now: datetime) -> list[Session]:
        """Active, unexpired sessions, most recently used first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    and_(
                        _sessions.c.user_id == user_id,
                        _sessions.c.is_active == 1,
                        _sessions.c.expires_at > _to_db(now),
                    )
                )
                .order_by(_sessions.c.last_activity.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_sessions_created_since(self, user_id: int, since: datetime) -> list[Session]:
        """Sessions (any state) created at or after `since`, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(and_(_sessions.c.user_id == user_id, _sessions.c.created_at >= _to_db(since)))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def known_session_ips(self, user_id: int) -> set[str]:
        """Every source IP that has ever appeared on one of the user's sessions."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_sessions.c.ip_address)
                .where(and_(_sessions.c.user_id == user_id, _sessions.c.ip_address.is_not(None)))
                .distinct()
            ).fetchall()
        return {r.ip_address for r in rows}

    def deactivate_lapsed_sessions(self, now: datetime, idle_cutoff: datetime) -> int:
        """Deactivate active sessions past expires_at or idle since before idle_cutoff."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    and_(
                        _sessions.c.is_active == 1,
                        or_(
                            _sessions.c.expires_at <= _to_db(now),
                            _sessions.c.last_activity < _to_db(idle_cutoff),
                        ),
                    )
                )
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def count_sessions(self, now: datetime, user_id: int | None = None) -> dict[str, int]:
        """Return {"total", "active", "expired"} counts, optionally for one user."""
        scope = _sessions.c.user_id == user_id if user_id is not None else None
        live = and_(_sessions.c.is_active == 1, _sessions.c.expires_at > _to_db(now))

        def _count(condition):
            query = select(func.count()).select_from(_sessions)
            conditions = [c for c in (scope, condition) if c is not None]
            if conditions:
                query = query.where(and_(*conditions))
            return query

        with self.engine.connect() as conn:
            total = conn.execute(_count(None)).scalar() or 0
            active = conn.execute(_count(live)).scalar() or 0
        return {"total": total, "active": active, "expired": total - active}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Queries shared by several methods
# ---------------------------------------------------------------------------


def _role_name_query(name: str, organization_id: int | None):
    scope = _roles.c.organization_id.is_(None) if organization_id is None else _roles.c.organization_id == organization_id
    return select(_roles.c.id).where(and_(_roles.c.name == name, scope))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        organization_id=row.organization_id,
        department_id=row.department_id,
        is_active=bool(row.is_active),
        created_at=_from_db(row.created_at),
        last_login=_from_db(row.last_login),
    )


def _row_to_permission(row) -> Permission:
    return Permission(name=row.name, description=row.description or "", is_active=bool(row.is_active))


def _row_to_role(row, permissions: list[str]) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        organization_id=row.organization_id,
        description=row.description or "",
        is_active=bool(row.is_active),
        permissions=permissions,
    )


def _row_to_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        id=row.id,
        user_id=row.user_id,
        role_id=row.role_id,
        valid_from=_from_db(row.valid_from),
        valid_until=_from_db(row.valid_until),
        is_active=bool(row.is_active),
        granted_by=row.granted_by,
    )


def _row_to_override(row) -> PermissionOverride:
    return PermissionOverride(
        id=row.id,
        user_id=row.user_id,
        permission=row.permission_name,
        polarity=row.polarity,
        valid_from=_from_db(row.valid_from),
        valid_until=_from_db(row.valid_until),
        is_active=bool(row.is_active),
        granted_by=row.granted_by,
        notes=row.notes,
    )


def _row_to_session(row) -> Session:
    try:
        device_info = json.loads(row.device_info) if row.device_info else {}
    except ValueError:
        device_info = {}
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        previous_refresh_hash=row.previous_refresh_hash,
        device_info=device_info if isinstance(device_info, dict) else {},
        ip_address=row.ip_address,
        created_at=_from_db(row.created_at),
        last_activity=_from_db(row.last_activity),
        expires_at=_from_db(row.expires_at),
        is_active=bool(row.is_active),
        version=row.version,
    )
