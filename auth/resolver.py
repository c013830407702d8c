"""
auth/resolver.py -- Effective permission computation over roles, hierarchy, and overrides.

The effective set for a principal at time `now` is:

    permissions of every active, time-valid role assignment
      + permissions of every ancestor of those roles (child inherits parent)
      - active, time-valid "revoke" overrides
      + active, time-valid "grant" overrides whose definition is active

Walk rules:
  - One snapshot of all hierarchy edges is taken per resolve; the walk never
    re-reads the store mid-way.
  - Explicit stack, on-path set, done set. No recursion, so a deep or hostile
    hierarchy cannot blow the interpreter stack.
  - Reaching a role already on the current path is a cycle. Cycles are data
    corruption and raise DataIntegrityError; they are never truncated quietly.
    Diamonds (two paths to one ancestor) are fine.
  - An inactive role contributes nothing and is not walked through.

Edge writes go through add_edge()/remove_edge(), which serialise
check-then-insert under a process-level lock so two concurrent additions
cannot jointly close a cycle.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from auth.errors import CycleError, DataIntegrityError, HierarchyTooDeep
from auth.models import GRANT, REVOKE, Resolution, Role, RoleHierarchyEdge
from auth.store import CredentialStore
from auth.tokens import utcnow
from core.deadline import Deadline

logger = logging.getLogger("warden.auth")

# Serialises hierarchy edge writes across every resolver in the process.
_EDGE_LOCK = threading.Lock()


def _index_edges(edges: Iterable[RoleHierarchyEdge]) -> tuple[dict[int, list[int]], dict[int, list[int]]]:
    """Return (parents_of, children_of) adjacency maps with sorted neighbours."""
    parents_of: dict[int, list[int]] = {}
    children_of: dict[int, list[int]] = {}
    for edge in edges:
        parents_of.setdefault(edge.child_id, []).append(edge.parent_id)
        children_of.setdefault(edge.parent_id, []).append(edge.child_id)
    for adjacency in (parents_of, children_of):
        for neighbours in adjacency.values():
            neighbours.sort()
    return parents_of, children_of


def _reachable(start: int, adjacency: dict[int, list[int]]) -> set[int]:
    """Every node reachable from start (start excluded) following adjacency."""
    seen: set[int] = set()
    stack = list(adjacency.get(start, ()))
    while stack:
        node = stack.pop()
        if node in seen:
            continue
        seen.add(node)
        stack.extend(adjacency.get(node, ()))
    return seen


def _longest_chain(start: int, adjacency: dict[int, list[int]]) -> int:
    """Roles on the longest path leaving start, start included.

    Expects an acyclic graph; a stored cycle is reported by resolve() instead.
    """
    depth: dict[int, int] = {}
    stack = [(start, False)]
    while stack:
        node, expanded = stack.pop()
        if node in depth:
            continue
        if expanded:
            depth[node] = 1 + max((depth.get(n, 0) for n in adjacency.get(node, ())), default=0)
            continue
        stack.append((node, True))
        stack.extend((n, False) for n in adjacency.get(node, ()) if n not in depth)
    return depth[start]


class PermissionResolver:
    """Computes a principal's effective permission set from the credential store.

    Stateless apart from its collaborators; safe to share between threads.
    """

    def __init__(
        self,
        store: CredentialStore,
        clock: Callable[[], datetime] = utcnow,
        max_depth: int = 32,
    ) -> None:
        self._store = store
        self._clock = clock
        self._max_depth = max_depth

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, principal_id: int, deadline: Deadline | None = None) -> list[str]:
        """Sorted effective permissions. Raises DataIntegrityError / Timeout, never returns None."""
        return list(self.resolve_detail(principal_id, deadline=deadline).permissions)

    def resolve_detail(
        self,
        principal_id: int,
        deadline: Deadline | None = None,
        now: datetime | None = None,
    ) -> Resolution:
        now = now or self._clock()
        store = self._store

        user = store.get_user(principal_id, deadline=deadline)
        if user is None:
            logger.error("Permission resolve for unknown principal %s", principal_id)
            raise DataIntegrityError()
        if not user.is_active:
            return Resolution(principal_id=principal_id, permissions=(), role_ids=(), role_names=())

        assignments = store.list_valid_role_assignments(principal_id, now, deadline=deadline)
        edges = store.list_hierarchy_edges(deadline=deadline)
        parents_of, _ = _index_edges(edges)

        wanted = {a.role_id for a in assignments}
        for edge in edges:
            wanted.add(edge.parent_id)
            wanted.add(edge.child_id)
        roles = store.get_roles(wanted, deadline=deadline)

        closure: set[int] = set()
        done: set[int] = set()
        for role_id in sorted({a.role_id for a in assignments}):
            role = roles.get(role_id)
            if role is None:
                logger.error("Principal %s is assigned missing role %s", principal_id, role_id)
                raise DataIntegrityError()
            if not role.is_active:
                continue
            self._walk_ancestors(role_id, parents_of, roles, closure, done)

        permissions: set[str] = set()
        for role_id in closure:
            permissions.update(roles[role_id].permissions)

        overrides = store.list_valid_overrides(principal_id, now, deadline=deadline)
        revoked = {o.permission for o in overrides if o.polarity == REVOKE}
        granted = {o.permission for o in overrides if o.polarity == GRANT}
        permissions -= revoked
        permissions |= store.active_permission_names(granted, deadline=deadline)
        next_boundary = store.next_validity_boundary(principal_id, now, deadline=deadline)

        return Resolution(
            principal_id=principal_id,
            permissions=tuple(sorted(permissions)),
            role_ids=tuple(sorted(closure)),
            role_names=tuple(sorted({roles[r].name for r in closure})),
            next_boundary=next_boundary,
        )

    def _walk_ancestors(
        self,
        root: int,
        parents_of: dict[int, list[int]],
        roles: dict[int, Role],
        closure: set[int],
        done: set[int],
    ) -> None:
        """Depth-first ancestor walk from root, adding active roles to closure.

        done is shared across roots so a diamond or a second assignment never
        re-walks an already expanded subtree.
        """
        if root in done:
            return
        closure.add(root)
        on_path = {root}
        path = [(root, iter(parents_of.get(root, ())))]
        while path:
            node, pending = path[-1]
            descended = False
            for parent in pending:
                if parent in on_path:
                    logger.error("Role hierarchy cycle through roles %s and %s", node, parent)
                    raise DataIntegrityError()
                if parent in done:
                    continue
                role = roles.get(parent)
                if role is None:
                    logger.error("Role hierarchy edge %s -> %s references a missing role", parent, node)
                    raise DataIntegrityError()
                if not role.is_active:
                    done.add(parent)
                    continue
                if len(path) >= self._max_depth:
                    logger.error("Role hierarchy deeper than %d below role %s", self._max_depth, root)
                    raise DataIntegrityError()
                closure.add(parent)
                on_path.add(parent)
                path.append((parent, iter(parents_of.get(parent, ()))))
                descended = True
                break
            if not descended:
                path.pop()
                on_path.discard(node)
                done.add(node)

    # ------------------------------------------------------------------
    # Hierarchy maintenance
    # ------------------------------------------------------------------

    def add_edge(self, parent_id: int, child_id: int, created_by: int | None = None) -> bool:
        """Make child inherit parent. Returns False if the edge already exists.

        Raises DataIntegrityError if either role is missing, CycleError if the
        edge would close a cycle, HierarchyTooDeep if it would build a chain of
        more than max_depth roles. On either rejection the hierarchy is unchanged.
        """
        with _EDGE_LOCK:
            found = self._store.get_roles([parent_id, child_id])
            if parent_id not in found or child_id not in found:
                raise DataIntegrityError("Both roles must exist.")
            if parent_id == child_id:
                raise CycleError()
            edges = self._store.list_hierarchy_edges()
            if RoleHierarchyEdge(parent_id=parent_id, child_id=child_id) in set(edges):
                return False
            parents_of, children_of = _index_edges(edges)
            if parent_id in _reachable(child_id, children_of):
                raise CycleError()
            if _longest_chain(parent_id, parents_of) + _longest_chain(child_id, children_of) > self._max_depth:
                raise HierarchyTooDeep()
            self._store.insert_hierarchy_edge(parent_id, child_id, created_by=created_by)
        logger.info("Role %s now inherits from role %s", child_id, parent_id)
        return True

    def remove_edge(self, parent_id: int, child_id: int) -> bool:
        """Drop an edge. Returns False if it did not exist."""
        with _EDGE_LOCK:
            removed = self._store.delete_hierarchy_edge(parent_id, child_id)
        if removed:
            logger.info("Role %s no longer inherits from role %s", child_id, parent_id)
        return removed

    def descendants(self, role_id: int) -> set[int]:
        """Roles that inherit from role_id, directly or transitively."""
        _, children_of = _index_edges(self._store.list_hierarchy_edges())
        return _reachable(role_id, children_of)

    def principals_affected_by_role(self, role_id: int, now: datetime | None = None) -> set[int]:
        """Principals holding role_id or any role that inherits from it."""
        roles = self.descendants(role_id) | {role_id}
        return self._store.user_ids_with_roles(roles, now or self._clock())
