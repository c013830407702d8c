"""
cache/store.py -- In-process, epoch-stamped cache of effective permission sets.

Sits in front of PermissionResolver so a typical authorize() is a dictionary
lookup rather than four queries and a graph walk. Entries expire after a
configurable TTL (default 15 minutes) which bounds staleness for any
invalidation that is missed; the mutation paths in AuthorizationFacade
invalidate explicitly so common changes apply immediately. An entry never
outlives the next valid_from or valid_until on the principal's assignments
and overrides, so time-bounded grants open and close on schedule.

Usage:
    cache = PermissionCache(resolver)
    perms = cache.get_effective(42)        # list[str], resolves on a miss
    cache.invalidate(42)                   # after changing principal 42
    cache.invalidate_by_role(7)            # after changing role 7 or its edges
    cache.purge_expired()                  # call periodically to trim old entries

Concurrency:
  Reads are lock-free dict lookups. Writes and invalidations take one short
  lock and never hold it across a resolve, so resolving one principal never
  blocks readers of another.

  Every principal has a monotonic epoch, and there is one global generation
  bumped by invalidate_all(). A miss records both before resolving and only
  stores its result if neither moved. A resolve that raced an invalidation is
  returned to its caller but never cached, so a stale set cannot overwrite a
  fresher state.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.models import Resolution
from auth.resolver import PermissionResolver
from auth.tokens import utcnow
from core.deadline import Deadline

logger = logging.getLogger("warden.cache")

_DEFAULT_TTL = 15 * 60  # seconds
_DEFAULT_MAX_ENTRIES = 1000
_EVICT_FRACTION = 0.2


@dataclass
class CacheEntry:
    principal_id: int
    resolution: Resolution
    epoch: int
    cached_at: datetime
    expires_at: datetime
    last_accessed: datetime


class PermissionCache:
    def __init__(
        self,
        resolver: PermissionResolver,
        ttl: int = _DEFAULT_TTL,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        self._resolver = resolver
        self._clock = clock
        self._entries: dict[int, CacheEntry] = {}
        self._epochs: dict[int, int] = {}
        self._inflight: dict[int, int] = {}  # principal -> resolves in progress
        self._generation = 0
        self._lock = threading.Lock()
        # Counters are bumped outside the lock on the read path, so stats() is approximate.
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_effective(self, principal_id: int, deadline: Deadline | None = None) -> list[str]:
        """Sorted effective permissions for principal_id, resolving on a miss."""
        return list(self.get_resolution(principal_id, deadline=deadline).permissions)

    def get_resolution(self, principal_id: int, deadline: Deadline | None = None) -> Resolution:
        """Like get_effective() but also returns the role closure behind the set."""
        now = self._clock()
        entry = self._entries.get(principal_id)
        if entry is not None and entry.expires_at > now:
            entry.last_accessed = now
            self._hits += 1
            return entry.resolution

        self._misses += 1
        with self._lock:
            generation = self._generation
            epoch = self._epochs.get(principal_id, 0)
            self._inflight[principal_id] = self._inflight.get(principal_id, 0) + 1
        try:
            resolution = self._resolver.resolve_detail(principal_id, deadline=deadline, now=now)
        except Exception:
            with self._lock:
                self._release_locked(principal_id)
            raise

        expires_at = now + timedelta(seconds=self.ttl)
        if resolution.next_boundary is not None and resolution.next_boundary < expires_at:
            # An assignment or override window opens or closes before the TTL does.
            expires_at = resolution.next_boundary

        with self._lock:
            self._release_locked(principal_id)
            if self._generation != generation or self._epochs.get(principal_id, 0) != epoch:
                logger.debug("Discarding stale resolution for principal %s", principal_id)
                return resolution
            if principal_id not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_locked()
            self._entries[principal_id] = CacheEntry(
                principal_id=principal_id,
                resolution=resolution,
                epoch=epoch,
                cached_at=now,
                expires_at=expires_at,
                last_accessed=now,
            )
        return resolution

    # ------------------------------------------------------------------
    # Invalidation -- synchronous; applied by the time the call returns
    # ------------------------------------------------------------------

    def invalidate(self, principal_id: int) -> None:
        with self._lock:
            self._bump_locked(principal_id)

    def invalidate_many(self, principal_ids) -> int:
        ids = set(principal_ids)
        with self._lock:
            for principal_id in ids:
                self._bump_locked(principal_id)
        return len(ids)

    def invalidate_by_role(self, role_id: int) -> int:
        """Invalidate every principal holding role_id, directly or through the hierarchy.

        Unions the holders the store reports (including holders of descendant
        roles) with cached entries whose role closure contains role_id, so a
        principal whose assignment was just removed is still caught.
        Returns the number of principals invalidated.
        """
        holders = self._resolver.principals_affected_by_role(role_id)
        with self._lock:
            cached = {pid for pid, entry in self._entries.items() if role_id in entry.resolution.role_ids}
            affected = holders | cached
            for principal_id in affected:
                self._bump_locked(principal_id)
        logger.info("Invalidated %d cached principal(s) for role %s", len(affected), role_id)
        return len(affected)

    def invalidate_all(self) -> None:
        with self._lock:
            self._generation += 1
            self._invalidations += len(self._entries)
            self._entries.clear()

    def purge_expired(self) -> int:
        """Delete all entries past their TTL. Returns number of entries removed."""
        now = self._clock()
        with self._lock:
            expired = [pid for pid, entry in self._entries.items() if entry.expires_at <= now]
            for principal_id in expired:
                del self._entries[principal_id]
            self._trim_epochs_locked()
        return len(expired)

    def stats(self) -> dict:
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            "evictions": self._evictions,
            "invalidations": self._invalidations,
        }

    def epoch(self, principal_id: int) -> int:
        return self._epochs.get(principal_id, 0)

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _bump_locked(self, principal_id: int) -> None:
        self._epochs[principal_id] = self._epochs.get(principal_id, 0) + 1
        self._entries.pop(principal_id, None)
        self._invalidations += 1

    def _release_locked(self, principal_id: int) -> None:
        remaining = self._inflight[principal_id] - 1
        if remaining:
            self._inflight[principal_id] = remaining
        else:
            del self._inflight[principal_id]

    def _trim_epochs_locked(self) -> None:
        """Forget epochs no in-flight resolve is holding.

        An epoch only matters to a resolve that read it before resolving. After
        a purge or an eviction the map holds only principals being resolved.
        """
        for principal_id in [p for p in self._epochs if p not in self._inflight]:
            del self._epochs[principal_id]

    def _evict_locked(self) -> None:
        """Drop the least recently accessed 20% of entries (at least one)."""
        count = max(1, int(len(self._entries) * _EVICT_FRACTION))
        oldest = sorted(self._entries.values(), key=lambda e: e.last_accessed)[:count]
        for entry in oldest:
            del self._entries[entry.principal_id]
        self._trim_epochs_locked()
        self._evictions += len(oldest)
        logger.debug("Evicted %d permission cache entries", len(oldest))
