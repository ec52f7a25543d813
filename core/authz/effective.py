"""
Effective capability sets and their cache.

The effective set of a member in a scope is every catalog capability the
resolver grants there. Superusers and server administrators hold the whole
catalog. Computing a set costs one resolution per catalog entry, so callers
can hold an EffectiveCapabilityCache keyed by (member, scope, target) and
invalidated synchronously whenever the member, one of its roles or its
server changes.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from core.metrics import increment_counter, observe_histogram

from .capabilities import ALL_CAPABILITIES, Capability, Scope
from .models import Member
from .resolve import holds_administrator, resolve

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str, str]


# ============================================================================
# Calculator
# ============================================================================

def effective_capabilities(
    member: Member,
    scope: Scope = Scope.SERVER,
    target_id: Optional[str] = None,
) -> FrozenSet[Capability]:
    """
    Compute every capability the member holds in a scope.

    Args:
        member: Fully loaded member snapshot
        scope: Scope to evaluate (defaults to SERVER)
        target_id: Category or channel id when scope is not SERVER

    Returns:
        Frozen set of granted capabilities
    """
    if member.is_superuser or holds_administrator(member):
        return ALL_CAPABILITIES

    return frozenset(
        capability
        for capability in Capability
        if resolve(member, capability, scope, target_id).granted
    )


# ============================================================================
# Cache
# ============================================================================

@dataclass
class CacheEntry:
    """Single cached effective set with TTL and invalidation tags."""
    key: CacheKey
    value: FrozenSet[Capability]
    created_at: float
    ttl_seconds: float
    tags: Set[str] = field(default_factory=set)

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = now or time.time()
        return (now - self.created_at) >= self.ttl_seconds


def member_tag(member_id: str) -> str:
    return f"member:{member_id}"


def role_tag(role_id: str) -> str:
    return f"role:{role_id}"


def server_tag(server_id: str) -> str:
    return f"server:{server_id}"


class EffectiveCapabilityCache:
    """
    Short-lived cache of effective capability sets.

    Features:
    - TTL-based expiration
    - (member, scope, target) keying
    - Tag-based invalidation by member, role or server
    - Thread-safe operations
    """

    def __init__(self, ttl_seconds: float = 60.0, cleanup_interval: float = 30.0):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of an entry (seconds)
            cleanup_interval: How often expired entries are swept (seconds)
        """
        self.ttl_seconds = ttl_seconds
        self.cleanup_interval = cleanup_interval

        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._tag_to_keys: Dict[str, Set[CacheKey]] = defaultdict(set)
        # Latest store revision that invalidated each tag
        self._tag_revisions: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._last_cleanup = time.time()

    @staticmethod
    def make_key(member_id: str, scope: Scope, target_id: Optional[str]) -> CacheKey:
        return (member_id, scope.value, target_id or "")

    def _drop(self, key: CacheKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_to_keys.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_to_keys[tag]

    def _cleanup_expired(self, force: bool = False) -> None:
        now = time.time()
        if not force and (now - self._last_cleanup) < self.cleanup_interval:
            return

        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._drop(key)
            self._last_cleanup = now

            if expired:
                increment_counter("authz.cache.expired", value=len(expired))

    def get(
        self,
        member_id: str,
        scope: Scope = Scope.SERVER,
        target_id: Optional[str] = None,
    ) -> Optional[FrozenSet[Capability]]:
        """
        Get a cached effective set.

        Returns:
            The cached set, or None on miss or expiry
        """
        key = self.make_key(member_id, scope, target_id)

        with self._lock:
            self._cleanup_expired()

            entry = self._entries.get(key)
            if entry is None:
                increment_counter("authz.cache.miss")
                return None

            if entry.is_expired():
                self._drop(key)
                increment_counter("authz.cache.miss", labels={"reason": "expired"})
                return None

            increment_counter("authz.cache.hit")
            return entry.value

    def set(
        self,
        member: Member,
        scope: Scope,
        target_id: Optional[str],
        value: FrozenSet[Capability],
    ) -> bool:
        """
        Cache an effective set, tagged by the member, its roles and its server.

        A set computed from a snapshot older than the last write touching any
        of those tags is not stored.

        Returns:
            True if the entry was stored
        """
        key = self.make_key(member.id, scope, target_id)
        tags = {member_tag(member.id), server_tag(member.server_id)}
        tags.update(role_tag(role_id) for role_id in member.role_ids)

        with self._lock:
            if any(self._tag_revisions.get(tag, 0) > member.revision for tag in tags):
                increment_counter("authz.cache.stale")
                logger.debug(f"Skipped caching stale snapshot of member {member.id} (revision {member.revision})")
                return False

            self._drop(key)
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=time.time(),
                ttl_seconds=self.ttl_seconds,
                tags=tags,
            )
            for tag in tags:
                self._tag_to_keys[tag].add(key)

            increment_counter("authz.cache.set")
            return True

    def get_or_compute(
        self,
        member: Member,
        scope: Scope = Scope.SERVER,
        target_id: Optional[str] = None,
    ) -> FrozenSet[Capability]:
        """Return the cached set, computing and storing it on miss."""
        cached = self.get(member.id, scope, target_id)
        if cached is not None:
            return cached

        start = time.time()
        value = effective_capabilities(member, scope, target_id)
        observe_histogram("authz.effective.compute_ms", (time.time() - start) * 1000)

        self.set(member, scope, target_id, value)
        return value

    def invalidate_tags(
        self,
        tags: Iterable[str],
        trigger: str = "write",
        revision: Optional[int] = None,
    ) -> int:
        """
        Drop every entry carrying any of the tags.

        With a store revision, snapshots loaded before it are also kept out
        of the cache for those tags.

        Returns:
            Number of entries dropped
        """
        with self._lock:
            keys: Set[CacheKey] = set()
            for tag in tags:
                keys.update(self._tag_to_keys.get(tag, ()))
                if revision is not None and revision > self._tag_revisions.get(tag, 0):
                    self._tag_revisions[tag] = revision
            for key in keys:
                self._drop(key)

        if keys:
            increment_counter("authz.cache.invalidated", value=len(keys), labels={"trigger": trigger})
            logger.debug(f"Invalidated {len(keys)} effective-set entries ({trigger})")
        return len(keys)

    def on_grant_change(
        self,
        member_ids: Iterable[str] = (),
        role_ids: Iterable[str] = (),
        server_ids: Iterable[str] = (),
        revision: Optional[int] = None,
    ) -> None:
        """
        Invalidation hook for grant stores.

        Register with a store so that every write touching a member, a role
        or a whole server drops the affected entries before the write returns.
        """
        tags = [member_tag(m) for m in member_ids]
        tags += [role_tag(r) for r in role_ids]
        tags += [server_tag(s) for s in server_ids]
        if tags:
            self.invalidate_tags(tags, trigger="store", revision=revision)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dictionary with entry count, TTL and tag count
        """
        with self._lock:
            return {
                "entries": len(self._entries),
                "ttl": self.ttl_seconds,
                "tags_tracked": len(self._tag_to_keys),
                "last_cleanup": self._last_cleanup,
            }
