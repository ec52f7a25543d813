"""
Tests for the effective-set cache and its invalidation hooks.
"""

import time

import pytest

from adapters.grant_store import InMemoryGrantStore
from core.authz import (
    ALL_CAPABILITIES,
    Capability,
    Effect,
    EffectiveCapabilityCache,
    Grant,
    LegacyRole,
    Scope,
)
from core.metrics import get_counter, reset_metrics


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def store():
    return InMemoryGrantStore()


@pytest.fixture
def cache(store):
    cache = EffectiveCapabilityCache(ttl_seconds=60, cleanup_interval=30)
    store.add_listener(cache.on_grant_change)
    return cache


@pytest.fixture
def seeded(store):
    """Server with one role holding SPEAK and a member holding that role."""
    role = store.create_role("s1", "Talkers", position=5, role_id="talkers",
                             grants=[Grant(Capability.SPEAK, Effect.ALLOW)])
    store.add_member("s1", "p1", member_id="m1")
    store.assign_role("m1", role.id)
    return store


class TestCacheBasics:

    def test_miss_then_hit(self, cache, seeded):
        member = seeded.load_member("m1")

        assert cache.get("m1") is None
        first = cache.get_or_compute(member)
        second = cache.get_or_compute(member)

        assert first == {Capability.SPEAK}
        assert second is first
        assert get_counter("authz.cache.hit") >= 1
        assert get_counter("authz.cache.set") == 1

    def test_keys_are_per_scope_and_target(self, cache, seeded):
        member = seeded.load_member("m1")

        cache.get_or_compute(member)
        cache.get_or_compute(member, Scope.CHANNEL, "c1")

        assert cache.get_stats()["entries"] == 2
        assert cache.get("m1", Scope.CHANNEL, "c2") is None

    def test_entries_expire(self, seeded):
        cache = EffectiveCapabilityCache(ttl_seconds=0.01, cleanup_interval=0.01)
        member = seeded.load_member("m1")

        cache.get_or_compute(member)
        time.sleep(0.05)

        assert cache.get("m1") is None


class TestInvalidationHooks:
    """Every write that can change a member's set drops its entries."""

    def test_role_grant_change_invalidates_holders(self, cache, seeded):
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.upsert_role_grant("talkers", Grant(Capability.SPEAK, Effect.DENY))

        assert cache.get("m1") is None
        assert cache.get_or_compute(seeded.load_member("m1")) == frozenset()

    def test_assignment_change_invalidates_member(self, cache, seeded):
        seeded.create_role("s1", "Mods", position=9, role_id="mods",
                           grants=[Grant(Capability.KICK_MEMBERS, Effect.ALLOW)])
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.assign_role("m1", "mods")

        assert cache.get("m1") is None
        assert Capability.KICK_MEMBERS in cache.get_or_compute(seeded.load_member("m1"))

    def test_override_change_invalidates_member(self, cache, seeded):
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.upsert_override("m1", Grant(Capability.ADMINISTRATOR, Effect.ALLOW))

        assert cache.get("m1") is None
        assert cache.get_or_compute(seeded.load_member("m1")) == ALL_CAPABILITIES

    def test_legacy_tag_change_invalidates_member(self, cache, seeded):
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.set_legacy_role("m1", LegacyRole.ADMIN)

        assert cache.get("m1") is None

    def test_role_deletion_invalidates_holders(self, cache, seeded):
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.delete_role("talkers")

        assert cache.get("m1") is None
        assert cache.get_or_compute(seeded.load_member("m1")) == frozenset()

    def test_unrelated_member_entry_survives(self, cache, seeded):
        seeded.add_member("s1", "p2", member_id="m2")
        cache.get_or_compute(seeded.load_member("m1"))
        cache.get_or_compute(seeded.load_member("m2"))

        seeded.upsert_override("m2", Grant(Capability.SPEAK, Effect.ALLOW))

        assert cache.get("m1") == {Capability.SPEAK}
        assert cache.get("m2") is None

    def test_server_deletion_invalidates_everything_in_it(self, cache, seeded):
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.delete_server("s1")

        assert cache.get_stats()["entries"] == 0

    def test_invalidation_is_counted(self, cache, seeded):
        cache.get_or_compute(seeded.load_member("m1"))

        seeded.upsert_override("m1", Grant(Capability.CONNECT, Effect.ALLOW))

        assert get_counter("authz.cache.invalidated", labels={"trigger": "store"}) == 1


class TestStaleSnapshots:
    """A snapshot loaded before a write never repopulates the cache."""

    def test_snapshot_older_than_write_is_not_cached(self, cache, seeded):
        snapshot = seeded.load_member("m1")
        seeded.remove_role("m1", "talkers")

        assert cache.get_or_compute(snapshot) == {Capability.SPEAK}
        assert cache.get("m1") is None
        assert cache.get_or_compute(seeded.load_member("m1")) == frozenset()
        assert get_counter("authz.cache.stale") == 1

    def test_role_write_blocks_holder_snapshot(self, cache, seeded):
        snapshot = seeded.load_member("m1")
        seeded.upsert_role_grant("talkers", Grant(Capability.SPEAK, Effect.DENY))

        assert cache.set(snapshot, Scope.SERVER, None, frozenset({Capability.SPEAK})) is False
        assert cache.get_or_compute(seeded.load_member("m1")) == frozenset()

    def test_write_to_other_member_does_not_block(self, cache, seeded):
        seeded.add_member("s1", "p2", member_id="m2")
        snapshot = seeded.load_member("m1")
        seeded.upsert_override("m2", Grant(Capability.SPEAK, Effect.DENY))

        cache.get_or_compute(snapshot)

        assert cache.get("m1") == {Capability.SPEAK}
