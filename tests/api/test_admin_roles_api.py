"""
Tests for role management endpoints: roles, grants, assignments, overrides
and administrator hand-off.
"""

import logging

import pytest
from fastapi.testclient import TestClient

from adapters.grant_store import InMemoryGrantStore
from app import create_app
from config import DEFAULTS
from core.authz import Capability, Effect, Grant, LegacyRole, Reason, resolve


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store():
    """
    Server s1:
      - bob holds "managers" (position 20, MANAGE_ROLES)
      - alice holds "staff" (position 10)
      - carol is an administrator, root is a superuser, frank has no roles
    """
    store = InMemoryGrantStore()
    store.create_role("s1", "Managers", position=20, role_id="managers",
                      grants=[Grant(Capability.MANAGE_ROLES, Effect.ALLOW)])
    store.create_role("s1", "Staff", position=10, role_id="staff",
                      grants=[Grant(Capability.SEND_MESSAGES, Effect.ALLOW)])
    store.create_role("s1", "Seniors", position=30, role_id="seniors")
    store.create_role("s2", "Foreign", position=1, role_id="foreign")
    for member_id in ("alice", "bob", "carol", "erin", "frank"):
        store.add_member("s1", f"p-{member_id}", member_id=member_id)
    store.add_member("s1", "p-root", member_id="root", legacy_role=LegacyRole.ADMIN)
    store.assign_role("bob", "managers")
    store.assign_role("alice", "staff")
    store.assign_role("erin", "seniors")
    store.grant_admin("carol")
    return store


@pytest.fixture
def client(store):
    return TestClient(create_app(store=store, cfg=dict(DEFAULTS)))


def as_member(member_id):
    return {"X-Member-Id": member_id}


# ============================================================================
# Roles
# ============================================================================

class TestRoles:

    def test_any_member_lists_roles(self, client):
        response = client.get("/servers/s1/roles", headers=as_member("alice"))

        assert response.status_code == 200
        assert [r["id"] for r in response.json()] == ["seniors", "managers", "staff"]

    def test_list_role_templates(self, client):
        response = client.get("/servers/s1/role-templates", headers=as_member("alice"))

        assert response.status_code == 200
        assert [t["key"] for t in response.json()] == ["admin", "moderator", "member"]
        assert response.json()[0]["grants"][0]["capability"] == "ADMINISTRATOR"

    def test_create_role_with_default_grants(self, client):
        response = client.post("/servers/s1/roles", json={"name": "Newcomers"}, headers=as_member("bob"))

        assert response.status_code == 201
        body = response.json()
        assert body["position"] == 31
        assert {g["capability"] for g in body["grants"]} == {
            "VIEW_CHANNELS", "SEND_MESSAGES", "READ_MESSAGE_HISTORY", "CONNECT", "SPEAK", "ADD_REACTIONS",
        }
        assert all(g["effect"] == "ALLOW" and g["scope"] == "SERVER" for g in body["grants"])

    def test_create_role_from_template_with_override(self, client):
        response = client.post(
            "/servers/s1/roles",
            json={"name": "Helpers", "template": "moderator", "position": 5},
            headers=as_member("bob"),
        )

        body = response.json()
        assert body["position"] == 5
        assert body["hoist"] is True
        assert "KICK_MEMBERS" in {g["capability"] for g in body["grants"]}

    def test_new_role_in_empty_server_starts_at_zero(self, client, store):
        store.add_member("s3", "p-olga", member_id="olga")
        store.grant_admin("olga")

        response = client.post("/servers/s3/roles", json={"name": "First"}, headers=as_member("olga"))

        assert response.json()["position"] == 0

    def test_admin_template_needs_administrator(self, client, store):
        body = {"name": "Deputies", "template": "admin"}

        by_manager = client.post("/servers/s1/roles", json=body, headers=as_member("bob"))
        by_admin = client.post("/servers/s1/roles", json=body, headers=as_member("carol"))

        assert by_manager.status_code == 403
        assert by_manager.json()["detail"]["capability"] == "ADMINISTRATOR"
        assert [r.name for r in store.list_roles("s1")].count("Deputies") == 1
        assert by_admin.status_code == 201
        assert by_admin.json()["position"] == 100

    def test_unknown_template(self, client):
        response = client.post(
            "/servers/s1/roles", json={"name": "X", "template": "owner"}, headers=as_member("bob")
        )

        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "template"

    @pytest.mark.parametrize("body", [{"name": "  "}, {"name": "X", "position": -1}])
    def test_invalid_role_body(self, client, body):
        response = client.post("/servers/s1/roles", json=body, headers=as_member("bob"))

        assert response.status_code == 422

    def test_create_requires_manage_roles(self, client):
        response = client.post("/servers/s1/roles", json={"name": "X"}, headers=as_member("alice"))

        assert response.status_code == 403
        assert response.json()["detail"]["capability"] == "MANAGE_ROLES"

    def test_create_is_audited(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="api.admin.roles"):
            client.post("/servers/s1/roles", json={"name": "Audited"}, headers=as_member("bob"))

        entries = [r.audit for r in caplog.records if hasattr(r, "audit")]
        assert entries[-1]["action"] == "role_create"
        assert entries[-1]["performed_by"] == "bob"
        assert entries[-1]["metadata"] == {"template": "member"}

    def test_update_role(self, client):
        response = client.patch(
            "/servers/s1/roles/staff", json={"name": "Team", "position": 12}, headers=as_member("bob")
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Team"
        assert response.json()["position"] == 12

    def test_role_of_other_server_is_404(self, client):
        response = client.patch("/servers/s1/roles/foreign", json={"name": "Mine"}, headers=as_member("bob"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_delete_role_detaches_members(self, client, store):
        response = client.delete("/servers/s1/roles/staff", headers=as_member("bob"))

        assert response.status_code == 200
        assert response.json()["detached_members"] == ["alice"]
        assert response.json()["audit_id"]
        assert store.load_member("alice").roles == ()


# ============================================================================
# Role Grants
# ============================================================================

class TestRoleGrants:

    def test_upsert_replaces_existing_key(self, client, store):
        response = client.put(
            "/servers/s1/roles/staff/grants",
            json={"capability": "SEND_MESSAGES", "effect": "DENY"},
            headers=as_member("bob"),
        )

        assert response.status_code == 200
        assert response.json()["grant"]["effect"] == "DENY"
        grants = store.get_role("staff").grants
        assert len(grants) == 1
        assert resolve(store.load_member("alice"), Capability.SEND_MESSAGES).granted is False

    def test_channel_grant(self, client, store):
        response = client.put(
            "/servers/s1/roles/staff/grants",
            json={"capability": "ATTACH_FILES", "scope": "CHANNEL", "target_id": "media"},
            headers=as_member("bob"),
        )

        assert response.json()["grant"]["target_id"] == "media"
        assert len(store.get_role("staff").grants) == 2

    def test_target_with_server_scope_rejected(self, client):
        response = client.put(
            "/servers/s1/roles/staff/grants",
            json={"capability": "ATTACH_FILES", "target_id": "media"},
            headers=as_member("bob"),
        )

        assert response.status_code == 422

    def test_administrator_grant_needs_administrator(self, client):
        body = {"capability": "ADMINISTRATOR"}

        by_manager = client.put("/servers/s1/roles/staff/grants", json=body, headers=as_member("bob"))
        by_admin = client.put("/servers/s1/roles/staff/grants", json=body, headers=as_member("carol"))

        assert by_manager.status_code == 403
        assert by_manager.json()["detail"]["capability"] == "ADMINISTRATOR"
        assert by_admin.status_code == 200

    def test_remove_grant(self, client, store):
        response = client.delete(
            "/servers/s1/roles/staff/grants",
            params={"capability": "SEND_MESSAGES"},
            headers=as_member("bob"),
        )

        assert response.json()["removed"] is True
        assert store.get_role("staff").grants == ()

    def test_remove_missing_grant(self, client):
        response = client.delete(
            "/servers/s1/roles/staff/grants",
            params={"capability": "SPEAK", "scope": "CHANNEL", "target_id": "c1"},
            headers=as_member("bob"),
        )

        assert response.status_code == 200
        assert response.json()["removed"] is False


# ============================================================================
# Assignments
# ============================================================================

class TestAssignments:

    def test_assign_is_idempotent(self, client):
        first = client.put("/servers/s1/roles/staff/members/frank", headers=as_member("bob"))
        second = client.put("/servers/s1/roles/staff/members/frank", headers=as_member("bob"))

        assert first.json()["changed"] is True
        assert second.json()["changed"] is False

    def test_cannot_assign_to_senior_member(self, client):
        response = client.put("/servers/s1/roles/staff/members/erin", headers=as_member("bob"))

        assert response.status_code == 403
        assert response.json()["detail"]["rule"] == "POSITION"

    def test_cannot_assign_to_self(self, client):
        response = client.put("/servers/s1/roles/staff/members/bob", headers=as_member("bob"))

        assert response.status_code == 403
        assert response.json()["detail"]["rule"] == "SELF"

    def test_cross_server_role(self, client):
        response = client.put("/servers/s1/roles/foreign/members/alice", headers=as_member("bob"))

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "cross_server"

    def test_unknown_role_is_404(self, client):
        response = client.put("/servers/s1/roles/ghost/members/alice", headers=as_member("bob"))

        assert response.status_code == 404

    def test_unknown_member_is_404(self, client):
        response = client.put("/servers/s1/roles/staff/members/ghost", headers=as_member("bob"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "member_not_found"

    def test_detach(self, client, store):
        response = client.delete("/servers/s1/roles/staff/members/alice", headers=as_member("bob"))

        assert response.json()["changed"] is True
        assert store.load_member("alice").roles == ()


class TestAdministratorRoles:
    """Roles carrying ADMINISTRATOR move only through administrators."""

    @pytest.fixture
    def admin_role(self, store):
        return store.create_role("s1", "Admins", position=5, role_id="admins",
                                 grants=[Grant(Capability.ADMINISTRATOR, Effect.ALLOW)])

    def test_manager_cannot_assign(self, client, store, admin_role):
        response = client.put("/servers/s1/roles/admins/members/frank", headers=as_member("bob"))

        assert response.status_code == 403
        assert response.json()["detail"]["capability"] == "ADMINISTRATOR"
        assert resolve(store.load_member("frank"), Capability.BAN_MEMBERS).granted is False

    def test_admin_assigns(self, client, store, admin_role):
        response = client.put("/servers/s1/roles/admins/members/frank", headers=as_member("carol"))

        assert response.status_code == 200
        assert resolve(store.load_member("frank"), Capability.BAN_MEMBERS).reason == Reason.ADMINISTRATOR

    def test_manager_cannot_detach(self, client, store, admin_role):
        store.assign_role("frank", "admins")

        response = client.delete("/servers/s1/roles/admins/members/frank", headers=as_member("bob"))

        assert response.status_code == 403
        assert store.load_member("frank").role_ids == ("admins",)

    def test_manager_cannot_delete(self, client, store, admin_role):
        response = client.delete("/servers/s1/roles/admins", headers=as_member("bob"))

        assert response.status_code == 403
        assert response.json()["detail"]["capability"] == "ADMINISTRATOR"
        assert store.get_role("admins") is not None


# ============================================================================
# Overrides and Administrator
# ============================================================================

class TestOverrides:

    def test_override_beats_role(self, client, store):
        response = client.put(
            "/servers/s1/members/alice/overrides",
            json={"capability": "SEND_MESSAGES", "effect": "DENY"},
            headers=as_member("bob"),
        )

        assert response.status_code == 200
        result = resolve(store.load_member("alice"), Capability.SEND_MESSAGES)
        assert result.reason == Reason.USER_OVERRIDE
        assert result.source == response.json()["grant"]["id"]

    def test_override_on_senior_member_refused(self, client):
        response = client.put(
            "/servers/s1/members/erin/overrides",
            json={"capability": "SPEAK", "effect": "DENY"},
            headers=as_member("bob"),
        )

        assert response.status_code == 403

    def test_remove_override(self, client, store):
        store.upsert_override("alice", Grant(Capability.SPEAK, Effect.DENY))

        response = client.delete(
            "/servers/s1/members/alice/overrides",
            params={"capability": "SPEAK"},
            headers=as_member("bob"),
        )

        assert response.json()["removed"] is True
        assert store.load_member("alice").overrides == ()

    def test_administrator_override_needs_administrator(self, client):
        response = client.put(
            "/servers/s1/members/alice/overrides",
            json={"capability": "ADMINISTRATOR"},
            headers=as_member("bob"),
        )

        assert response.status_code == 403


class TestAdministratorHandOff:

    def test_admin_promotes_member(self, client, store):
        response = client.put("/servers/s1/members/alice/administrator", headers=as_member("carol"))

        assert response.status_code == 200
        assert resolve(store.load_member("alice"), Capability.BAN_MEMBERS).reason == Reason.ADMINISTRATOR

    def test_manager_cannot_promote(self, client):
        response = client.put("/servers/s1/members/alice/administrator", headers=as_member("bob"))

        assert response.status_code == 403

    def test_admins_cannot_demote_each_other(self, client):
        client.put("/servers/s1/members/alice/administrator", headers=as_member("carol"))

        response = client.delete("/servers/s1/members/alice/administrator", headers=as_member("carol"))

        assert response.status_code == 403
        assert response.json()["detail"]["rule"] == "ADMINISTRATOR_TARGET"

    def test_superuser_demotes_admin(self, client, store):
        response = client.delete("/servers/s1/members/carol/administrator", headers=as_member("root"))

        assert response.status_code == 200
        assert response.json()["removed"] is True
        assert resolve(store.load_member("carol"), Capability.BAN_MEMBERS).granted is False
