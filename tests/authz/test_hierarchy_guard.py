"""
Tests for the moderation hierarchy guard.
"""

import pytest

from core.authz import (
    Capability,
    Effect,
    Grant,
    LegacyRole,
    ManageRule,
    Member,
    ModerationAction,
    Role,
    can_manage,
    explain_can_manage,
)


SERVER_ID = "server-1"


def role(role_id, position, *capabilities, effect=Effect.ALLOW):
    return Role(
        id=role_id,
        server_id=SERVER_ID,
        name=role_id,
        position=position,
        grants=tuple(Grant(capability=c, effect=effect) for c in capabilities),
    )


def member(member_id, roles=(), legacy_role=LegacyRole.GUEST, overrides=(), server_id=SERVER_ID):
    return Member(
        id=member_id,
        server_id=server_id,
        profile_id=f"p-{member_id}",
        legacy_role=legacy_role,
        roles=tuple(roles),
        overrides=tuple(overrides),
    )


ADMIN_ROLE = role("admins", 1, Capability.ADMINISTRATOR)
MOD_ROLE = role("mods", 5, Capability.KICK_MEMBERS, Capability.BAN_MEMBERS,
                Capability.TIMEOUT_MEMBERS, Capability.MANAGE_ROLES)


class TestSelfManagement:

    @pytest.mark.parametrize("actor", [
        member("m1"),
        member("m1", roles=[MOD_ROLE]),
        member("m1", roles=[ADMIN_ROLE]),
        member("m1", legacy_role=LegacyRole.ADMIN),
    ])
    @pytest.mark.parametrize("action", list(ModerationAction))
    def test_nobody_manages_themselves(self, actor, action):
        allowed, rule = explain_can_manage(actor, actor, action)

        assert allowed is False
        assert rule == ManageRule.SELF


class TestSuperuser:

    def test_superuser_manages_anyone_else(self):
        actor = member("su", legacy_role=LegacyRole.ADMIN)

        assert can_manage(actor, member("t", roles=[ADMIN_ROLE]), ModerationAction.BAN) is True
        assert can_manage(actor, member("t2", roles=[role("top", 999)]), ModerationAction.KICK) is True

    def test_superusers_cannot_manage_each_other(self):
        a = member("su1", legacy_role=LegacyRole.ADMIN)
        b = member("su2", legacy_role=LegacyRole.ADMIN)

        assert explain_can_manage(a, b, ModerationAction.KICK) == (False, ManageRule.SUPERUSER_TARGET)
        assert explain_can_manage(b, a, ModerationAction.KICK) == (False, ManageRule.SUPERUSER_TARGET)


class TestAdministrator:

    def test_administrator_manages_regular_member_regardless_of_position(self):
        actor = member("a", roles=[ADMIN_ROLE])
        target = member("t", roles=[role("senior", 50)])

        assert explain_can_manage(actor, target, ModerationAction.TIMEOUT) == (True, ManageRule.ADMINISTRATOR)

    def test_administrators_cannot_manage_each_other(self):
        a = member("a1", roles=[ADMIN_ROLE])
        b = member("a2", overrides=[Grant(Capability.ADMINISTRATOR, Effect.ALLOW)])

        for action in ModerationAction:
            assert can_manage(a, b, action) is False
            assert can_manage(b, a, action) is False

    def test_administrator_cannot_manage_superuser(self):
        actor = member("a", roles=[ADMIN_ROLE])
        target = member("su", legacy_role=LegacyRole.ADMIN)

        assert explain_can_manage(actor, target, ModerationAction.BAN) == (
            False, ManageRule.ADMINISTRATOR_TARGET
        )


class TestPositionRule:

    def test_equal_positions_are_refused(self):
        actor = member("a", roles=[role("kickers", 5, Capability.KICK_MEMBERS)])
        target = member("t", roles=[role("peers", 5)])

        assert explain_can_manage(actor, target, ModerationAction.KICK) == (False, ManageRule.POSITION)

    def test_higher_position_with_capability_is_allowed(self):
        actor = member("a", roles=[MOD_ROLE])
        target = member("t", roles=[role("members", 1)])

        assert explain_can_manage(actor, target, ModerationAction.KICK) == (True, ManageRule.HIERARCHY)

    def test_member_without_roles_ranks_zero(self):
        actor = member("a", roles=[role("kickers", 1, Capability.KICK_MEMBERS)])

        assert can_manage(actor, member("t"), ModerationAction.KICK) is True

    def test_capability_required_even_when_senior(self):
        actor = member("a", roles=[role("senior", 50, Capability.KICK_MEMBERS)])
        target = member("t", roles=[role("junior", 1)])

        assert explain_can_manage(actor, target, ModerationAction.BAN) == (
            False, ManageRule.MISSING_CAPABILITY
        )

    @pytest.mark.parametrize("action,capability", [
        (ModerationAction.KICK, Capability.KICK_MEMBERS),
        (ModerationAction.BAN, Capability.BAN_MEMBERS),
        (ModerationAction.TIMEOUT, Capability.TIMEOUT_MEMBERS),
        (ModerationAction.MANAGE_ROLES, Capability.MANAGE_ROLES),
    ])
    def test_action_maps_to_capability(self, action, capability):
        actor = member("a", roles=[role("r", 10, capability)])
        target = member("t")

        assert can_manage(actor, target, action) is True
        for other in ModerationAction:
            if other != action:
                assert can_manage(actor, target, other) is False

    def test_denied_capability_blocks_moderation(self):
        actor = member("a", roles=[MOD_ROLE, role("probation", 2, Capability.KICK_MEMBERS, effect=Effect.DENY)])

        assert can_manage(actor, member("t"), ModerationAction.KICK) is False

    def test_legacy_moderator_tag_confers_nothing(self):
        actor = member("a", legacy_role=LegacyRole.MODERATOR)

        assert can_manage(actor, member("t"), ModerationAction.KICK) is False


class TestCrossServer:

    def test_members_of_different_servers(self):
        actor = member("su", legacy_role=LegacyRole.ADMIN)
        target = member("t", server_id="server-2")

        assert explain_can_manage(actor, target, ModerationAction.KICK) == (False, ManageRule.CROSS_SERVER)
