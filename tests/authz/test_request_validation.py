"""
Tests for boundary parsing of capability, scope, effect and target input.
"""

import pytest

from core.authz import (
    Capability,
    CheckRequest,
    Effect,
    InvalidPermissionRequest,
    LegacyRole,
    ModerationAction,
    Scope,
    parse_action,
    parse_capability,
    parse_check_request,
    parse_effect,
    parse_grant,
    parse_legacy_role,
    parse_scope,
    parse_target,
)


class TestParsers:

    def test_parse_capability(self):
        assert parse_capability("KICK_MEMBERS") is Capability.KICK_MEMBERS
        assert parse_capability(Capability.SPEAK) is Capability.SPEAK

    @pytest.mark.parametrize("name", ["kick_members", "FLY", "", None])
    def test_unknown_capability_rejected(self, name):
        with pytest.raises(InvalidPermissionRequest) as exc_info:
            parse_capability(name)

        assert exc_info.value.field == "capability"

    def test_scope_defaults_to_server(self):
        assert parse_scope(None) is Scope.SERVER
        assert parse_scope("CHANNEL") is Scope.CHANNEL

    def test_unknown_scope_rejected(self):
        with pytest.raises(InvalidPermissionRequest) as exc_info:
            parse_scope("GUILD")

        assert exc_info.value.field == "scope"

    def test_parse_effect(self):
        assert parse_effect("DENY") is Effect.DENY
        with pytest.raises(InvalidPermissionRequest):
            parse_effect("MAYBE")
        with pytest.raises(InvalidPermissionRequest):
            parse_effect(None)

    def test_parse_action(self):
        assert parse_action("BAN") is ModerationAction.BAN
        with pytest.raises(InvalidPermissionRequest) as exc_info:
            parse_action("MUTE")
        assert exc_info.value.field == "action"

    def test_parse_legacy_role(self):
        assert parse_legacy_role("ADMIN") is LegacyRole.ADMIN
        with pytest.raises(InvalidPermissionRequest):
            parse_legacy_role("OWNER")

    def test_invalid_request_is_value_error(self):
        with pytest.raises(ValueError):
            parse_capability("NOPE")


class TestTargets:

    @pytest.mark.parametrize("scope,raw,expected", [
        (Scope.SERVER, None, None),
        (Scope.SERVER, "", None),
        (Scope.CHANNEL, "c1", "c1"),
        (Scope.CHANNEL, "", None),
        (Scope.CATEGORY, None, None),
    ])
    def test_target_normalization(self, scope, raw, expected):
        assert parse_target(scope, raw) == expected

    def test_target_with_server_scope_rejected(self):
        with pytest.raises(InvalidPermissionRequest) as exc_info:
            parse_target(Scope.SERVER, "c1")

        assert exc_info.value.field == "target_id"


class TestCompositeParsers:

    def test_parse_check_request(self):
        request = parse_check_request("SEND_MESSAGES", "CHANNEL", "c1")

        assert request == CheckRequest(Capability.SEND_MESSAGES, Scope.CHANNEL, "c1")

    def test_parse_check_request_defaults(self):
        assert parse_check_request("SPEAK") == CheckRequest(Capability.SPEAK)

    def test_parse_grant(self):
        grant = parse_grant("ATTACH_FILES", "DENY", "CATEGORY", "cat-1", grant_id="g1")

        assert grant.capability is Capability.ATTACH_FILES
        assert grant.effect is Effect.DENY
        assert grant.scope is Scope.CATEGORY
        assert grant.target_id == "cat-1"
        assert grant.id == "g1"

    def test_parse_grant_rejects_server_target(self):
        with pytest.raises(InvalidPermissionRequest):
            parse_grant("ATTACH_FILES", "ALLOW", None, "c1")
