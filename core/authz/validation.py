"""
Boundary validation for authorization requests.

Raw strings from callers are parsed into catalog values here, before they
reach the resolver. Anything outside the catalog is rejected, never
defaulted.
"""

from typing import Optional

from .capabilities import Capability, Effect, Scope, is_capability, is_scope
from .models import CheckRequest, Grant, LegacyRole, ModerationAction


class InvalidPermissionRequest(ValueError):
    """Raised for malformed capability, scope, effect or action input."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


def parse_capability(name: Optional[str]) -> Capability:
    """
    Parse a capability name.

    Raises:
        InvalidPermissionRequest: If the name is not in the catalog
    """
    if isinstance(name, Capability):
        return name
    if not is_capability(name):
        raise InvalidPermissionRequest(f"Unknown capability: {name!r}", field="capability")
    return Capability(name)


def parse_scope(name: Optional[str]) -> Scope:
    """Parse a scope name; None means SERVER."""
    if name is None:
        return Scope.SERVER
    if isinstance(name, Scope):
        return name
    if not is_scope(name):
        raise InvalidPermissionRequest(f"Unknown scope: {name!r}", field="scope")
    return Scope(name)


def parse_effect(name: Optional[str]) -> Effect:
    if isinstance(name, Effect):
        return name
    if name not in Effect._value2member_map_:
        raise InvalidPermissionRequest(f"Unknown effect: {name!r}", field="effect")
    return Effect(name)


def parse_action(name: Optional[str]) -> ModerationAction:
    if isinstance(name, ModerationAction):
        return name
    if name not in ModerationAction._value2member_map_:
        raise InvalidPermissionRequest(f"Unknown moderation action: {name!r}", field="action")
    return ModerationAction(name)


def parse_legacy_role(name: Optional[str]) -> LegacyRole:
    if isinstance(name, LegacyRole):
        return name
    if name not in LegacyRole._value2member_map_:
        raise InvalidPermissionRequest(f"Unknown legacy role: {name!r}", field="legacy_role")
    return LegacyRole(name)


def parse_target(scope: Scope, target_id: Optional[str]) -> Optional[str]:
    """
    Normalize a target id against its scope.

    An empty target is the same as no target. A target with SERVER scope is
    malformed.
    """
    target_id = target_id or None
    if target_id is not None and scope == Scope.SERVER:
        raise InvalidPermissionRequest(
            "target_id is only allowed with CATEGORY or CHANNEL scope",
            field="target_id",
        )
    return target_id


def parse_check_request(
    capability: Optional[str],
    scope: Optional[str] = None,
    target_id: Optional[str] = None,
) -> CheckRequest:
    """
    Build a CheckRequest from raw boundary input.

    Args:
        capability: Capability name
        scope: Scope name (defaults to SERVER)
        target_id: Category or channel id

    Returns:
        Validated CheckRequest

    Raises:
        InvalidPermissionRequest: On any malformed field
    """
    parsed_scope = parse_scope(scope)
    return CheckRequest(
        capability=parse_capability(capability),
        scope=parsed_scope,
        target_id=parse_target(parsed_scope, target_id),
    )


def parse_grant(
    capability: Optional[str],
    effect: Optional[str],
    scope: Optional[str] = None,
    target_id: Optional[str] = None,
    grant_id: Optional[str] = None,
) -> Grant:
    """Build a Grant from raw boundary input, with the same rules as checks."""
    parsed_scope = parse_scope(scope)
    return Grant(
        capability=parse_capability(capability),
        effect=parse_effect(effect),
        scope=parsed_scope,
        target_id=parse_target(parsed_scope, target_id),
        id=grant_id,
    )
