"""
Resolution engine.

Decides whether a loaded member holds a capability in a scope. Rules are
applied in strict precedence order and the first decisive rule wins:

1. Superuser legacy tag grants everything, explicit denies included.
2. ADMINISTRATOR held at server scope (via overrides or roles) grants
   everything.
3. A user override with an exact (capability, scope, target) match decides.
4. Roles are scanned by position, highest first. The first DENY met ends
   the scan; otherwise any ALLOW met grants, attributed to the last role
   that supplied one.
5. Otherwise the request is denied by default.

The engine is a pure function of its inputs: no I/O, no shared state, safe
to call concurrently on independent snapshots.
"""

import logging
from typing import Iterable, List, Optional

from .capabilities import ADMINISTRATOR, Capability, Effect, Scope
from .models import (
    CheckOutcome,
    CheckRequest,
    Member,
    Reason,
    ResolutionResult,
    Role,
)

logger = logging.getLogger(__name__)

USER_OVERRIDE_SOURCE = "user_override"
"""Source reported for overrides that carry no id of their own."""


# ============================================================================
# Helpers
# ============================================================================

def ordered_roles(member: Member) -> List[Role]:
    """
    Return the member's roles in scan order.

    Highest position first; equal positions are ordered by role id so the
    scan is deterministic.
    """
    return sorted(member.roles, key=lambda role: (-role.position, role.id))


def highest_position(member: Member) -> int:
    """
    Highest role position the member holds.

    A member without roles ranks at 0, and positions below 0 never rank
    lower than that.
    """
    return max([0] + [role.position for role in member.roles])


def _check_override(
    member: Member,
    capability: Capability,
    scope: Scope,
    target_id: Optional[str],
) -> Optional[ResolutionResult]:
    for override in member.overrides:
        if override.matches(capability, scope, target_id):
            return ResolutionResult(
                granted=override.effect == Effect.ALLOW,
                reason=Reason.USER_OVERRIDE,
                source=override.id or USER_OVERRIDE_SOURCE,
            )
    return None


def _check_roles(
    member: Member,
    capability: Capability,
    scope: Scope,
    target_id: Optional[str],
) -> Optional[ResolutionResult]:
    allowing_role: Optional[str] = None

    for role in ordered_roles(member):
        for grant in role.grants:
            if not grant.matches(capability, scope, target_id):
                continue
            if grant.effect == Effect.DENY:
                return ResolutionResult(granted=False, reason=Reason.ROLE, source=role.id)
            # Keep scanning: a lower role may still deny
            allowing_role = role.id

    if allowing_role is not None:
        return ResolutionResult(granted=True, reason=Reason.ROLE, source=allowing_role)
    return None


def _resolve_grants(
    member: Member,
    capability: Capability,
    scope: Scope,
    target_id: Optional[str],
) -> Optional[ResolutionResult]:
    """Override lookup, then role scan. None when nothing matched."""
    result = _check_override(member, capability, scope, target_id)
    if result is not None:
        return result
    return _check_roles(member, capability, scope, target_id)


# ============================================================================
# Public API
# ============================================================================

def holds_administrator(member: Member) -> bool:
    """
    Check whether the member holds ADMINISTRATOR at server scope.

    Only overrides and roles are consulted; the legacy superuser tag is a
    separate shortcut and is not considered here.

    Args:
        member: Loaded member snapshot

    Returns:
        True if ADMINISTRATOR resolves to ALLOW at server scope
    """
    result = _resolve_grants(member, ADMINISTRATOR, Scope.SERVER, None)
    return result is not None and result.granted


def resolve(
    member: Member,
    capability: Capability,
    scope: Scope = Scope.SERVER,
    target_id: Optional[str] = None,
) -> ResolutionResult:
    """
    Resolve a capability for a member.

    Args:
        member: Fully loaded member snapshot
        capability: Capability being requested
        scope: Scope of the request (defaults to SERVER)
        target_id: Category or channel id when scope is not SERVER

    Returns:
        ResolutionResult with the decision, the rule that decided it and,
        where applicable, the role id or override id responsible

    Examples:
        >>> member = Member(id="m1", server_id="s1", profile_id="p1")
        >>> resolve(member, Capability.SEND_MESSAGES).reason
        <Reason.DEFAULT_DENY: 'DEFAULT_DENY'>
    """
    target_id = target_id or None

    if member.is_superuser:
        return ResolutionResult(granted=True, reason=Reason.SUPERUSER)

    admin = _resolve_grants(member, ADMINISTRATOR, Scope.SERVER, None)
    if admin is not None and admin.granted:
        return ResolutionResult(granted=True, reason=Reason.ADMINISTRATOR, source=admin.source)

    result = _resolve_grants(member, capability, scope, target_id)
    if result is not None:
        logger.debug(
            f"Resolved {capability.value}/{scope.value}/{target_id} for member {member.id}: "
            f"granted={result.granted} reason={result.reason.value} source={result.source}"
        )
        return result

    return ResolutionResult(granted=False, reason=Reason.DEFAULT_DENY)


def resolve_many(member: Member, requests: Iterable[CheckRequest]) -> List[CheckOutcome]:
    """
    Resolve several capability checks for one member.

    Args:
        member: Fully loaded member snapshot
        requests: Checks to run, in order

    Returns:
        One CheckOutcome per request, in the same order
    """
    return [
        CheckOutcome(
            request=request,
            result=resolve(member, request.capability, request.scope, request.target_id),
        )
        for request in requests
    ]
