"""
Hierarchy guard.

Answers whether one member may moderate another (kick, ban, timeout, edit
roles). Superusers and administrators short-circuit; everyone else needs the
matching capability and a strictly higher top role position than the target.
"""

import logging
from enum import Enum
from typing import Tuple

from .capabilities import ADMINISTRATOR, Scope
from .models import MODERATION_CAPABILITIES, Member, ModerationAction
from .resolve import highest_position, holds_administrator, resolve

logger = logging.getLogger(__name__)


class ManageRule(str, Enum):
    """Rule that decided a can-manage check."""
    SELF = "SELF"
    CROSS_SERVER = "CROSS_SERVER"
    SUPERUSER = "SUPERUSER"
    SUPERUSER_TARGET = "SUPERUSER_TARGET"
    ADMINISTRATOR = "ADMINISTRATOR"
    ADMINISTRATOR_TARGET = "ADMINISTRATOR_TARGET"
    MISSING_CAPABILITY = "MISSING_CAPABILITY"
    POSITION = "POSITION"
    HIERARCHY = "HIERARCHY"


def explain_can_manage(
    actor: Member,
    target: Member,
    action: ModerationAction,
) -> Tuple[bool, ManageRule]:
    """
    Decide whether actor may perform a moderation action on target.

    Rules, first match wins:

    1. Nobody manages themselves.
    2. Members of different servers never manage each other.
    3. A superuser manages anyone except another superuser.
    4. An administrator manages anyone who does not also resolve
       ADMINISTRATOR (superusers included).
    5. Otherwise the actor needs the action's capability at server scope and
       a highest role position strictly above the target's.

    Args:
        actor: Loaded snapshot of the acting member
        target: Loaded snapshot of the member being acted on
        action: Moderation action

    Returns:
        Tuple of (allowed, rule that decided)
    """
    if actor.id == target.id:
        return False, ManageRule.SELF

    if actor.server_id != target.server_id:
        logger.warning(
            f"Cross-server manage check: actor {actor.id} ({actor.server_id}) "
            f"target {target.id} ({target.server_id})"
        )
        return False, ManageRule.CROSS_SERVER

    if actor.is_superuser:
        if target.is_superuser:
            return False, ManageRule.SUPERUSER_TARGET
        return True, ManageRule.SUPERUSER

    if holds_administrator(actor):
        if resolve(target, ADMINISTRATOR).granted:
            return False, ManageRule.ADMINISTRATOR_TARGET
        return True, ManageRule.ADMINISTRATOR

    capability = MODERATION_CAPABILITIES[action]
    if not resolve(actor, capability, Scope.SERVER).granted:
        return False, ManageRule.MISSING_CAPABILITY

    if highest_position(actor) <= highest_position(target):
        return False, ManageRule.POSITION

    return True, ManageRule.HIERARCHY


def can_manage(actor: Member, target: Member, action: ModerationAction) -> bool:
    """Boolean form of explain_can_manage."""
    allowed, _ = explain_can_manage(actor, target, action)
    return allowed
