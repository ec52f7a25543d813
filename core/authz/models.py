"""
Aggregate types consumed and produced by the authorization core.

A Member is loaded once per check, fully populated with its legacy role tag,
its assigned roles (each carrying its grants) and its direct overrides. The
resolver only ever reads these snapshots.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .capabilities import Capability, Effect, Scope


class LegacyRole(str, Enum):
    """Coarse single-role tag predating the grant system."""
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    GUEST = "GUEST"


SUPERUSER_TAG = LegacyRole.ADMIN


class Reason(str, Enum):
    """Which rule produced a resolution decision."""
    SUPERUSER = "SUPERUSER"
    ADMINISTRATOR = "ADMINISTRATOR"
    USER_OVERRIDE = "USER_OVERRIDE"
    ROLE = "ROLE"
    DEFAULT_DENY = "DEFAULT_DENY"


class ModerationAction(str, Enum):
    """Actions gated by the hierarchy guard."""
    KICK = "KICK"
    BAN = "BAN"
    TIMEOUT = "TIMEOUT"
    MANAGE_ROLES = "MANAGE_ROLES"


MODERATION_CAPABILITIES: Dict[ModerationAction, Capability] = {
    ModerationAction.KICK: Capability.KICK_MEMBERS,
    ModerationAction.BAN: Capability.BAN_MEMBERS,
    ModerationAction.TIMEOUT: Capability.TIMEOUT_MEMBERS,
    ModerationAction.MANAGE_ROLES: Capability.MANAGE_ROLES,
}


GrantKey = Tuple[Capability, Scope, Optional[str]]


@dataclass(frozen=True)
class Grant:
    """A single allow/deny rule owned by a role or by a member."""
    capability: Capability
    effect: Effect
    scope: Scope = Scope.SERVER
    target_id: Optional[str] = None
    id: Optional[str] = None

    def __post_init__(self):
        # "" and None both mean "no target"
        if self.target_id == "":
            object.__setattr__(self, "target_id", None)

    @property
    def key(self) -> GrantKey:
        return (self.capability, self.scope, self.target_id)

    @property
    def is_allow(self) -> bool:
        return self.effect == Effect.ALLOW

    def matches(self, capability: Capability, scope: Scope, target_id: Optional[str]) -> bool:
        """Exact match on (capability, scope, target); no scope fallback."""
        return self.key == (capability, scope, target_id or None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "capability": self.capability.value,
            "effect": self.effect.value,
            "scope": self.scope.value,
            "target_id": self.target_id,
        }


@dataclass(frozen=True)
class Role:
    """A named, ordered bundle of grants scoped to one server."""
    id: str
    server_id: str
    name: str
    position: int = 0
    color: Optional[str] = None
    hoist: bool = False
    mentionable: bool = False
    grants: Tuple[Grant, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "name": self.name,
            "position": self.position,
            "color": self.color,
            "hoist": self.hoist,
            "mentionable": self.mentionable,
            "grants": [g.to_dict() for g in self.grants],
        }


@dataclass(frozen=True)
class Member:
    """
    One identity's membership in one server, loaded for authorization.

    Attributes:
        id: Member id
        server_id: Owning server
        profile_id: Underlying identity
        legacy_role: Legacy single-role tag; ADMIN is the superuser tag
        roles: Assigned roles, each with its grants
        overrides: Grants owned directly by this member
        created_at: When the identity joined the server
        revision: Store write revision the snapshot was loaded at
    """
    id: str
    server_id: str
    profile_id: str
    legacy_role: LegacyRole = LegacyRole.GUEST
    roles: Tuple[Role, ...] = ()
    overrides: Tuple[Grant, ...] = ()
    created_at: Optional[datetime] = None
    revision: int = 0

    def __post_init__(self):
        for role in self.roles:
            if role.server_id != self.server_id:
                raise ValueError(
                    f"Role {role.id} belongs to server {role.server_id}, "
                    f"not to member {self.id}'s server {self.server_id}"
                )

    @property
    def is_superuser(self) -> bool:
        return self.legacy_role == SUPERUSER_TAG

    @property
    def role_ids(self) -> Tuple[str, ...]:
        return tuple(role.id for role in self.roles)


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of a single capability check, with the rule that decided it."""
    granted: bool
    reason: Reason
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "granted": self.granted,
            "reason": self.reason.value,
            "source": self.source,
        }


@dataclass(frozen=True)
class CheckRequest:
    """A (capability, scope, target) triple for batch resolution."""
    capability: Capability
    scope: Scope = Scope.SERVER
    target_id: Optional[str] = None


@dataclass(frozen=True)
class CheckOutcome:
    """A batch entry paired with its result."""
    request: CheckRequest
    result: ResolutionResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capability": self.request.capability.value,
            "scope": self.request.scope.value,
            "target_id": self.request.target_id,
            **self.result.to_dict(),
        }
