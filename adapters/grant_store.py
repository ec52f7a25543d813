# adapters/grant_store.py - member, role and grant persistence for authorization

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from core.authz.capabilities import ADMINISTRATOR, Capability, Effect, Scope
from core.authz.models import Grant, GrantKey, LegacyRole, Member, Role

logger = logging.getLogger(__name__)

# Called with member_ids, role_ids and server_ids touched by a write, and the
# store revision the write produced
InvalidationListener = Callable[..., None]


# ============================================================================
# Errors
# ============================================================================

class GrantStoreError(Exception):
    """Base error for grant store write paths."""


class MemberNotFoundError(GrantStoreError):
    def __init__(self, member_id: str):
        super().__init__(f"Member not found: {member_id}")
        self.member_id = member_id


class RoleNotFoundError(GrantStoreError):
    def __init__(self, role_id: str):
        super().__init__(f"Role not found: {role_id}")
        self.role_id = role_id


class CrossServerAssignmentError(GrantStoreError):
    """A role was assigned to a member of a different server."""

    def __init__(self, member_id: str, role_id: str):
        super().__init__(f"Role {role_id} and member {member_id} belong to different servers")
        self.member_id = member_id
        self.role_id = role_id


# ============================================================================
# Read Contract
# ============================================================================

class GrantStore(ABC):
    """Read contract the authorization core consumes."""

    @abstractmethod
    def load_member(self, member_id: str) -> Optional[Member]:
        """
        Load one member fully populated: legacy tag, roles with grants,
        overrides.

        Args:
            member_id: Member identifier

        Returns:
            Member snapshot, or None if no such member exists
        """
        pass

    @abstractmethod
    def get_role(self, role_id: str) -> Optional[Role]:
        pass

    @abstractmethod
    def list_roles(self, server_id: str) -> List[Role]:
        """Roles of one server, most senior first."""
        pass


# ============================================================================
# In-Memory Implementation
# ============================================================================

@dataclass
class _MemberRecord:
    id: str
    server_id: str
    profile_id: str
    legacy_role: LegacyRole
    created_at: datetime
    role_ids: List[str] = field(default_factory=list)
    overrides: Dict[GrantKey, Grant] = field(default_factory=dict)


@dataclass
class _RoleRecord:
    id: str
    server_id: str
    name: str
    position: int = 0
    color: Optional[str] = None
    hoist: bool = False
    mentionable: bool = False
    grants: Dict[GrantKey, Grant] = field(default_factory=dict)

    def snapshot(self) -> Role:
        return Role(
            id=self.id,
            server_id=self.server_id,
            name=self.name,
            position=self.position,
            color=self.color,
            hoist=self.hoist,
            mentionable=self.mentionable,
            grants=tuple(self.grants.values()),
        )


def _new_id() -> str:
    return uuid.uuid4().hex


def _upsert(grants: Dict[GrantKey, Grant], grant: Grant) -> Grant:
    """Insert or replace the grant for its (capability, scope, target) key."""
    existing = grants.get(grant.key)
    grant_id = grant.id or (existing.id if existing else None) or _new_id()
    stored = Grant(
        capability=grant.capability,
        effect=grant.effect,
        scope=grant.scope,
        target_id=grant.target_id,
        id=grant_id,
    )
    grants[grant.key] = stored
    return stored


class InMemoryGrantStore(GrantStore):
    """
    Thread-safe in-process grant store.

    Enforces the write-side invariants: one grant per (capability, scope,
    target) per role or per member, no cross-server role assignment, and
    cascades on role, member and server deletion. Every write notifies the
    registered invalidation listeners before it returns.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._members: Dict[str, _MemberRecord] = {}
        self._roles: Dict[str, _RoleRecord] = {}
        self._listeners: List[InvalidationListener] = []
        self._revision = 0

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: InvalidationListener) -> None:
        """
        Register an invalidation listener.

        Listeners are called as listener(member_ids=..., role_ids=...,
        server_ids=..., revision=...) synchronously inside every write.
        """
        self._listeners.append(listener)

    def _notify(
        self,
        member_ids: Iterable[str] = (),
        role_ids: Iterable[str] = (),
        server_ids: Iterable[str] = (),
    ) -> None:
        member_ids, role_ids, server_ids = list(member_ids), list(role_ids), list(server_ids)
        self._revision += 1
        for listener in self._listeners:
            listener(member_ids=member_ids, role_ids=role_ids, server_ids=server_ids,
                     revision=self._revision)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_member(self, member_id: str) -> Optional[Member]:
        with self._lock:
            record = self._members.get(member_id)
            if record is None:
                return None

            return Member(
                id=record.id,
                server_id=record.server_id,
                profile_id=record.profile_id,
                legacy_role=record.legacy_role,
                roles=tuple(self._roles[role_id].snapshot() for role_id in record.role_ids),
                overrides=tuple(record.overrides.values()),
                created_at=record.created_at,
                revision=self._revision,
            )

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._lock:
            record = self._roles.get(role_id)
            return record.snapshot() if record else None

    def list_roles(self, server_id: str) -> List[Role]:
        with self._lock:
            roles = [r.snapshot() for r in self._roles.values() if r.server_id == server_id]
        return sorted(roles, key=lambda role: (-role.position, role.id))

    def list_member_ids(self, server_id: str) -> List[str]:
        with self._lock:
            return sorted(m.id for m in self._members.values() if m.server_id == server_id)

    def members_with_role(self, role_id: str) -> List[str]:
        with self._lock:
            return sorted(m.id for m in self._members.values() if role_id in m.role_ids)

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def _member(self, member_id: str) -> _MemberRecord:
        record = self._members.get(member_id)
        if record is None:
            raise MemberNotFoundError(member_id)
        return record

    def _role(self, role_id: str) -> _RoleRecord:
        record = self._roles.get(role_id)
        if record is None:
            raise RoleNotFoundError(role_id)
        return record

    def add_member(
        self,
        server_id: str,
        profile_id: str,
        legacy_role: LegacyRole = LegacyRole.GUEST,
        member_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Member:
        """
        Register an identity as a member of a server.

        Returns:
            The new member's snapshot
        """
        with self._lock:
            if member_id in self._members:
                raise GrantStoreError(f"Member already exists: {member_id}")
            record = _MemberRecord(
                id=member_id or _new_id(),
                server_id=server_id,
                profile_id=profile_id,
                legacy_role=legacy_role,
                created_at=created_at or datetime.now(timezone.utc),
            )
            self._members[record.id] = record
            logger.info(f"Added member {record.id} to server {server_id} as {legacy_role.value}")
            return self.load_member(record.id)

    def set_legacy_role(self, member_id: str, legacy_role: LegacyRole) -> None:
        with self._lock:
            self._member(member_id).legacy_role = legacy_role
            logger.info(f"Member {member_id} legacy role set to {legacy_role.value}")
            self._notify(member_ids=[member_id])

    def remove_member(self, member_id: str) -> None:
        """Remove a member with its assignments and overrides."""
        with self._lock:
            self._member(member_id)
            del self._members[member_id]
            logger.info(f"Removed member {member_id}")
            self._notify(member_ids=[member_id])

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(
        self,
        server_id: str,
        name: str,
        position: int = 0,
        color: Optional[str] = None,
        hoist: bool = False,
        mentionable: bool = False,
        grants: Iterable[Grant] = (),
        role_id: Optional[str] = None,
    ) -> Role:
        """
        Create a role. Grants sharing a key collapse to the last one given.

        Returns:
            The new role's snapshot
        """
        with self._lock:
            if role_id in self._roles:
                raise GrantStoreError(f"Role already exists: {role_id}")
            record = _RoleRecord(
                id=role_id or _new_id(),
                server_id=server_id,
                name=name,
                position=position,
                color=color,
                hoist=hoist,
                mentionable=mentionable,
            )
            for grant in grants:
                _upsert(record.grants, grant)
            self._roles[record.id] = record
            logger.info(f"Created role {record.id} ({name}) in server {server_id} at position {position}")
            return record.snapshot()

    def update_role(
        self,
        role_id: str,
        name: Optional[str] = None,
        position: Optional[int] = None,
        color: Optional[str] = None,
        hoist: Optional[bool] = None,
        mentionable: Optional[bool] = None,
    ) -> Role:
        """Edit role attributes; None leaves a field unchanged."""
        with self._lock:
            record = self._role(role_id)
            if name is not None:
                record.name = name
            if position is not None:
                record.position = position
            if color is not None:
                record.color = color
            if hoist is not None:
                record.hoist = hoist
            if mentionable is not None:
                record.mentionable = mentionable
            self._notify(role_ids=[role_id])
            return record.snapshot()

    def delete_role(self, role_id: str) -> List[str]:
        """
        Delete a role and detach it from every member holding it.

        Returns:
            Ids of the members it was detached from
        """
        with self._lock:
            self._role(role_id)
            detached = self.members_with_role(role_id)
            for member_id in detached:
                self._members[member_id].role_ids.remove(role_id)
            del self._roles[role_id]

            logger.info(f"Deleted role {role_id}, detached from {len(detached)} members")
            self._notify(member_ids=detached, role_ids=[role_id])
            return detached

    def upsert_role_grant(self, role_id: str, grant: Grant) -> Grant:
        """Set the role's grant for grant.key, replacing any existing one."""
        with self._lock:
            stored = _upsert(self._role(role_id).grants, grant)
            logger.info(
                f"Role {role_id} grant {stored.capability.value}/{stored.scope.value}/"
                f"{stored.target_id} = {stored.effect.value}"
            )
            self._notify(role_ids=[role_id])
            return stored

    def remove_role_grant(
        self,
        role_id: str,
        capability: Capability,
        scope: Scope = Scope.SERVER,
        target_id: Optional[str] = None,
    ) -> bool:
        """
        Remove the role's grant for a key.

        Returns:
            True if a grant was removed
        """
        with self._lock:
            removed = self._role(role_id).grants.pop((capability, scope, target_id or None), None)
            if removed is not None:
                self._notify(role_ids=[role_id])
            return removed is not None

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign_role(self, member_id: str, role_id: str) -> bool:
        """
        Attach a role to a member.

        Returns:
            False if the member already held the role

        Raises:
            CrossServerAssignmentError: If role and member are in different servers
        """
        with self._lock:
            member = self._member(member_id)
            role = self._role(role_id)
            if role.server_id != member.server_id:
                raise CrossServerAssignmentError(member_id, role_id)
            if role_id in member.role_ids:
                return False

            member.role_ids.append(role_id)
            logger.info(f"Assigned role {role_id} to member {member_id}")
            self._notify(member_ids=[member_id])
            return True

    def remove_role(self, member_id: str, role_id: str) -> bool:
        """
        Detach a role from a member.

        Returns:
            False if the member did not hold the role
        """
        with self._lock:
            member = self._member(member_id)
            if role_id not in member.role_ids:
                return False

            member.role_ids.remove(role_id)
            logger.info(f"Removed role {role_id} from member {member_id}")
            self._notify(member_ids=[member_id])
            return True

    # ------------------------------------------------------------------
    # Overrides
    # ------------------------------------------------------------------

    def upsert_override(self, member_id: str, grant: Grant) -> Grant:
        """Set the member's override for grant.key, replacing any existing one."""
        with self._lock:
            stored = _upsert(self._member(member_id).overrides, grant)
            logger.info(
                f"Member {member_id} override {stored.capability.value}/{stored.scope.value}/"
                f"{stored.target_id} = {stored.effect.value}"
            )
            self._notify(member_ids=[member_id])
            return stored

    def remove_override(
        self,
        member_id: str,
        capability: Capability,
        scope: Scope = Scope.SERVER,
        target_id: Optional[str] = None,
    ) -> bool:
        with self._lock:
            removed = self._member(member_id).overrides.pop((capability, scope, target_id or None), None)
            if removed is not None:
                self._notify(member_ids=[member_id])
            return removed is not None

    def grant_admin(self, member_id: str) -> Grant:
        """Give a member ADMINISTRATOR at server scope through an override."""
        return self.upsert_override(
            member_id, Grant(capability=ADMINISTRATOR, effect=Effect.ALLOW, scope=Scope.SERVER)
        )

    def revoke_admin(self, member_id: str) -> bool:
        """Remove the member's ADMINISTRATOR override, if any."""
        return self.remove_override(member_id, ADMINISTRATOR, Scope.SERVER)

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def delete_server(self, server_id: str) -> None:
        """Delete every member and role owned by a server."""
        with self._lock:
            member_ids = self.list_member_ids(server_id)
            role_ids = [r.id for r in self._roles.values() if r.server_id == server_id]
            for member_id in member_ids:
                del self._members[member_id]
            for role_id in role_ids:
                del self._roles[role_id]

            logger.info(f"Deleted server {server_id}: {len(member_ids)} members, {len(role_ids)} roles")
            self._notify(member_ids=member_ids, role_ids=role_ids, server_ids=[server_id])
