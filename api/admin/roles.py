"""
Role management API endpoints.

Create, edit and delete roles, set their grants, attach them to members and
manage per-member overrides. Everything here is gated by MANAGE_ROLES;
actions aimed at a member also pass the moderation hierarchy.
"""

import logging
import uuid
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, Request, HTTPException, status
from pydantic import BaseModel, Field, validator

from adapters.grant_store import InMemoryGrantStore, RoleNotFoundError
from api.guards import (
    authorize,
    ensure_can_manage,
    get_store,
    load_member_in_server,
    require,
    require_caller,
)
from core.authz import (
    ADMINISTRATOR,
    Capability,
    Grant,
    Member,
    ModerationAction,
    PresetLoader,
    Role,
    RoleTemplate,
    is_capability,
    is_scope,
    parse_capability,
    parse_grant,
    parse_scope,
    parse_target,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/servers/{server_id}", tags=["admin", "roles"])


# ============================================================================
# Request/Response Models
# ============================================================================

class RoleCreateRequest(BaseModel):
    """Request to create a role."""
    name: str = Field(..., description="Display name")
    position: Optional[int] = Field(None, ge=0, description="Seniority; higher ranks above lower")
    color: Optional[str] = None
    hoist: Optional[bool] = None
    mentionable: Optional[bool] = None
    template: Optional[str] = Field(None, description="Role template key; defaults to the member template")

    @validator('name')
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip()


class RoleUpdateRequest(BaseModel):
    """Request to edit a role; omitted fields are left unchanged."""
    name: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)
    color: Optional[str] = None
    hoist: Optional[bool] = None
    mentionable: Optional[bool] = None

    @validator('name')
    def validate_name(cls, v):
        if v is not None and not v.strip():
            raise ValueError("name cannot be empty")
        return v.strip() if v is not None else v


class GrantRequest(BaseModel):
    """A grant to upsert on a role or as a member override."""
    capability: str
    effect: str = Field("ALLOW", description="ALLOW or DENY")
    scope: Optional[str] = Field(None, description="SERVER, CATEGORY or CHANNEL (default SERVER)")
    target_id: Optional[str] = None

    @validator('capability')
    def validate_capability(cls, v):
        if not is_capability(v):
            raise ValueError(f"Unknown capability: {v}")
        return v

    @validator('scope')
    def validate_scope(cls, v):
        if v is not None and not is_scope(v):
            raise ValueError(f"Unknown scope: {v}")
        return v


class GrantModel(BaseModel):
    id: Optional[str] = None
    capability: str
    effect: str
    scope: str
    target_id: Optional[str] = None


class RoleResponse(BaseModel):
    id: str
    server_id: str
    name: str
    position: int
    color: Optional[str] = None
    hoist: bool
    mentionable: bool
    grants: List[GrantModel]


class RoleTemplateResponse(BaseModel):
    key: str
    name: str
    position: int
    color: Optional[str] = None
    hoist: bool
    mentionable: bool
    grants: List[GrantModel]


class RoleDeleteResponse(BaseModel):
    role_id: str
    deleted: bool
    detached_members: List[str]
    audit_id: Optional[str] = None


class AssignmentResponse(BaseModel):
    member_id: str
    role_id: str
    changed: bool
    message: str
    audit_id: Optional[str] = None


class GrantChangeResponse(BaseModel):
    owner_id: str
    grant: Optional[GrantModel] = None
    removed: Optional[bool] = None
    audit_id: Optional[str] = None


# ============================================================================
# Role Manager
# ============================================================================

class RoleManager:
    """Applies role and override changes to the grant store and audits them."""

    def __init__(self, store: InMemoryGrantStore, presets: PresetLoader):
        self.store = store
        self.presets = presets

    def template_for(self, body: RoleCreateRequest) -> RoleTemplate:
        """
        Raises:
            HTTPException: 422 for an unknown template
        """
        if body.template:
            template = self.presets.get_template(body.template)
            if template is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail={"error": "invalid_request", "field": "template",
                            "message": f"Unknown role template: {body.template}"}
                )
        else:
            template = self.presets.get_default()
        return template

    def next_position(self, server_id: str) -> int:
        """One above the server's most senior role, or 0 for a server without roles."""
        roles = self.store.list_roles(server_id)
        return roles[0].position + 1 if roles else 0

    def create_role(
        self,
        server_id: str,
        body: RoleCreateRequest,
        template: RoleTemplate,
        performed_by: str,
    ) -> Role:
        """
        Create a role from a template.

        Fields given in the request override the template's. Without an
        explicit position the role goes directly above the current top role,
        or at the template's position if that is higher.
        """
        if body.position is not None:
            position = body.position
        else:
            position = max(template.position, self.next_position(server_id))

        role = self.store.create_role(
            server_id=server_id,
            name=body.name,
            position=position,
            color=body.color if body.color is not None else template.color,
            hoist=body.hoist if body.hoist is not None else template.hoist,
            mentionable=body.mentionable if body.mentionable is not None else template.mentionable,
            grants=template.grants,
        )

        self._log_audit("role_create", server_id, role.id, performed_by, {"template": template.key})
        return role

    def get_role(self, server_id: str, role_id: str) -> Role:
        """
        Raises:
            RoleNotFoundError: If the role does not exist in this server
        """
        role = self.store.get_role(role_id)
        if role is None or role.server_id != server_id:
            raise RoleNotFoundError(role_id)
        return role

    def _log_audit(
        self,
        action: str,
        server_id: str,
        subject_id: str,
        performed_by: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log audit entry for a role management action.

        Args:
            action: Action type (e.g., 'role_create', 'role_assign')
            server_id: Server the change applies to
            subject_id: Role or member changed
            performed_by: Member id of the caller
            metadata: Additional metadata

        Returns:
            Audit entry ID
        """
        audit_id = uuid.uuid4().hex
        audit_entry = {
            "id": audit_id,
            "action": action,
            "server_id": server_id,
            "subject_id": subject_id,
            "performed_by": performed_by,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "metadata": metadata or {},
        }

        logger.info(
            f"Audit log: {action} server={server_id} subject={subject_id} "
            f"by={performed_by} audit_id={audit_id}",
            extra={"audit": audit_entry}
        )
        return audit_id


def get_manager(request: Request) -> RoleManager:
    return RoleManager(get_store(request), request.app.state.presets)


def _role_response(role: Role) -> RoleResponse:
    return RoleResponse(**role.to_dict())


def _grant_model(grant: Grant) -> GrantModel:
    return GrantModel(**grant.to_dict())


def _target_member(request: Request, server_id: str, member_id: str) -> Member:
    member = load_member_in_server(request, server_id, member_id)
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "member_not_found", "message": f"Member {member_id} not found"}
        )
    return member


def _guard_administrator_grant(request: Request, server_id: str, capability: Capability) -> None:
    """Only administrators may hand out or withdraw ADMINISTRATOR."""
    if capability == ADMINISTRATOR:
        authorize(request, server_id, ADMINISTRATOR)


def _guard_administrator_role(request: Request, server_id: str, grants) -> None:
    """Roles carrying ADMINISTRATOR are created, attached and removed only by administrators."""
    if any(grant.capability == ADMINISTRATOR for grant in grants):
        authorize(request, server_id, ADMINISTRATOR)


# ============================================================================
# Role Endpoints
# ============================================================================

@router.get("/roles", response_model=List[RoleResponse])
def list_roles(request: Request, server_id: str):
    """List the server's roles, most senior first. Any member may list them."""
    require_caller(request, server_id)
    return [_role_response(role) for role in get_store(request).list_roles(server_id)]


@router.get("/role-templates", response_model=List[RoleTemplateResponse])
def list_role_templates(request: Request, server_id: str):
    """Templates a new role can start from, most senior first."""
    require_caller(request, server_id)
    return [RoleTemplateResponse(**t.to_dict()) for t in request.app.state.presets.list_templates()]


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
@require(Capability.MANAGE_ROLES)
async def create_role(request: Request, server_id: str, body: RoleCreateRequest):
    """
    Create a role.

    **Required Capability**: MANAGE_ROLES

    New roles get the default member grants unless a template is named.
    A template that grants ADMINISTRATOR needs an ADMINISTRATOR caller.

    **Example**:
    ```
    POST /servers/s1/roles
    {"name": "Helpers", "position": 5, "template": "moderator"}
    ```
    """
    caller = request.state.member
    manager = get_manager(request)
    template = manager.template_for(body)
    _guard_administrator_role(request, server_id, template.grants)

    role = manager.create_role(server_id, body, template, performed_by=caller.id)
    return _role_response(role)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
@require(Capability.MANAGE_ROLES)
async def update_role(request: Request, server_id: str, role_id: str, body: RoleUpdateRequest):
    """
    Edit a role's name, position, color or flags.

    **Required Capability**: MANAGE_ROLES
    """
    manager = get_manager(request)
    manager.get_role(server_id, role_id)

    role = manager.store.update_role(
        role_id,
        name=body.name,
        position=body.position,
        color=body.color,
        hoist=body.hoist,
        mentionable=body.mentionable,
    )
    manager._log_audit("role_update", server_id, role_id, request.state.member.id,
                       {k: v for k, v in body.dict().items() if v is not None})
    return _role_response(role)


@router.delete("/roles/{role_id}", response_model=RoleDeleteResponse)
@require(Capability.MANAGE_ROLES)
async def delete_role(request: Request, server_id: str, role_id: str):
    """
    Delete a role and detach it from every member.

    **Required Capability**: MANAGE_ROLES (ADMINISTRATOR for a role carrying
    ADMINISTRATOR)
    """
    manager = get_manager(request)
    role = manager.get_role(server_id, role_id)
    _guard_administrator_role(request, server_id, role.grants)

    detached = manager.store.delete_role(role_id)
    audit_id = manager._log_audit("role_delete", server_id, role_id, request.state.member.id,
                                  {"detached_members": detached})
    return RoleDeleteResponse(role_id=role_id, deleted=True, detached_members=detached, audit_id=audit_id)


@router.put("/roles/{role_id}/grants", response_model=GrantChangeResponse)
@require(Capability.MANAGE_ROLES)
async def upsert_role_grant(request: Request, server_id: str, role_id: str, body: GrantRequest):
    """
    Set a role's grant for (capability, scope, target), replacing any
    existing grant for that key.

    **Required Capability**: MANAGE_ROLES (ADMINISTRATOR to grant ADMINISTRATOR)
    """
    grant = parse_grant(body.capability, body.effect, body.scope, body.target_id)
    _guard_administrator_grant(request, server_id, grant.capability)

    manager = get_manager(request)
    manager.get_role(server_id, role_id)

    stored = manager.store.upsert_role_grant(role_id, grant)
    audit_id = manager._log_audit("role_grant_set", server_id, role_id, request.state.member.id,
                                  stored.to_dict())
    return GrantChangeResponse(owner_id=role_id, grant=_grant_model(stored), audit_id=audit_id)


@router.delete("/roles/{role_id}/grants", response_model=GrantChangeResponse)
@require(Capability.MANAGE_ROLES)
async def remove_role_grant(
    request: Request,
    server_id: str,
    role_id: str,
    capability: str,
    scope: Optional[str] = None,
    target_id: Optional[str] = None,
):
    """
    Remove a role's grant for (capability, scope, target).

    **Required Capability**: MANAGE_ROLES (ADMINISTRATOR to remove ADMINISTRATOR)
    """
    parsed_capability = parse_capability(capability)
    parsed_scope = parse_scope(scope)
    parsed_target = parse_target(parsed_scope, target_id)
    _guard_administrator_grant(request, server_id, parsed_capability)

    manager = get_manager(request)
    manager.get_role(server_id, role_id)

    removed = manager.store.remove_role_grant(role_id, parsed_capability, parsed_scope, parsed_target)
    audit_id = manager._log_audit("role_grant_remove", server_id, role_id, request.state.member.id,
                                  {"capability": parsed_capability.value, "scope": parsed_scope.value,
                                   "target_id": parsed_target, "removed": removed})
    return GrantChangeResponse(owner_id=role_id, removed=removed, audit_id=audit_id)


# ============================================================================
# Assignment Endpoints
# ============================================================================

@router.put("/roles/{role_id}/members/{member_id}", response_model=AssignmentResponse)
@require(Capability.MANAGE_ROLES)
async def assign_role(request: Request, server_id: str, role_id: str, member_id: str):
    """
    Attach a role to a member.

    **Required Capability**: MANAGE_ROLES, and the caller must outrank the
    member.
    Roles carrying ADMINISTRATOR also need an ADMINISTRATOR caller.

    Idempotent: assigning a role the member already holds changes nothing.
    """
    caller = request.state.member
    target = _target_member(request, server_id, member_id)
    ensure_can_manage(request, caller, target, ModerationAction.MANAGE_ROLES)

    manager = get_manager(request)
    role = manager.store.get_role(role_id)
    if role is not None:
        _guard_administrator_role(request, server_id, role.grants)

    changed = manager.store.assign_role(member_id, role_id)
    audit_id = manager._log_audit("role_assign", server_id, member_id, caller.id,
                                  {"role_id": role_id, "changed": changed})

    return AssignmentResponse(
        member_id=member_id,
        role_id=role_id,
        changed=changed,
        message=f"Role '{role_id}' assigned" if changed else f"Role '{role_id}' already assigned",
        audit_id=audit_id,
    )


@router.delete("/roles/{role_id}/members/{member_id}", response_model=AssignmentResponse)
@require(Capability.MANAGE_ROLES)
async def detach_role(request: Request, server_id: str, role_id: str, member_id: str):
    """
    Detach a role from a member.

    **Required Capability**: MANAGE_ROLES, and the caller must outrank the
    member.
    Roles carrying ADMINISTRATOR also need an ADMINISTRATOR caller.
    """
    caller = request.state.member
    target = _target_member(request, server_id, member_id)
    ensure_can_manage(request, caller, target, ModerationAction.MANAGE_ROLES)

    manager = get_manager(request)
    role = manager.get_role(server_id, role_id)
    _guard_administrator_role(request, server_id, role.grants)

    changed = manager.store.remove_role(member_id, role_id)
    audit_id = manager._log_audit("role_detach", server_id, member_id, caller.id,
                                  {"role_id": role_id, "changed": changed})

    return AssignmentResponse(
        member_id=member_id,
        role_id=role_id,
        changed=changed,
        message=f"Role '{role_id}' removed" if changed else f"Role '{role_id}' not assigned",
        audit_id=audit_id,
    )


# ============================================================================
# Override Endpoints
# ============================================================================

@router.put("/members/{member_id}/overrides", response_model=GrantChangeResponse)
@require(Capability.MANAGE_ROLES)
async def upsert_override(request: Request, server_id: str, member_id: str, body: GrantRequest):
    """
    Set a member override for (capability, scope, target).

    **Required Capability**: MANAGE_ROLES (ADMINISTRATOR to grant
    ADMINISTRATOR), and the caller must outrank the member.
    """
    grant = parse_grant(body.capability, body.effect, body.scope, body.target_id)
    _guard_administrator_grant(request, server_id, grant.capability)

    caller = request.state.member
    target = _target_member(request, server_id, member_id)
    ensure_can_manage(request, caller, target, ModerationAction.MANAGE_ROLES)

    manager = get_manager(request)
    stored = manager.store.upsert_override(member_id, grant)
    audit_id = manager._log_audit("override_set", server_id, member_id, caller.id, stored.to_dict())
    return GrantChangeResponse(owner_id=member_id, grant=_grant_model(stored), audit_id=audit_id)


@router.delete("/members/{member_id}/overrides", response_model=GrantChangeResponse)
@require(Capability.MANAGE_ROLES)
async def remove_override(
    request: Request,
    server_id: str,
    member_id: str,
    capability: str,
    scope: Optional[str] = None,
    target_id: Optional[str] = None,
):
    """
    Remove a member override for (capability, scope, target).

    **Required Capability**: MANAGE_ROLES, and the caller must outrank the
    member.
    Roles carrying ADMINISTRATOR also need an ADMINISTRATOR caller.
    """
    parsed_capability = parse_capability(capability)
    parsed_scope = parse_scope(scope)
    parsed_target = parse_target(parsed_scope, target_id)
    _guard_administrator_grant(request, server_id, parsed_capability)

    caller = request.state.member
    target = _target_member(request, server_id, member_id)
    ensure_can_manage(request, caller, target, ModerationAction.MANAGE_ROLES)

    manager = get_manager(request)
    removed = manager.store.remove_override(member_id, parsed_capability, parsed_scope, parsed_target)
    audit_id = manager._log_audit("override_remove", server_id, member_id, caller.id,
                                  {"capability": parsed_capability.value, "scope": parsed_scope.value,
                                   "target_id": parsed_target, "removed": removed})
    return GrantChangeResponse(owner_id=member_id, removed=removed, audit_id=audit_id)


@router.put("/members/{member_id}/administrator", response_model=GrantChangeResponse)
@require(ADMINISTRATOR)
async def grant_administrator(request: Request, server_id: str, member_id: str):
    """
    Make a member a server administrator.

    **Required Capability**: ADMINISTRATOR, and the caller must outrank the
    member.
    """
    caller = request.state.member
    target = _target_member(request, server_id, member_id)
    ensure_can_manage(request, caller, target, ModerationAction.MANAGE_ROLES)

    manager = get_manager(request)
    stored = manager.store.grant_admin(member_id)
    audit_id = manager._log_audit("admin_grant", server_id, member_id, caller.id)
    return GrantChangeResponse(owner_id=member_id, grant=_grant_model(stored), audit_id=audit_id)


@router.delete("/members/{member_id}/administrator", response_model=GrantChangeResponse)
@require(ADMINISTRATOR)
async def revoke_administrator(request: Request, server_id: str, member_id: str):
    """
    Withdraw a member's administrator override.

    **Required Capability**: ADMINISTRATOR. Administrators cannot manage each
    other, so in practice only a superuser can revoke.
    """
    caller = request.state.member
    target = _target_member(request, server_id, member_id)
    ensure_can_manage(request, caller, target, ModerationAction.MANAGE_ROLES)

    manager = get_manager(request)
    removed = manager.store.revoke_admin(member_id)
    audit_id = manager._log_audit("admin_revoke", server_id, member_id, caller.id, {"removed": removed})
    return GrantChangeResponse(owner_id=member_id, removed=removed, audit_id=audit_id)
