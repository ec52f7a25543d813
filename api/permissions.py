"""
Permission query endpoints.

Lets members ask "may I", "what can I do here" and "may I moderate them",
and lets role managers ask the same about other members. Every answer
carries the resolver's reason and source so the UI can explain a denial.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field, validator

from api.guards import (
    authorize,
    get_cache,
    load_member_in_server,
    require_caller,
)
from core.authz import (
    Capability,
    CheckOutcome,
    CheckRequest,
    Member,
    ModerationAction,
    Reason,
    ResolutionResult,
    effective_capabilities,
    explain_can_manage,
    holds_administrator,
    is_capability,
    is_scope,
    list_capabilities,
    parse_action,
    parse_check_request,
    parse_scope,
    parse_target,
    resolve_many,
)
from core.metrics import record_authz_check, record_moderation_check, time_operation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/servers/{server_id}", tags=["permissions"])

catalog_router = APIRouter(prefix="/permissions", tags=["permissions"])

MAX_BATCH_CHECKS = 100


# ============================================================================
# Request/Response Models
# ============================================================================

class CheckItem(BaseModel):
    """One capability check."""
    capability: str = Field(..., description="Capability name, e.g. MANAGE_MESSAGES")
    scope: Optional[str] = Field(None, description="SERVER, CATEGORY or CHANNEL (default SERVER)")
    target_id: Optional[str] = Field(None, description="Category or channel id for narrower scopes")

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


class CheckRequestBody(CheckItem):
    """Single check, for the caller or (with MANAGE_ROLES) another member."""
    member_id: Optional[str] = Field(None, description="Member to check; defaults to the caller")


class BatchCheckRequestBody(BaseModel):
    member_id: Optional[str] = Field(None, description="Member to check; defaults to the caller")
    checks: List[CheckItem]

    @validator('checks')
    def validate_checks(cls, v):
        if not v:
            raise ValueError("checks must not be empty")
        if len(v) > MAX_BATCH_CHECKS:
            raise ValueError(f"at most {MAX_BATCH_CHECKS} checks per batch")
        return v


class CheckResponse(BaseModel):
    member_id: str
    capability: str
    scope: str
    target_id: Optional[str] = None
    granted: bool
    reason: str
    source: Optional[str] = None


class BatchCheckResponse(BaseModel):
    member_id: str
    results: List[CheckResponse]


class EffectivePermissionsResponse(BaseModel):
    member_id: str
    scope: str
    target_id: Optional[str] = None
    superuser: bool
    administrator: bool
    capabilities: List[str]


class ManageableResponse(BaseModel):
    actor_id: str
    target_id: str
    action: str
    allowed: bool
    rule: str


# ============================================================================
# Helpers
# ============================================================================

def _subject(request: Request, server_id: str, caller: Member, member_id: Optional[str]) -> Optional[Member]:
    """
    Resolve which member a query is about.

    Querying anyone but yourself needs MANAGE_ROLES. Returns None when the
    member does not exist in the server.
    """
    if not member_id or member_id == caller.id:
        return caller
    authorize(request, server_id, Capability.MANAGE_ROLES)
    return load_member_in_server(request, server_id, member_id)


def _outcomes(subject: Optional[Member], checks: List[CheckRequest]) -> List[CheckOutcome]:
    if subject is None:
        # Unknown member: nothing to resolve
        denied = ResolutionResult(granted=False, reason=Reason.DEFAULT_DENY)
        return [CheckOutcome(request=check, result=denied) for check in checks]
    return resolve_many(subject, checks)


def _check_response(member_id: str, outcome: CheckOutcome) -> CheckResponse:
    check, result = outcome.request, outcome.result
    record_authz_check(result.granted, check.capability.value, result.reason.value)

    return CheckResponse(
        member_id=member_id,
        capability=check.capability.value,
        scope=check.scope.value,
        target_id=check.target_id,
        granted=result.granted,
        reason=result.reason.value,
        source=result.source,
    )


def _parse_check(item: CheckItem) -> CheckRequest:
    return parse_check_request(item.capability, item.scope, item.target_id)


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/permissions/check", response_model=CheckResponse)
def check_permission(request: Request, server_id: str, body: CheckRequestBody):
    """
    Resolve one capability.

    **Example**:
    ```
    POST /servers/s1/permissions/check
    {"capability": "SEND_MESSAGES", "scope": "CHANNEL", "target_id": "general"}
    ```
    """
    caller = require_caller(request, server_id)
    subject = _subject(request, server_id, caller, body.member_id)
    outcome = _outcomes(subject, [_parse_check(body)])[0]
    return _check_response(body.member_id or caller.id, outcome)


@router.post("/permissions/check/batch", response_model=BatchCheckResponse)
def check_permissions_batch(request: Request, server_id: str, body: BatchCheckRequestBody):
    """Resolve several capabilities for one member, in request order."""
    caller = require_caller(request, server_id)
    subject = _subject(request, server_id, caller, body.member_id)
    member_id = body.member_id or caller.id
    checks = [_parse_check(item) for item in body.checks]

    with time_operation("authz.batch_check"):
        outcomes = _outcomes(subject, checks)

    return BatchCheckResponse(
        member_id=member_id,
        results=[_check_response(member_id, outcome) for outcome in outcomes],
    )


@router.get("/members/{member_id}/permissions", response_model=EffectivePermissionsResponse)
def get_effective_permissions(
    request: Request,
    server_id: str,
    member_id: str,
    scope: Optional[str] = None,
    target_id: Optional[str] = None,
):
    """
    List every capability a member holds in a scope.

    Viewing another member's permissions requires MANAGE_ROLES.
    """
    caller = require_caller(request, server_id)
    parsed_scope = parse_scope(scope)
    parsed_target = parse_target(parsed_scope, target_id)

    subject = _subject(request, server_id, caller, member_id)
    if subject is None:
        return EffectivePermissionsResponse(
            member_id=member_id,
            scope=parsed_scope.value,
            target_id=parsed_target,
            superuser=False,
            administrator=False,
            capabilities=[],
        )

    cache = get_cache(request)
    if cache is not None:
        capabilities = cache.get_or_compute(subject, parsed_scope, parsed_target)
    else:
        capabilities = effective_capabilities(subject, parsed_scope, parsed_target)

    return EffectivePermissionsResponse(
        member_id=subject.id,
        scope=parsed_scope.value,
        target_id=parsed_target,
        superuser=subject.is_superuser,
        administrator=holds_administrator(subject),
        # Catalog order
        capabilities=[c.value for c in Capability if c in capabilities],
    )


@router.get("/members/{member_id}/manageable", response_model=ManageableResponse)
def get_manageable(request: Request, server_id: str, member_id: str, action: str):
    """
    Whether the caller may perform a moderation action on a member.

    **Example**:
    ```
    GET /servers/s1/members/m2/manageable?action=KICK
    ```
    """
    caller = require_caller(request, server_id)
    parsed_action: ModerationAction = parse_action(action)

    target = load_member_in_server(request, server_id, member_id)
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "member_not_found", "message": f"Member {member_id} not found"}
        )

    allowed, rule = explain_can_manage(caller, target, parsed_action)
    record_moderation_check(parsed_action.value, allowed, rule.value)

    return ManageableResponse(
        actor_id=caller.id,
        target_id=target.id,
        action=parsed_action.value,
        allowed=allowed,
        rule=rule.value,
    )


@catalog_router.get("/catalog")
def get_catalog():
    """Every capability with its group and description."""
    return {"capabilities": list_capabilities()}
