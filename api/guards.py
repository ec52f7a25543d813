"""
API endpoint guards for capability-based authorization.

Provides the @require decorator for server-scoped FastAPI routes and the
helpers routes use to load the caller, check extra capabilities inline and
apply the moderation hierarchy.
"""

import inspect
import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional
from fastapi import Request, HTTPException, status

from adapters.grant_store import GrantStore
from api.middleware.member import RequestContext, get_current_member
from core.authz import (
    Capability,
    EffectiveCapabilityCache,
    Member,
    ModerationAction,
    Reason,
    ResolutionResult,
    Scope,
    explain_can_manage,
    parse_target,
    resolve,
)
from core.metrics import audit_authz_denial, record_authz_check, record_moderation_check

logger = logging.getLogger(__name__)


# ============================================================================
# Application State Accessors
# ============================================================================

def get_store(request: Request) -> GrantStore:
    return request.app.state.store


def get_cache(request: Request) -> Optional[EffectiveCapabilityCache]:
    """Effective-set cache, or None when caching is disabled."""
    return getattr(request.app.state, "cache", None)


def get_settings(request: Request) -> Dict[str, Any]:
    return getattr(request.app.state, "cfg", {})


def _context(request: Request) -> RequestContext:
    try:
        return get_current_member(request)
    except AttributeError:
        logger.error("Request context not available. Is MemberContextMiddleware configured?")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error: Member context not available"
        )


# ============================================================================
# Caller Loading and Inline Checks
# ============================================================================

def load_member_in_server(request: Request, server_id: str, member_id: Optional[str]) -> Optional[Member]:
    """
    Load a member snapshot, or None if it does not exist in this server.
    """
    if not member_id:
        return None
    member = get_store(request).load_member(member_id)
    if member is None or member.server_id != server_id:
        return None
    return member


def _deny(
    request: Request,
    server_id: str,
    member_id: Optional[str],
    capability: Capability,
    scope: Scope,
    target_id: Optional[str],
    result: ResolutionResult,
) -> HTTPException:
    if get_settings(request).get("AUTHZ_AUDIT_DENIALS", True):
        audit_authz_denial(
            capability=capability.value,
            member_id=member_id,
            server_id=server_id,
            reason=result.reason.value,
            source=result.source,
            scope=scope.value,
            target_id=target_id,
            route=str(request.url.path),
            method=request.method,
        )

    logger.warning(
        f"Access denied: member_id={member_id} server_id={server_id} "
        f"capability={capability.value} reason={result.reason.value} source={result.source}"
    )
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "forbidden",
            "capability": capability.value,
            "reason": result.reason.value,
            "source": result.source,
            "message": f"Capability '{capability.value}' required",
        }
    )


def require_caller(request: Request, server_id: str) -> Member:
    """
    Load the calling member for a server.

    Raises:
        HTTPException: 401 if the caller is unidentified, 403 if the caller
            is not a member of the server
    """
    ctx = _context(request)
    if not ctx.is_identified:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unidentified", "message": "Caller member id required"}
        )

    member = load_member_in_server(request, server_id, ctx.member_id)
    if member is None:
        logger.warning(f"Member {ctx.member_id} is not part of server {server_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "not_a_member",
                "reason": Reason.DEFAULT_DENY.value,
                "message": f"Not a member of server {server_id}",
            }
        )

    request.state.member = member
    return member


def authorize(
    request: Request,
    server_id: str,
    capability: Capability,
    scope: Scope = Scope.SERVER,
    target_id: Optional[str] = None,
) -> Member:
    """
    Require the caller to hold a capability in a server.

    A caller that cannot be loaded for the server is treated as a default
    deny. Every decision is counted; denials are audited.

    Returns:
        The caller's member snapshot

    Raises:
        HTTPException: 401 for an unidentified caller, 403 on denial
    """
    ctx = _context(request)
    if not ctx.is_identified:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unidentified", "message": "Caller member id required"}
        )

    member = load_member_in_server(request, server_id, ctx.member_id)
    if member is None:
        result = ResolutionResult(granted=False, reason=Reason.DEFAULT_DENY)
    else:
        result = resolve(member, capability, scope, target_id)

    record_authz_check(
        granted=result.granted,
        capability=capability.value,
        reason=result.reason.value,
        route=str(request.url.path),
    )

    if not result.granted:
        raise _deny(request, server_id, ctx.member_id, capability, scope, target_id, result)

    logger.debug(
        f"Access granted: member_id={member.id} capability={capability.value} "
        f"reason={result.reason.value} source={result.source}"
    )
    request.state.member = member
    return member


def ensure_can_manage(
    request: Request,
    actor: Member,
    target: Member,
    action: ModerationAction,
) -> None:
    """
    Apply the hierarchy guard to a moderation request.

    Raises:
        HTTPException: 403 naming the rule that refused the action
    """
    allowed, rule = explain_can_manage(actor, target, action)
    record_moderation_check(action.value, allowed, rule.value)

    if not allowed:
        logger.warning(
            f"Hierarchy denied: actor={actor.id} target={target.id} "
            f"action={action.value} rule={rule.value}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "hierarchy",
                "action": action.value,
                "rule": rule.value,
                "message": f"Cannot {action.value} member {target.id}",
            }
        )


# ============================================================================
# Guard Decorator
# ============================================================================

def require(
    capability: Capability,
    scope: Scope = Scope.SERVER,
    target_param: Optional[str] = None,
) -> Callable:
    """
    Decorator to require a capability for a server-scoped FastAPI route.

    The route must take `request: Request` and a `server_id` path
    parameter. The caller's snapshot is stored on request.state.member for
    the handler.

    Args:
        capability: Capability the caller must hold
        scope: Scope the capability is checked in
        target_param: Name of the route parameter holding the category or
            channel id, for CATEGORY and CHANNEL scopes

    Returns:
        Decorator function

    Raises:
        HTTPException: 401/403 if the caller lacks the capability

    Examples:
        >>> @router.post("/servers/{server_id}/channels/{channel_id}/messages")
        >>> @require(Capability.SEND_MESSAGES, Scope.CHANNEL, target_param="channel_id")
        >>> async def post_message(request: Request, server_id: str, channel_id: str):
        >>>     ...
    """
    def _check(args: tuple, kwargs: dict) -> None:
        request = _extract_request_from_args(args, kwargs)

        if request is None:
            logger.error(f"@require({capability.value}) decorator requires Request parameter")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Internal server error: Request not found"
            )

        server_id = kwargs.get("server_id")
        if server_id is None:
            logger.error(f"@require({capability.value}) decorator requires a server_id parameter")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Internal server error: server_id not found"
            )

        target_id = parse_target(scope, kwargs.get(target_param)) if target_param else None
        authorize(request, server_id, capability, scope, target_id)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            _check(args, kwargs)
            return await func(*args, **kwargs)

        @wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            _check(args, kwargs)
            return func(*args, **kwargs)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


# ============================================================================
# Helper Functions
# ============================================================================

def _extract_request_from_args(args: tuple, kwargs: dict) -> Optional[Request]:
    """
    Extract Request object from function arguments.

    Returns:
        Request object if found, None otherwise
    """
    if 'request' in kwargs:
        return kwargs['request']

    for arg in args:
        if isinstance(arg, Request):
            return arg

    return None
