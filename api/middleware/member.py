"""
FastAPI middleware for caller identification.

The upstream identity layer authenticates the caller and forwards its member
id in a header. This middleware only copies that id onto the request state;
deciding what the member may do is left to the guards.
"""

import logging
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

DEFAULT_MEMBER_HEADER = "X-Member-Id"


# ============================================================================
# Request State Extensions
# ============================================================================

class RequestContext:
    """
    Request context for the calling member.

    Attached to request.state by the MemberContextMiddleware.
    """

    def __init__(self, member_id: Optional[str]):
        self.member_id: Optional[str] = member_id or None
        self.is_identified: bool = self.member_id is not None

    def __repr__(self) -> str:
        return f"RequestContext(member_id={self.member_id})"


# ============================================================================
# Middleware
# ============================================================================

class MemberContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware to attach the caller's member id to request.state.ctx.

    Requests without the header get an unidentified context; guarded routes
    refuse them.
    """

    def __init__(self, app: ASGIApp, header_name: str = DEFAULT_MEMBER_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        member_id = request.headers.get(self.header_name)
        if member_id is not None:
            member_id = member_id.strip()

        request.state.ctx = RequestContext(member_id)

        logger.debug(
            f"Caller for {request.method} {request.url.path}: member_id={request.state.ctx.member_id}"
        )

        return await call_next(request)


# ============================================================================
# Helper Functions
# ============================================================================

def get_current_member(request: Request) -> RequestContext:
    """
    Get current caller context from request.

    Args:
        request: FastAPI request object

    Returns:
        RequestContext with the caller's member id

    Raises:
        AttributeError: If middleware has not been applied
    """
    if not hasattr(request.state, "ctx"):
        raise AttributeError(
            "Request state does not have 'ctx' attribute. "
            "Ensure MemberContextMiddleware is configured."
        )

    return request.state.ctx
