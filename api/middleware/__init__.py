"""API middleware modules."""

from .member import (
    MemberContextMiddleware,
    RequestContext,
    DEFAULT_MEMBER_HEADER,
    get_current_member,
)

__all__ = [
    "MemberContextMiddleware",
    "RequestContext",
    "DEFAULT_MEMBER_HEADER",
    "get_current_member",
]
