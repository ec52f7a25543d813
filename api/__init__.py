"""API module."""

from .guards import require, authorize, require_caller, ensure_can_manage

__all__ = [
    "require",
    "authorize",
    "require_caller",
    "ensure_can_manage",
]
