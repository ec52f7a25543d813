"""
Server authorization.

Capability catalog, member/role/grant aggregates, the resolution engine,
effective capability sets, the moderation hierarchy guard, boundary
validation and role templates.
"""

from .capabilities import (
    # Catalog
    Capability,
    Scope,
    Effect,
    ADMINISTRATOR,
    ALL_CAPABILITIES,
    ALL_SCOPES,
    CAPABILITY_GROUPS,
    CAPABILITY_DESCRIPTIONS,
    # Functions
    is_capability,
    is_scope,
    get_capability_description,
    get_capability_group,
    list_capabilities,
)

from .models import (
    LegacyRole,
    SUPERUSER_TAG,
    Reason,
    ModerationAction,
    MODERATION_CAPABILITIES,
    Grant,
    Role,
    Member,
    ResolutionResult,
    CheckRequest,
    CheckOutcome,
)

from .resolve import (
    USER_OVERRIDE_SOURCE,
    resolve,
    resolve_many,
    holds_administrator,
    highest_position,
    ordered_roles,
)

from .effective import (
    effective_capabilities,
    EffectiveCapabilityCache,
)

from .hierarchy import (
    ManageRule,
    can_manage,
    explain_can_manage,
)

from .validation import (
    InvalidPermissionRequest,
    parse_capability,
    parse_scope,
    parse_effect,
    parse_action,
    parse_legacy_role,
    parse_target,
    parse_check_request,
    parse_grant,
)

from .presets import (
    DEFAULT_ROLE_GRANTS,
    RoleTemplate,
    PresetLoader,
)

__all__ = [
    # Catalog
    "Capability",
    "Scope",
    "Effect",
    "ADMINISTRATOR",
    "ALL_CAPABILITIES",
    "ALL_SCOPES",
    "CAPABILITY_GROUPS",
    "CAPABILITY_DESCRIPTIONS",
    "is_capability",
    "is_scope",
    "get_capability_description",
    "get_capability_group",
    "list_capabilities",
    # Models
    "LegacyRole",
    "SUPERUSER_TAG",
    "Reason",
    "ModerationAction",
    "MODERATION_CAPABILITIES",
    "Grant",
    "Role",
    "Member",
    "ResolutionResult",
    "CheckRequest",
    "CheckOutcome",
    # Resolution
    "USER_OVERRIDE_SOURCE",
    "resolve",
    "resolve_many",
    "holds_administrator",
    "highest_position",
    "ordered_roles",
    # Effective sets
    "effective_capabilities",
    "EffectiveCapabilityCache",
    # Hierarchy
    "ManageRule",
    "can_manage",
    "explain_can_manage",
    # Validation
    "InvalidPermissionRequest",
    "parse_capability",
    "parse_scope",
    "parse_effect",
    "parse_action",
    "parse_legacy_role",
    "parse_target",
    "parse_check_request",
    "parse_grant",
    # Presets
    "DEFAULT_ROLE_GRANTS",
    "RoleTemplate",
    "PresetLoader",
]
