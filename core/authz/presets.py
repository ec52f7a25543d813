"""
Role templates.

A new role starts from the default member grants unless the caller picks a
named template. Templates ship with built-in defaults and can be extended or
replaced from a YAML file; a missing or invalid file falls back to the
built-ins rather than failing startup.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .capabilities import Capability, Effect, Scope
from .models import Grant
from .validation import parse_grant

logger = logging.getLogger(__name__)


# ============================================================================
# Defaults
# ============================================================================

DEFAULT_ROLE_CAPABILITIES: Tuple[Capability, ...] = (
    Capability.VIEW_CHANNELS,
    Capability.SEND_MESSAGES,
    Capability.READ_MESSAGE_HISTORY,
    Capability.CONNECT,
    Capability.SPEAK,
    Capability.ADD_REACTIONS,
)

DEFAULT_ROLE_GRANTS: Tuple[Grant, ...] = tuple(
    Grant(capability=capability, effect=Effect.ALLOW, scope=Scope.SERVER)
    for capability in DEFAULT_ROLE_CAPABILITIES
)

DEFAULT_TEMPLATE_KEY = "member"

DEFAULT_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "member": {
        "name": "Member",
        "position": 0,
        "grants": [c.value for c in DEFAULT_ROLE_CAPABILITIES],
    },
    "moderator": {
        "name": "Moderator",
        "position": 10,
        "color": "#3498db",
        "hoist": True,
        "grants": [c.value for c in DEFAULT_ROLE_CAPABILITIES] + [
            "KICK_MEMBERS",
            "TIMEOUT_MEMBERS",
            "MANAGE_MESSAGES",
            "MANAGE_NICKNAMES",
            "MUTE_MEMBERS",
            "MOVE_MEMBERS",
            "VIEW_AUDIT_LOG",
        ],
    },
    "admin": {
        "name": "Admin",
        "position": 100,
        "color": "#e74c3c",
        "hoist": True,
        "grants": ["ADMINISTRATOR"],
    },
}


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class RoleTemplate:
    """Named starting point for a new role."""
    key: str
    name: str
    grants: List[Grant] = field(default_factory=list)
    position: int = 0
    color: Optional[str] = None
    hoist: bool = False
    mentionable: bool = False

    def __post_init__(self):
        if not self.key:
            raise ValueError("template key cannot be empty")
        if not self.name:
            raise ValueError(f"template {self.key} has an empty name")
        if not isinstance(self.position, int) or self.position < 0:
            raise ValueError(f"position must be non-negative integer, got {self.position}")
        keys = [g.key for g in self.grants]
        if len(keys) != len(set(keys)):
            raise ValueError(f"template {self.key} lists a grant more than once")

    @classmethod
    def from_dict(cls, key: str, data: Dict[str, Any]) -> "RoleTemplate":
        """
        Build a template from a mapping.

        Grant entries are either a capability name (ALLOW at SERVER scope) or
        a mapping with capability, effect, scope and target_id.

        Raises:
            ValueError: On a malformed template or grant
        """
        if not isinstance(data, dict):
            raise ValueError(f"template {key} must be a mapping, got {type(data).__name__}")

        grants = []
        for entry in data.get("grants") or []:
            if isinstance(entry, str):
                grants.append(parse_grant(entry, Effect.ALLOW.value))
            elif isinstance(entry, dict):
                grants.append(parse_grant(
                    entry.get("capability"),
                    entry.get("effect", Effect.ALLOW.value),
                    entry.get("scope"),
                    entry.get("target_id"),
                ))
            else:
                raise ValueError(f"template {key} has an unreadable grant entry: {entry!r}")

        return cls(
            key=key,
            name=data.get("name", ""),
            grants=grants,
            position=data.get("position", 0),
            color=data.get("color"),
            hoist=bool(data.get("hoist", False)),
            mentionable=bool(data.get("mentionable", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "position": self.position,
            "color": self.color,
            "hoist": self.hoist,
            "mentionable": self.mentionable,
            "grants": [g.to_dict() for g in self.grants],
        }


def _builtin_templates() -> Dict[str, RoleTemplate]:
    return {key: RoleTemplate.from_dict(key, data) for key, data in DEFAULT_TEMPLATES.items()}


# ============================================================================
# Preset Loader
# ============================================================================

class PresetLoader:
    """
    Loads role templates from YAML on top of the built-in defaults.

    File format::

        templates:
          helper:
            name: Helper
            position: 5
            grants:
              - MANAGE_MESSAGES
              - {capability: SEND_MESSAGES, effect: DENY, scope: CHANNEL, target_id: announcements}
    """

    def __init__(self, path: Optional[str] = None):
        """
        Initialize the loader.

        Args:
            path: YAML file with extra templates; None uses built-ins only
        """
        self.path = Path(path) if path else None
        self._templates: Dict[str, RoleTemplate] = {}
        self._load()

    def _load(self) -> None:
        self._templates = _builtin_templates()

        if self.path is None:
            return

        if not self.path.exists():
            logger.warning(f"Role presets file not found at {self.path}. Using built-in templates.")
            return

        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Failed to parse role presets YAML at {self.path}: {e}. Using built-in templates.")
            return
        except OSError as e:
            logger.error(f"Could not read role presets at {self.path}: {e}. Using built-in templates.")
            return

        templates = data.get("templates") if isinstance(data, dict) else None
        if not isinstance(templates, dict):
            logger.error(
                f"Role presets must be a mapping with a 'templates' key, got {type(data).__name__}. "
                f"Using built-in templates."
            )
            return

        loaded = 0
        for key, entry in templates.items():
            try:
                self._templates[str(key)] = RoleTemplate.from_dict(str(key), entry)
                loaded += 1
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid role template {key!r}: {e}. Skipping.")

        logger.info(f"Loaded {loaded} role templates from {self.path}")

    def get_template(self, key: str) -> Optional[RoleTemplate]:
        return self._templates.get(key)

    def get_default(self) -> RoleTemplate:
        """Template applied when a role is created without one."""
        return self._templates[DEFAULT_TEMPLATE_KEY]

    def list_templates(self) -> List[RoleTemplate]:
        return sorted(self._templates.values(), key=lambda t: (-t.position, t.key))
