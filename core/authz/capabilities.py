"""
Capability catalog.

Defines the closed set of capability kinds a grant can name, the scopes a
grant can be narrowed to, and the grant effects. ADMINISTRATOR is the one
capability the resolver treats specially: holding it at server scope grants
every other capability.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# Capability, Scope and Effect Enumerations
# ============================================================================

class Capability(str, Enum):
    """Permission kinds a member can be granted inside a server."""

    # Server management
    ADMINISTRATOR = "ADMINISTRATOR"
    MANAGE_SERVER = "MANAGE_SERVER"
    MANAGE_ROLES = "MANAGE_ROLES"
    MANAGE_CHANNELS = "MANAGE_CHANNELS"
    VIEW_AUDIT_LOG = "VIEW_AUDIT_LOG"
    VIEW_GUILD_INSIGHTS = "VIEW_GUILD_INSIGHTS"
    MANAGE_WEBHOOKS = "MANAGE_WEBHOOKS"
    MANAGE_EMOJIS = "MANAGE_EMOJIS"
    MANAGE_GUILD = "MANAGE_GUILD"

    # Member management
    KICK_MEMBERS = "KICK_MEMBERS"
    BAN_MEMBERS = "BAN_MEMBERS"
    TIMEOUT_MEMBERS = "TIMEOUT_MEMBERS"
    MANAGE_NICKNAMES = "MANAGE_NICKNAMES"
    CHANGE_NICKNAME = "CHANGE_NICKNAME"

    # Text
    VIEW_CHANNELS = "VIEW_CHANNELS"
    SEND_MESSAGES = "SEND_MESSAGES"
    SEND_TTS_MESSAGES = "SEND_TTS_MESSAGES"
    MANAGE_MESSAGES = "MANAGE_MESSAGES"
    EMBED_LINKS = "EMBED_LINKS"
    ATTACH_FILES = "ATTACH_FILES"
    READ_MESSAGE_HISTORY = "READ_MESSAGE_HISTORY"
    MENTION_EVERYONE = "MENTION_EVERYONE"
    USE_EXTERNAL_EMOJIS = "USE_EXTERNAL_EMOJIS"
    ADD_REACTIONS = "ADD_REACTIONS"

    # Voice
    CONNECT = "CONNECT"
    SPEAK = "SPEAK"
    MUTE_MEMBERS = "MUTE_MEMBERS"
    DEAFEN_MEMBERS = "DEAFEN_MEMBERS"
    MOVE_MEMBERS = "MOVE_MEMBERS"
    USE_VAD = "USE_VAD"
    PRIORITY_SPEAKER = "PRIORITY_SPEAKER"

    # Stage
    REQUEST_TO_SPEAK = "REQUEST_TO_SPEAK"
    MANAGE_STAGE = "MANAGE_STAGE"

    # Advanced
    CREATE_INSTANT_INVITE = "CREATE_INSTANT_INVITE"
    USE_SLASH_COMMANDS = "USE_SLASH_COMMANDS"
    USE_APPLICATION_COMMANDS = "USE_APPLICATION_COMMANDS"
    SEND_MESSAGES_IN_THREADS = "SEND_MESSAGES_IN_THREADS"
    CREATE_PUBLIC_THREADS = "CREATE_PUBLIC_THREADS"
    CREATE_PRIVATE_THREADS = "CREATE_PRIVATE_THREADS"
    MANAGE_THREADS = "MANAGE_THREADS"
    USE_EXTERNAL_STICKERS = "USE_EXTERNAL_STICKERS"
    SEND_VOICE_MESSAGES = "SEND_VOICE_MESSAGES"


class Scope(str, Enum):
    """Breadth a grant applies to."""
    SERVER = "SERVER"
    CATEGORY = "CATEGORY"
    CHANNEL = "CHANNEL"


class Effect(str, Enum):
    """Whether a grant permits or forbids its capability."""
    ALLOW = "ALLOW"
    DENY = "DENY"


ADMINISTRATOR = Capability.ADMINISTRATOR
"""Grants every capability when held at server scope."""

# Complete catalog, in declaration order
ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)

ALL_SCOPES: FrozenSet[Scope] = frozenset(Scope)


# ============================================================================
# Groups and Descriptions
# ============================================================================

CAPABILITY_GROUPS: Dict[str, List[Capability]] = {
    "SERVER_MANAGEMENT": [
        Capability.ADMINISTRATOR,
        Capability.MANAGE_SERVER,
        Capability.MANAGE_ROLES,
        Capability.MANAGE_CHANNELS,
        Capability.VIEW_AUDIT_LOG,
        Capability.VIEW_GUILD_INSIGHTS,
        Capability.MANAGE_WEBHOOKS,
        Capability.MANAGE_EMOJIS,
        Capability.MANAGE_GUILD,
    ],
    "MEMBER_MANAGEMENT": [
        Capability.KICK_MEMBERS,
        Capability.BAN_MEMBERS,
        Capability.TIMEOUT_MEMBERS,
        Capability.MANAGE_NICKNAMES,
        Capability.CHANGE_NICKNAME,
    ],
    "TEXT": [
        Capability.VIEW_CHANNELS,
        Capability.SEND_MESSAGES,
        Capability.SEND_TTS_MESSAGES,
        Capability.MANAGE_MESSAGES,
        Capability.EMBED_LINKS,
        Capability.ATTACH_FILES,
        Capability.READ_MESSAGE_HISTORY,
        Capability.MENTION_EVERYONE,
        Capability.USE_EXTERNAL_EMOJIS,
        Capability.ADD_REACTIONS,
    ],
    "VOICE": [
        Capability.CONNECT,
        Capability.SPEAK,
        Capability.MUTE_MEMBERS,
        Capability.DEAFEN_MEMBERS,
        Capability.MOVE_MEMBERS,
        Capability.USE_VAD,
        Capability.PRIORITY_SPEAKER,
    ],
    "STAGE": [
        Capability.REQUEST_TO_SPEAK,
        Capability.MANAGE_STAGE,
    ],
    "ADVANCED": [
        Capability.CREATE_INSTANT_INVITE,
        Capability.USE_SLASH_COMMANDS,
        Capability.USE_APPLICATION_COMMANDS,
        Capability.SEND_MESSAGES_IN_THREADS,
        Capability.CREATE_PUBLIC_THREADS,
        Capability.CREATE_PRIVATE_THREADS,
        Capability.MANAGE_THREADS,
        Capability.USE_EXTERNAL_STICKERS,
        Capability.SEND_VOICE_MESSAGES,
    ],
}

CAPABILITY_DESCRIPTIONS: Dict[Capability, str] = {
    Capability.ADMINISTRATOR: "Grants all permissions, including the ability to manage all aspects of the server",
    Capability.MANAGE_SERVER: "Allows management of server settings",
    Capability.MANAGE_ROLES: "Allows creation, editing, and deletion of roles",
    Capability.MANAGE_CHANNELS: "Allows creation, editing, and deletion of channels",
    Capability.VIEW_AUDIT_LOG: "Allows viewing of the server audit log",
    Capability.VIEW_GUILD_INSIGHTS: "Allows access to server insights",
    Capability.MANAGE_WEBHOOKS: "Allows creation and management of webhooks",
    Capability.MANAGE_EMOJIS: "Allows management of custom emojis and stickers",
    Capability.MANAGE_GUILD: "Allows management of general server settings",

    Capability.KICK_MEMBERS: "Allows kicking members from the server",
    Capability.BAN_MEMBERS: "Allows banning members from the server",
    Capability.TIMEOUT_MEMBERS: "Allows putting members in timeout",
    Capability.MANAGE_NICKNAMES: "Allows changing other members' nicknames",
    Capability.CHANGE_NICKNAME: "Allows changing own nickname",

    Capability.VIEW_CHANNELS: "Allows viewing of channels",
    Capability.SEND_MESSAGES: "Allows sending messages in text channels",
    Capability.SEND_TTS_MESSAGES: "Allows sending text-to-speech messages",
    Capability.MANAGE_MESSAGES: "Allows deleting and editing messages from other users",
    Capability.EMBED_LINKS: "Allows links to embed automatically",
    Capability.ATTACH_FILES: "Allows uploading images and files",
    Capability.READ_MESSAGE_HISTORY: "Allows reading previous messages",
    Capability.MENTION_EVERYONE: "Allows mentioning @everyone and @here",
    Capability.USE_EXTERNAL_EMOJIS: "Allows using emojis from other servers",
    Capability.ADD_REACTIONS: "Allows adding new reactions to messages",

    Capability.CONNECT: "Allows connecting to voice channels",
    Capability.SPEAK: "Allows speaking in voice channels",
    Capability.MUTE_MEMBERS: "Allows muting members in voice channels",
    Capability.DEAFEN_MEMBERS: "Allows deafening members in voice channels",
    Capability.MOVE_MEMBERS: "Allows moving members between voice channels",
    Capability.USE_VAD: "Allows using voice activity detection",
    Capability.PRIORITY_SPEAKER: "Allows priority speaker in voice channels",

    Capability.REQUEST_TO_SPEAK: "Allows requesting to speak in stage channels",
    Capability.MANAGE_STAGE: "Allows managing stage channels",

    Capability.CREATE_INSTANT_INVITE: "Allows creating instant invites",
    Capability.USE_SLASH_COMMANDS: "Allows using slash commands",
    Capability.USE_APPLICATION_COMMANDS: "Allows using application commands",
    Capability.SEND_MESSAGES_IN_THREADS: "Allows sending messages in threads",
    Capability.CREATE_PUBLIC_THREADS: "Allows creating public threads",
    Capability.CREATE_PRIVATE_THREADS: "Allows creating private threads",
    Capability.MANAGE_THREADS: "Allows managing threads",
    Capability.USE_EXTERNAL_STICKERS: "Allows using stickers from other servers",
    Capability.SEND_VOICE_MESSAGES: "Allows sending voice messages",
}


# ============================================================================
# Lookup Functions
# ============================================================================

def is_capability(name: Optional[str]) -> bool:
    """
    Check if a name belongs to the capability catalog.

    Args:
        name: Capability name (exact, upper case)

    Returns:
        True if the name is a catalog member, False otherwise

    Examples:
        >>> is_capability("MANAGE_ROLES")
        True
        >>> is_capability("manage_roles")
        False
        >>> is_capability("")
        False
    """
    if not name:
        return False
    return name in Capability._value2member_map_


def is_scope(name: Optional[str]) -> bool:
    """Check if a name is one of the scope kinds."""
    if not name:
        return False
    return name in Scope._value2member_map_


def get_capability_description(capability: Capability) -> str:
    """
    Get the human-readable description of a capability.

    Args:
        capability: Catalog member

    Returns:
        Description text, or empty string if none is registered
    """
    return CAPABILITY_DESCRIPTIONS.get(capability, "")


def get_capability_group(capability: Capability) -> Optional[str]:
    """Return the name of the group a capability is listed under."""
    for group, members in CAPABILITY_GROUPS.items():
        if capability in members:
            return group
    logger.warning(f"Capability {capability.value} is not listed in any group")
    return None


def list_capabilities() -> List[Dict[str, str]]:
    """
    List the whole catalog with group and description, for UI disclosure.

    Returns:
        One dictionary per capability, in declaration order
    """
    return [
        {
            "capability": capability.value,
            "group": get_capability_group(capability) or "",
            "description": get_capability_description(capability),
        }
        for capability in Capability
    ]
