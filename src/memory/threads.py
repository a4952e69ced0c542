"""Deterministic thread identity for platform conversations.

Thread IDs are a pure function of platform identifiers so that concurrent
callers for the same conversation always converge on the same row:

- scoped (guild) conversations: ``{platform}:{scope_id}:{conversation_id}``
- private (DM) conversations:    ``{platform}:dm:{conversation_id}``
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

DEFAULT_PLATFORM = "discord"
_PRIVATE_SCOPE = "dm"
_SEPARATOR = ":"


@dataclass(frozen=True, slots=True)
class ThreadIdentity:
    platform: str
    conversation_id: str
    scope_id: Optional[str]

    @property
    def is_private(self) -> bool:
        return self.scope_id is None


def _validate_component(name: str, value: str) -> None:
    if not value:
        raise ValueError(f"{name} must not be empty")
    if _SEPARATOR in value:
        raise ValueError(f"{name} must not contain '{_SEPARATOR}': {value!r}")


def derive_thread_id(
    conversation_id: str,
    parent_scope_id: Optional[str] = None,
    platform: str = DEFAULT_PLATFORM,
) -> str:
    _validate_component("platform", platform)
    _validate_component("conversation_id", conversation_id)
    if parent_scope_id is None or parent_scope_id == "":
        return _SEPARATOR.join((platform, _PRIVATE_SCOPE, conversation_id))

    _validate_component("parent_scope_id", parent_scope_id)
    if parent_scope_id == _PRIVATE_SCOPE:
        raise ValueError(f"parent_scope_id {parent_scope_id!r} is reserved for private conversations")
    return _SEPARATOR.join((platform, parent_scope_id, conversation_id))


def parse_thread_id(thread_id: str) -> ThreadIdentity:
    parts = thread_id.split(_SEPARATOR)
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid thread ID format: {thread_id}")
    platform, scope, conversation_id = parts
    if scope == _PRIVATE_SCOPE:
        return ThreadIdentity(platform=platform, conversation_id=conversation_id, scope_id=None)
    return ThreadIdentity(platform=platform, conversation_id=conversation_id, scope_id=scope)
