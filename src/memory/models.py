from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal, Optional

ItemType = Literal["user_message", "assistant_message", "tool_call", "tool_result", "system_event"]
ItemRole = Literal["user", "assistant", "system"]
RunStatus = Literal["started", "succeeded", "failed"]

ITEM_TYPES: tuple[str, ...] = (
    "user_message",
    "assistant_message",
    "tool_call",
    "tool_result",
    "system_event",
)
MESSAGE_ITEM_TYPES: tuple[str, ...] = ("user_message", "assistant_message")


@dataclass(slots=True)
class ThreadRecord:
    thread_id: str
    state: dict[str, Any]
    summary: Optional[str]
    summary_updated_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ItemRecord:
    id: str
    thread_id: str
    created_at: datetime
    type: str
    role: Optional[str]
    author_id: Optional[str]
    author_name: Optional[str]
    content: str
    metadata: dict[str, Any]
    source_message_id: Optional[str]
    edited_at: Optional[datetime] = None
    is_deleted: bool = False


@dataclass(slots=True)
class NewItem:
    """An item ready to be written, before the store assigns it an ID."""

    type: str
    content: str
    created_at: datetime
    role: Optional[str] = None
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source_message_id: Optional[str] = None


@dataclass(slots=True)
class MessageRecord:
    """Row of the short-lived flat ``recent_messages`` table."""

    message_id: str
    channel_id: str
    guild_id: Optional[str]
    author_id: str
    author_name: str
    is_bot: bool
    created_at: datetime
    content: str
    mentions_bot: bool
    reply_to_message_id: Optional[str]
    has_image: bool
    has_attachments: bool
    attachments: list[dict[str, Any]]
    is_deleted: bool = False
    edited_at: Optional[datetime] = None
    ingested_at: Optional[datetime] = None


@dataclass(slots=True)
class RunRecord:
    run_id: str
    thread_id: str
    trigger_item_id: Optional[str]
    status: str
    provider: Optional[str]
    model: Optional[str]
    request_payload: Optional[Any]
    response_payload: Optional[Any]
    error: Optional[str]
    selected_item_ids: Optional[list[str]]
    token_estimate: Optional[int]
    created_at: datetime
    completed_at: Optional[datetime]


@dataclass(frozen=True, slots=True)
class ContextPolicy:
    recent_messages: int = 15
    max_age_hours: int = 4
    use_summary: bool = True
    max_transcript_chars: int = 8000
    include_extra_context: bool = True

    def with_overrides(self, overrides: dict[str, Any]) -> ContextPolicy:
        known = {key: value for key, value in overrides.items() if key in self.__dataclass_fields__}
        return replace(self, **known)


DEFAULT_CONTEXT_POLICY = ContextPolicy()


@dataclass(slots=True)
class ContextMessage:
    message_id: str
    item_id: Optional[str]
    author_id: str
    author_name: str
    is_bot: bool
    created_at: datetime
    content: str
    mentions_bot: bool = False
    reply_to_message_id: Optional[str] = None
    has_image: bool = False
    has_attachments: bool = False
    is_deleted: bool = False


@dataclass(slots=True)
class LastExchange:
    user_message: ContextMessage
    bot_reply: ContextMessage


@dataclass(slots=True)
class ContextPack:
    thread_id: str
    transcript: str = ""
    messages: list[ContextMessage] = field(default_factory=list)
    summary: Optional[str] = None
    trigger_message: Optional[ContextMessage] = None
    reply_target: Optional[ContextMessage] = None
    last_exchange: Optional[LastExchange] = None
    selected_item_ids: list[str] = field(default_factory=list)
    budget_chars: int = 0
    dropped_lines: int = 0
    include_extra_context: bool = False

    @classmethod
    def empty(cls, thread_id: str) -> ContextPack:
        return cls(thread_id=thread_id)

    @property
    def is_empty(self) -> bool:
        return not self.messages and not self.summary

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def transcript_chars(self) -> int:
        return len(self.transcript)

    @property
    def token_estimate(self) -> int:
        # Rough heuristic: ~4 characters per token.
        return -(-len(self.transcript) // 4)
