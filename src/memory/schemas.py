from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

_IMAGE_SUFFIX = re.compile(r"\.(png|jpe?g|gif|webp)($|\?)", re.IGNORECASE)

# Platform message types that carry conversation content.
CONTENT_MESSAGE_TYPES = frozenset({"default", "reply"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Attachment(BaseModel):
    id: str
    name: str = "unknown"
    content_type: Optional[str] = None
    url: str = ""

    @property
    def is_image(self) -> bool:
        if self.content_type and self.content_type.startswith("image/"):
            return True
        return bool(_IMAGE_SUFFIX.search(self.url) or _IMAGE_SUFFIX.search(self.name))

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "content_type": self.content_type,
            "url": self.url,
            "is_image": self.is_image,
        }


class MessageEvent(BaseModel):
    """A "message created" notification from the platform layer."""

    source_id: str = Field(description="Platform message ID, used for idempotency.")
    channel_id: str
    guild_id: Optional[str] = Field(default=None, description="Parent scope; None for private conversations.")
    author_id: str
    author_name: str
    author_is_bot: bool = False
    created_at: datetime = Field(default_factory=_utc_now)
    content: str = ""
    message_type: str = "default"
    mentions: list[str] = Field(default_factory=list, description="User IDs mentioned by the message.")
    reply_to_source_id: Optional[str] = None
    attachments: list[Attachment] = Field(default_factory=list)
    edited_at: Optional[datetime] = None

    @field_validator("guild_id")
    @classmethod
    def blank_guild_is_private(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        return value or None


class MessageUpdateEvent(BaseModel):
    source_id: str
    content: str = ""
    edited_at: Optional[datetime] = None


class MessageEditRequest(BaseModel):
    content: str = ""
    edited_at: Optional[datetime] = None


class OutgoingMessage(BaseModel):
    """A reply the system itself sent to the platform."""

    source_id: str
    channel_id: str
    guild_id: Optional[str] = None
    author_id: str
    author_name: str
    content: str
    created_at: datetime = Field(default_factory=_utc_now)
    reply_to_source_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


class OutgoingRequest(BaseModel):
    message: OutgoingMessage
    run_id: Optional[str] = None


class ItemView(BaseModel):
    id: str
    thread_id: str
    created_at: datetime
    type: str
    role: Optional[str] = None
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    source_message_id: Optional[str] = None
    edited_at: Optional[datetime] = None
    is_deleted: bool = False


class IngestResponse(BaseModel):
    accepted: bool
    item: Optional[ItemView] = None


class ThreadView(BaseModel):
    thread_id: str
    state: dict[str, Any] = Field(default_factory=dict)
    summary: Optional[str] = None
    summary_updated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class StateUpdateRequest(BaseModel):
    state: dict[str, Any]


class ContextRequest(BaseModel):
    trigger_source_id: Optional[str] = None
    policy: Optional[dict[str, Any]] = Field(
        default=None,
        description="Per-request policy overrides applied on top of the thread's policy.",
    )


class ContextMessageView(BaseModel):
    message_id: str
    item_id: Optional[str] = None
    author_name: str
    is_bot: bool
    created_at: datetime
    content: str


class ContextPackView(BaseModel):
    thread_id: str
    transcript: str
    messages: list[ContextMessageView] = Field(default_factory=list)
    summary: Optional[str] = None
    trigger_message_id: Optional[str] = None
    reply_target_id: Optional[str] = None
    selected_item_ids: list[str] = Field(default_factory=list)
    message_count: int = 0
    transcript_chars: int = 0
    budget_chars: int = 0
    dropped_lines: int = 0
    token_estimate: int = 0


class CleanupResponse(BaseModel):
    purged: int


class DeleteResponse(BaseModel):
    success: bool


class ReplyRequest(BaseModel):
    trigger_source_id: Optional[str] = None
    policy: Optional[dict[str, Any]] = None


class ReplyResponse(BaseModel):
    generated: bool
    content: Optional[str] = None
    run_id: Optional[str] = None
