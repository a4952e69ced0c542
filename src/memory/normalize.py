"""Normalization boundary between platform syntax and the memory core.

Everything that knows about platform message conventions (mention markup,
attachment shapes, message types) lives here as pure functions. The
ingestor, context builder and summarizer only see normalized values.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Optional

from .models import ContextMessage, ItemRecord, MessageRecord, NewItem
from .schemas import CONTENT_MESSAGE_TYPES, MessageEvent, OutgoingMessage

_USER_MENTION = re.compile(r"<@!?(\d+)>")
_ROLE_MENTION = re.compile(r"<@&(\d+)>")
_CHANNEL_MENTION = re.compile(r"<#(\d+)>")
_URL = re.compile(r"https?://([^/\s]+)\S*")

ELLIPSIS = "..."
IMAGE_ONLY_PLACEHOLDER = "(image only)"
ATTACHMENT_PLACEHOLDER = "(attachment)"
DELETED_PLACEHOLDER = "(message deleted)"
DEFAULT_ASSISTANT_NAME = "Assistant"
DEFAULT_USER_NAME = "User"


def truncate_content(content: str, max_length: int) -> str:
    if len(content) <= max_length:
        return content
    return content[:max_length] + ELLIPSIS


def should_skip_event(event: MessageEvent, max_chars: int) -> bool:
    """Return True for events that must never reach the context."""
    if event.message_type not in CONTENT_MESSAGE_TYPES:
        return True
    if not event.content and not event.attachments:
        return True
    # Oversized pastes are dropped entirely rather than truncated.
    return len(event.content) > max_chars


def event_to_message_record(
    event: MessageEvent, bot_user_id: Optional[str], max_content_chars: int
) -> MessageRecord:
    attachments = [attachment.describe() for attachment in event.attachments]
    return MessageRecord(
        message_id=event.source_id,
        channel_id=event.channel_id,
        guild_id=event.guild_id,
        author_id=event.author_id,
        author_name=event.author_name,
        is_bot=_is_assistant(event.author_id, bot_user_id),
        created_at=event.created_at,
        content=truncate_content(event.content, max_content_chars),
        mentions_bot=bool(bot_user_id) and bot_user_id in event.mentions,
        reply_to_message_id=event.reply_to_source_id,
        has_image=any(attachment["is_image"] for attachment in attachments),
        has_attachments=bool(attachments),
        attachments=attachments,
        edited_at=event.edited_at,
    )


def outgoing_to_message_record(reply: OutgoingMessage, max_content_chars: int) -> MessageRecord:
    return MessageRecord(
        message_id=reply.source_id,
        channel_id=reply.channel_id,
        guild_id=reply.guild_id,
        author_id=reply.author_id,
        author_name=reply.author_name,
        is_bot=True,
        created_at=reply.created_at,
        content=truncate_content(reply.content, max_content_chars),
        mentions_bot=False,
        reply_to_message_id=reply.reply_to_source_id,
        has_image=False,
        has_attachments=False,
        attachments=[],
    )


def record_to_item(record: MessageRecord, **extra_metadata: object) -> NewItem:
    metadata = {
        "channel_id": record.channel_id,
        "guild_id": record.guild_id,
        "attachments": record.attachments,
        "reply_to_message_id": record.reply_to_message_id,
        "mentions_bot": record.mentions_bot,
        "has_image": record.has_image,
        "author_is_bot": record.is_bot,
    }
    metadata.update({key: value for key, value in extra_metadata.items() if value is not None})
    return NewItem(
        type="assistant_message" if record.is_bot else "user_message",
        role="assistant" if record.is_bot else "user",
        author_id=record.author_id,
        author_name=record.author_name,
        content=record.content,
        created_at=record.created_at,
        metadata={key: value for key, value in metadata.items() if value is not None},
        source_message_id=record.message_id,
    )


def item_to_context_message(item: ItemRecord) -> ContextMessage:
    metadata = item.metadata or {}
    is_bot = item.role == "assistant"
    return ContextMessage(
        message_id=item.source_message_id or item.id,
        item_id=item.id,
        author_id=item.author_id or "unknown",
        author_name=item.author_name or (DEFAULT_ASSISTANT_NAME if is_bot else DEFAULT_USER_NAME),
        is_bot=is_bot,
        created_at=item.created_at,
        content=item.content,
        mentions_bot=bool(metadata.get("mentions_bot")),
        reply_to_message_id=metadata.get("reply_to_message_id"),
        has_image=bool(metadata.get("has_image")),
        has_attachments=bool(metadata.get("attachments")),
        is_deleted=item.is_deleted,
    )


def normalize_message(message: ContextMessage, max_chars: int) -> ContextMessage:
    """Collapse platform markup and cap one message's content."""
    if message.is_deleted:
        return replace(message, content=DELETED_PLACEHOLDER)

    content = _USER_MENTION.sub("@user", message.content)
    content = _ROLE_MENTION.sub("@role", content)
    content = _CHANNEL_MENTION.sub("#channel", content)
    content = _URL.sub(lambda match: f"(link: {match.group(1)})", content)

    if not content.strip() and message.has_image:
        content = IMAGE_ONLY_PLACEHOLDER
    elif not content.strip() and message.has_attachments:
        content = ATTACHMENT_PLACEHOLDER

    content = truncate_content(content.strip(), max_chars)
    return replace(message, content=content)


def _is_assistant(author_id: str, bot_user_id: Optional[str]) -> bool:
    return bool(bot_user_id) and author_id == bot_user_id
