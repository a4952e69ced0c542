"""Context pack assembly.

A context pack is built in five steps:

A. fetch a bounded candidate window of recent items (newest first),
B. normalize each candidate's content,
C. select a bounded set by priority: trigger, its reply target, the last
   exchange with the assistant, then recency,
D. order the selection chronologically and render one line per message,
   with the thread summary prepended when the policy allows,
E. drop whole lines from the oldest end until the transcript fits the budget.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Sequence

from src.config.memory import MemorySettings

from .models import (
    DEFAULT_CONTEXT_POLICY,
    MESSAGE_ITEM_TYPES,
    ContextMessage,
    ContextPack,
    ContextPolicy,
    ItemRecord,
    LastExchange,
)
from .normalize import item_to_context_message, normalize_message
from .store import SQLiteThreadStore, utc_now
from .summarizer import format_summary_for_context

logger = logging.getLogger(__name__)


class ContextPackBuilder:
    def __init__(self, store: Optional[SQLiteThreadStore], settings: MemorySettings) -> None:
        self._store = store
        self._settings = settings

    async def build_context_pack(
        self,
        thread_id: str,
        trigger_source_id: Optional[str] = None,
        policy: ContextPolicy = DEFAULT_CONTEXT_POLICY,
    ) -> Optional[ContextPack]:
        """Build a pack for ``thread_id``.

        Returns ``None`` when storage fails, so callers degrade to "no memory",
        and an empty pack when the thread has neither items nor a summary.
        """
        if self._store is None:
            return ContextPack.empty(thread_id)

        try:
            thread = await self._store.get_or_create_thread(thread_id)
            items = await self._store.get_items(
                thread_id,
                limit=self._settings.candidate_window,
                types=MESSAGE_ITEM_TYPES,
                since=utc_now() - timedelta(hours=policy.max_age_hours),
            )
            trigger_item = await self._find_item(thread_id, items, trigger_source_id)
            reply_to = (trigger_item.metadata or {}).get("reply_to_message_id") if trigger_item else None
            reply_item = await self._find_item(thread_id, items, reply_to)
        except Exception:  # noqa: BLE001 - context assembly failures degrade to no memory
            logger.exception("Failed to fetch context for thread %s", thread_id)
            return None

        if not items and not thread.summary and trigger_item is None:
            return ContextPack.empty(thread_id)

        max_chars = self._settings.max_item_chars
        candidates = [normalize_message(item_to_context_message(item), max_chars) for item in items]
        by_id = {message.message_id: message for message in candidates}
        trigger = _resolve(by_id, trigger_item, max_chars)
        reply_target = _resolve(by_id, reply_item, max_chars)
        last_exchange = find_last_exchange(candidates, trigger)

        selected = select_messages(
            candidates,
            trigger=trigger,
            reply_target=reply_target,
            last_exchange=last_exchange,
            target_count=policy.recent_messages,
        )
        ordered = order_by_time(selected)

        summary = thread.summary if policy.use_summary else None
        summary_block = format_summary_for_context(summary)
        lines = [format_line(message) for message in ordered]
        kept_lines, dropped = apply_length_budget(summary_block, lines, policy.max_transcript_chars)
        retained = ordered[dropped:]

        if dropped:
            logger.debug("Dropped %s transcript lines for thread %s to fit budget", dropped, thread_id)

        return ContextPack(
            thread_id=thread_id,
            transcript=summary_block + "\n".join(kept_lines),
            messages=retained,
            summary=summary,
            trigger_message=trigger,
            reply_target=reply_target,
            last_exchange=last_exchange,
            selected_item_ids=[message.item_id for message in retained if message.item_id],
            budget_chars=policy.max_transcript_chars,
            dropped_lines=dropped,
            include_extra_context=policy.include_extra_context,
        )

    async def _find_item(
        self, thread_id: str, candidates: Sequence[ItemRecord], source_id: Optional[str]
    ) -> Optional[ItemRecord]:
        """Locate an item by platform ID, looking outside the candidate window if needed."""
        if not source_id:
            return None
        for item in candidates:
            if item.source_message_id == source_id or item.id == source_id:
                return item
        item = await self._store.get_item_by_source(source_id)
        # Purged between fetches, or belongs to another conversation.
        if item is None or item.thread_id != thread_id:
            return None
        return item


def _resolve(
    by_id: dict[str, ContextMessage], item: Optional[ItemRecord], max_chars: int
) -> Optional[ContextMessage]:
    if item is None:
        return None
    message_id = item.source_message_id or item.id
    if message_id in by_id:
        return by_id[message_id]
    return normalize_message(item_to_context_message(item), max_chars)


def find_last_exchange(
    candidates: Sequence[ContextMessage], trigger: Optional[ContextMessage]
) -> Optional[LastExchange]:
    """Most recent user message addressing the assistant, paired with the assistant's reply.

    ``candidates`` are newest first. The reply is the assistant message that
    explicitly replies to the mention, or else the first assistant message
    after it.
    """
    trigger_id = trigger.message_id if trigger else None
    for index, message in enumerate(candidates):
        if message.mentions_bot and not message.is_bot and not message.is_deleted and message.message_id != trigger_id:
            mention, newer = message, candidates[:index]
            break
    else:
        return None

    replies = [m for m in reversed(newer) if m.is_bot and not m.is_deleted]
    if not replies:
        return None
    reply = next((m for m in replies if m.reply_to_message_id == mention.message_id), replies[0])
    return LastExchange(user_message=mention, bot_reply=reply)


def select_messages(
    candidates: Sequence[ContextMessage],
    *,
    trigger: Optional[ContextMessage],
    reply_target: Optional[ContextMessage],
    last_exchange: Optional[LastExchange],
    target_count: int,
) -> list[ContextMessage]:
    """Priority-ordered set build; an earlier rule's pick is never duplicated."""
    selected: dict[str, ContextMessage] = {}

    def add(message: Optional[ContextMessage]) -> None:
        if message is not None and message.message_id not in selected:
            selected[message.message_id] = message

    add(trigger)
    add(reply_target)
    if last_exchange is not None:
        add(last_exchange.user_message)
        add(last_exchange.bot_reply)

    for message in candidates:
        if len(selected) >= target_count:
            break
        if not message.is_deleted:
            add(message)

    return list(selected.values())


def order_by_time(messages: Sequence[ContextMessage]) -> list[ContextMessage]:
    return sorted(messages, key=lambda message: message.created_at)


def format_line(message: ContextMessage) -> str:
    indicators = []
    if message.mentions_bot:
        indicators.append("(mentions bot)")
    if message.reply_to_message_id:
        indicators.append("(reply)")
    if message.has_image:
        indicators.append("(image)")
    if message.has_attachments and not message.has_image:
        indicators.append("(attachment)")
    if message.is_bot:
        indicators.append("(bot)")

    indicator_str = f" {' '.join(indicators)}" if indicators else ""
    return f"[{message.created_at.strftime('%H:%M')}] {message.author_name}{indicator_str}: {message.content}"


def apply_length_budget(prefix: str, lines: Sequence[str], max_chars: int) -> tuple[list[str], int]:
    """Drop whole lines from the oldest end until ``prefix`` plus the lines fit.

    The prefix (summary block) is always kept. Returns the kept lines and the
    number dropped.
    """
    kept = list(lines)
    dropped = 0
    total = len(prefix) + len("\n".join(kept))
    while kept and total > max_chars:
        removed = kept.pop(0)
        dropped += 1
        # One separator goes with each removed line, except the last one standing.
        total -= len(removed) + (1 if kept else 0)
    return kept, dropped
