from __future__ import annotations

import logging
from typing import Optional

from src.config.memory import MemorySettings

from .cache import ConversationHistory
from .models import ItemRecord
from .normalize import (
    event_to_message_record,
    outgoing_to_message_record,
    record_to_item,
    should_skip_event,
    truncate_content,
)
from .schemas import MessageEvent, MessageUpdateEvent, OutgoingMessage
from .store import SQLiteThreadStore
from .summarizer import RollingSummarizer
from .tasks import BackgroundTaskQueue
from .threads import derive_thread_id

logger = logging.getLogger(__name__)


class MessageIngestor:
    """Writes platform message events into the flat message table and the thread item log.

    Ingestion is idempotent on the platform message ID. After each accepted
    write a summarization check is queued on the background task queue; its
    outcome never reaches the ingestion caller.
    """

    def __init__(
        self,
        store: Optional[SQLiteThreadStore],
        settings: MemorySettings,
        summarizer: Optional[RollingSummarizer] = None,
        tasks: Optional[BackgroundTaskQueue] = None,
        history: Optional[ConversationHistory] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._summarizer = summarizer
        self._tasks = tasks
        self._history = history

    async def ingest_create(self, event: MessageEvent, bot_user_id: Optional[str]) -> Optional[ItemRecord]:
        if self._store is None:
            logger.debug("Storage not configured; skipping ingestion of %s", event.source_id)
            return None
        if should_skip_event(event, self._settings.max_ingest_chars):
            logger.debug("Skipping message %s (type=%s)", event.source_id, event.message_type)
            return None

        record = event_to_message_record(event, bot_user_id, self._settings.stored_content_chars)
        try:
            thread_id = derive_thread_id(event.channel_id, event.guild_id)
            await self._store.get_or_create_thread(
                thread_id,
                {
                    "primary_user_id": record.author_id,
                    "primary_username": record.author_name,
                    "guild_id": record.guild_id,
                    "is_dm": record.guild_id is None,
                },
            )
            await self._store.upsert_recent_message(record)
            item, created = await self._store.insert_item(thread_id, record_to_item(record))
        except Exception:  # noqa: BLE001 - ingestion failures must not break message handling
            logger.exception("Failed to ingest message %s", event.source_id)
            return None

        if not created:
            logger.debug("Message %s already ingested", event.source_id)
            return item

        try:
            await self._store.cap_channel_messages(record.channel_id, self._settings.max_channel_messages)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to cap recent messages for channel %s", record.channel_id)

        if self._history is not None:
            self._history.remember(thread_id, item.role or "user", item.content)
        self._schedule_summarization(thread_id)
        return item

    async def ingest_update(self, event: MessageUpdateEvent) -> bool:
        """Rewrite content and edited timestamp only; ordering and type are untouched."""
        if self._store is None:
            return False
        content = truncate_content(event.content, self._settings.stored_content_chars)
        try:
            updated_message = await self._store.update_recent_message(event.source_id, content, event.edited_at)
            updated_item = await self._store.update_item_content(event.source_id, content, event.edited_at)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to update message %s", event.source_id)
            return False
        return updated_message or updated_item

    async def ingest_delete(self, source_id: str) -> bool:
        """Tombstone a message: content blanked, row kept for reply chains."""
        if self._store is None:
            return False
        try:
            deleted_message = await self._store.tombstone_recent_message(source_id)
            deleted_item = await self._store.tombstone_item(source_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to mark message %s deleted", source_id)
            return False
        return deleted_message or deleted_item

    async def ingest_outgoing(self, reply: OutgoingMessage, run_id: Optional[str] = None) -> Optional[ItemRecord]:
        """Record the system's own reply so later context packs see the full exchange."""
        if self._store is None:
            return None

        record = outgoing_to_message_record(reply, self._settings.stored_content_chars)
        try:
            thread_id = derive_thread_id(reply.channel_id, reply.guild_id)
            await self._store.get_or_create_thread(
                thread_id, {"guild_id": record.guild_id, "is_dm": record.guild_id is None}
            )
            await self._store.upsert_recent_message(record)
            item, created = await self._store.insert_item(
                thread_id,
                record_to_item(record, run_id=run_id, provider=reply.provider, model=reply.model),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to ingest outgoing message %s", reply.source_id)
            return None

        if not created:
            return item

        if self._history is not None:
            self._history.remember(thread_id, "assistant", item.content)
        self._schedule_summarization(thread_id)
        return item

    def _schedule_summarization(self, thread_id: str) -> None:
        if self._summarizer is None or self._tasks is None:
            return
        name = f"summarize:{thread_id}"
        if self._tasks.is_pending(name):
            logger.debug("Summarization already pending for thread %s", thread_id)
            return
        summarizer = self._summarizer
        self._tasks.submit(name, lambda: summarizer.maybe_summarize(thread_id))
