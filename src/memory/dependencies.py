from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends
from langchain_core.language_models import BaseChatModel

from src.config.memory import MemorySettings, get_memory_settings

from .cache import ConversationHistory, TTLCache
from .context_builder import ContextPackBuilder
from .ingestor import MessageIngestor
from .responder import ReplyGenerator
from .retention import RetentionScheduler
from .store import SQLiteThreadStore
from .summarizer import RollingSummarizer
from .tasks import BackgroundTaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MemoryServices:
    settings: MemorySettings
    store: Optional[SQLiteThreadStore]
    tasks: BackgroundTaskQueue
    history: ConversationHistory
    summarizer: RollingSummarizer
    ingestor: MessageIngestor
    builder: ContextPackBuilder
    responder: ReplyGenerator
    retention: RetentionScheduler


_MEMORY_SERVICES: Optional[MemoryServices] = None


def build_memory_services(
    settings: MemorySettings,
    store: Optional[SQLiteThreadStore] = None,
    *,
    summary_llm: Optional[Callable[[], BaseChatModel]] = None,
    reply_llm: Optional[Callable[[], BaseChatModel]] = None,
) -> MemoryServices:
    """Wire the memory components around one store (``None`` disables persistence).

    ``summary_llm`` and ``reply_llm`` replace the configured model factories.
    """
    tasks = BackgroundTaskQueue()
    history = ConversationHistory(
        TTLCache(max_size=settings.cache_max_threads, ttl_seconds=settings.cache_ttl_seconds),
        max_turns=settings.cache_max_turns,
    )
    summarizer = RollingSummarizer(store, settings, llm_provider=summary_llm)
    builder = ContextPackBuilder(store, settings)
    return MemoryServices(
        settings=settings,
        store=store,
        tasks=tasks,
        history=history,
        summarizer=summarizer,
        ingestor=MessageIngestor(store, settings, summarizer=summarizer, tasks=tasks, history=history),
        builder=builder,
        responder=ReplyGenerator(store, builder, llm_provider=reply_llm, history=history),
        retention=RetentionScheduler(store, settings),
    )


def initialise_memory_services() -> MemoryServices:
    """Create memory services using configuration."""
    global _MEMORY_SERVICES
    if _MEMORY_SERVICES is not None:
        return _MEMORY_SERVICES

    settings = get_memory_settings()
    store = SQLiteThreadStore(settings.db_path) if settings.storage_enabled else None
    if store is None:
        logger.warning("MEMORY_DB_PATH is empty; conversation memory runs without storage")
    else:
        logger.info("Initialised thread store with DB path %s", store.db_path)
    _MEMORY_SERVICES = build_memory_services(settings, store)
    return _MEMORY_SERVICES


def set_memory_services(services: Optional[MemoryServices]) -> None:
    global _MEMORY_SERVICES
    _MEMORY_SERVICES = services


def get_memory_services(_: MemoryServices = Depends(initialise_memory_services)) -> MemoryServices:
    if _MEMORY_SERVICES is None:
        raise RuntimeError("Memory services have not been initialised")
    return _MEMORY_SERVICES
