"""Conversation memory: thread store, ingestion, context packs, summaries and retention."""

from .context_builder import ContextPackBuilder
from .dependencies import get_memory_services
from .ingestor import MessageIngestor
from .retention import RetentionScheduler
from .store import SQLiteThreadStore
from .summarizer import RollingSummarizer
from .threads import derive_thread_id, parse_thread_id

__all__ = [
    "ContextPackBuilder",
    "MessageIngestor",
    "RetentionScheduler",
    "RollingSummarizer",
    "SQLiteThreadStore",
    "derive_thread_id",
    "get_memory_services",
    "parse_thread_id",
]
