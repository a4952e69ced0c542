"""Tunables for conversation memory: retention, summarization and context building."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from .loader import get_int_env, get_optional_str_env, get_str_env


@dataclass(frozen=True, slots=True)
class MemorySettings:
    db_path: str = "thread_memory.db"
    bot_user_id: Optional[str] = None

    # Context building
    candidate_window: int = 50
    max_item_chars: int = 300

    # Ingestion
    max_ingest_chars: int = 4000
    stored_content_chars: int = 500
    max_channel_messages: int = 100

    # Rolling summarization
    verbatim_items: int = 30
    min_items_for_summary: int = 40
    summary_interval: int = 10
    max_summary_chars: int = 2000
    summary_item_chars: int = 500

    # Retention
    message_ttl_hours: int = 4
    item_ttl_hours: int = 4
    run_ttl_hours: int = 24
    cleanup_interval_seconds: int = 3600
    cleanup_initial_delay_seconds: int = 10

    # Short-term fallback cache
    cache_max_threads: int = 256
    cache_max_turns: int = 20
    cache_ttl_seconds: int = 30 * 60

    @property
    def storage_enabled(self) -> bool:
        return bool(self.db_path)

    @classmethod
    def from_env(cls) -> "MemorySettings":
        defaults = cls()
        return cls(
            db_path=get_str_env("MEMORY_DB_PATH", defaults.db_path),
            bot_user_id=get_optional_str_env("MEMORY_BOT_USER_ID"),
            candidate_window=get_int_env("MEMORY_CANDIDATE_WINDOW", defaults.candidate_window),
            max_item_chars=get_int_env("MEMORY_MAX_ITEM_CHARS", defaults.max_item_chars),
            max_channel_messages=get_int_env("MEMORY_MAX_CHANNEL_MESSAGES", defaults.max_channel_messages),
            verbatim_items=get_int_env("MEMORY_VERBATIM_ITEMS", defaults.verbatim_items),
            min_items_for_summary=get_int_env(
                "MEMORY_MIN_ITEMS_FOR_SUMMARY", defaults.min_items_for_summary
            ),
            summary_interval=get_int_env("MEMORY_SUMMARY_INTERVAL", defaults.summary_interval),
            max_summary_chars=get_int_env("MEMORY_MAX_SUMMARY_CHARS", defaults.max_summary_chars),
            message_ttl_hours=get_int_env("MEMORY_MESSAGE_TTL_HOURS", defaults.message_ttl_hours),
            item_ttl_hours=get_int_env("MEMORY_ITEM_TTL_HOURS", defaults.item_ttl_hours),
            run_ttl_hours=get_int_env("MEMORY_RUN_TTL_HOURS", defaults.run_ttl_hours),
            cleanup_interval_seconds=get_int_env(
                "MEMORY_CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval_seconds
            ),
        )


@lru_cache(maxsize=1)
def get_memory_settings() -> MemorySettings:
    return MemorySettings.from_env()
