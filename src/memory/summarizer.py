from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage

from src.config.memory import MemorySettings
from src.llms.llm import get_llm_by_type

from .models import ItemRecord
from .store import SQLiteThreadStore

logger = logging.getLogger(__name__)

SUMMARY_HEADER = "[CONVERSATION HISTORY SUMMARY]"
SUMMARY_FOOTER = "[END SUMMARY - Recent messages follow]"
THREAD_STATE_HEADER = "[THREAD STATE]"

# Thread-state key holding the item count at the last successful fold.
SUMMARIZED_COUNT_KEY = "summarized_item_count"


def _default_llm() -> BaseChatModel:
    return get_llm_by_type("summary")


class RollingSummarizer:
    """Folds the items beyond the verbatim tail into the thread's rolling summary."""

    def __init__(
        self,
        store: Optional[SQLiteThreadStore],
        settings: MemorySettings,
        llm_provider: Optional[Callable[[], BaseChatModel]] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._llm_provider = llm_provider or _default_llm

    async def needs_summarization(self, thread_id: str) -> bool:
        """True once the thread outgrows the verbatim tail and, after the first
        fold, only when ``summary_interval`` new items arrived since the last one.

        A marker above the current count means retention purged items since the
        last fold; it is treated as stale.
        """
        if self._store is None:
            return False
        try:
            thread = await self._store.get_thread(thread_id)
            item_count = await self._store.count_items(thread_id) if thread is not None else 0
        except Exception:  # noqa: BLE001
            logger.exception("Failed to count items for thread %s", thread_id)
            return False
        if thread is None or item_count < self._settings.min_items_for_summary:
            return False
        if item_count <= self._settings.verbatim_items + self._settings.summary_interval:
            return False
        marker = thread.state.get(SUMMARIZED_COUNT_KEY)
        if isinstance(marker, int) and 0 < marker <= item_count:
            return item_count - marker >= self._settings.summary_interval
        return True

    async def summarize_thread(self, thread_id: str) -> bool:
        """Compress overflow items into the summary. Returns True if the summary changed."""
        if self._store is None:
            return False

        try:
            thread = await self._store.get_thread(thread_id)
            items = await self._store.get_items(thread_id) if thread is not None else []
        except Exception:  # noqa: BLE001 - storage errors end this cycle
            logger.exception("Failed to load thread %s for summarization", thread_id)
            return False
        if thread is None:
            logger.warning("Thread %s not found; skipping summarization", thread_id)
            return False

        chronological = list(reversed(items))
        verbatim = self._settings.verbatim_items
        overflow = chronological[:-verbatim] if verbatim else chronological
        if not overflow:
            logger.debug("Thread %s has no overflow beyond the verbatim tail", thread_id)
            return False

        logger.info("Summarizing %s items for thread %s", len(overflow), thread_id)
        prompt = build_summarization_prompt(
            thread.summary,
            overflow,
            max_summary_chars=self._settings.max_summary_chars,
            item_chars=self._settings.summary_item_chars,
        )

        try:
            llm = self._llm_provider()
        except Exception as exc:  # noqa: BLE001 - missing provider means no update this cycle
            logger.warning("LLM unavailable for summarization: %s", exc)
            return False

        try:
            ai_message = await llm.ainvoke([HumanMessage(content=prompt)])
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to generate summary for thread %s: %s", thread_id, exc)
            return False

        summary = message_text(ai_message).strip()
        if not summary:
            logger.warning("Summarizer returned an empty response for thread %s", thread_id)
            return False

        summary = summary[: self._settings.max_summary_chars]
        try:
            await self._store.update_summary(thread_id, summary)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to store summary for thread %s", thread_id)
            return False
        try:
            await self._store.update_state(thread_id, {SUMMARIZED_COUNT_KEY: len(items)})
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record summarization marker for thread %s", thread_id)
        logger.info("Updated summary for thread %s (%s chars)", thread_id, len(summary))
        return True

    async def maybe_summarize(self, thread_id: str) -> None:
        try:
            if await self.needs_summarization(thread_id):
                await self.summarize_thread(thread_id)
        except Exception:  # noqa: BLE001 - summarization is advisory
            logger.exception("Summarization check failed for thread %s", thread_id)


def build_summarization_prompt(
    existing_summary: Optional[str],
    items: Iterable[ItemRecord],
    *,
    max_summary_chars: int,
    item_chars: int,
) -> str:
    sections = [
        "You are summarizing a conversation for continuity. Create a concise summary that captures:\n"
        "- Key topics discussed\n"
        "- Important decisions or conclusions\n"
        "- User preferences or context revealed\n"
        "- Any ongoing threads or unresolved questions\n\n"
        "Keep the summary factual and neutral. Focus on information that would be useful "
        "for continuing the conversation later."
    ]
    if existing_summary:
        sections.append(f"EXISTING SUMMARY (incorporate and update this):\n{existing_summary}")

    lines = []
    for item in items:
        author = item.author_name or item.role or item.type.replace("_message", "")
        timestamp = item.created_at.strftime("%Y-%m-%d %H:%M")
        content = "(deleted)" if item.is_deleted else item.content[:item_chars]
        lines.append(f"[{timestamp}] {author}: {content}")
    sections.append("NEW MESSAGES TO INCORPORATE:\n" + "\n".join(lines))

    sections.append(
        f"Create an updated summary (max {max_summary_chars} characters) that merges the existing "
        "summary with these new messages. Be concise but preserve important context."
    )
    return "\n\n".join(sections)


def format_summary_for_context(summary: Optional[str]) -> str:
    if not summary:
        return ""
    return f"{SUMMARY_HEADER}\n{summary}\n{SUMMARY_FOOTER}\n\n"


def format_thread_state_for_context(state: Optional[dict[str, Any]]) -> str:
    """Render the prompt-relevant thread state variables as a ``[THREAD STATE]`` block."""
    if not state:
        return ""
    lines = []
    if state.get("primary_username"):
        lines.append(f"Primary user: {state['primary_username']}")
    if state.get("is_dm"):
        lines.append("Context: Private DM conversation")
    if state.get("department"):
        lines.append(f"Department: {state['department']}")
    if state.get("locale"):
        lines.append(f"Locale: {state['locale']}")
    if not lines:
        return ""
    return THREAD_STATE_HEADER + "\n" + "\n".join(lines) + "\n\n"


def message_text(message: object) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return str(content)
