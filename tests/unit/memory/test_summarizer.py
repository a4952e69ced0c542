from datetime import datetime, timedelta, timezone

import pytest
from langchain_core.messages import AIMessage

from src.config.memory import MemorySettings
from src.memory.models import ItemRecord, NewItem
from src.memory.store import SQLiteThreadStore
from src.memory.summarizer import (
    RollingSummarizer,
    build_summarization_prompt,
    format_summary_for_context,
    format_thread_state_for_context,
)

THREAD_ID = "discord:g1:c1"


class _RecordingLLM:
    def __init__(self, reply="Updated summary", error=None):
        self.reply = reply
        self.error = error
        self.prompts = []

    async def ainvoke(self, messages):
        self.prompts.append(messages[-1].content)
        if self.error is not None:
            raise self.error
        return AIMessage(content=self.reply)


async def _store_with_items(tmp_path, count):
    store = SQLiteThreadStore(str(tmp_path / "summaries.db"))
    await store.init()
    await store.get_or_create_thread(THREAD_ID)
    base = datetime.now(timezone.utc) - timedelta(hours=1)
    for index in range(count):
        await store.add_item(
            THREAD_ID,
            NewItem(
                type="user_message",
                role="user",
                author_name="alice",
                content=f"msg-{index:03d}",
                created_at=base + timedelta(seconds=index),
                source_message_id=f"m{index}",
            ),
        )
    return store


@pytest.mark.asyncio
async def test_below_threshold_never_calls_the_model(tmp_path):
    store = await _store_with_items(tmp_path, 40)
    llm = _RecordingLLM()
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: llm)

    # 40 items meets the minimum but is within verbatim tail + interval.
    assert await summarizer.needs_summarization(THREAD_ID) is False
    await summarizer.maybe_summarize(THREAD_ID)

    assert llm.prompts == []
    assert await store.get_thread_summary(THREAD_ID) is None


@pytest.mark.asyncio
async def test_fold_covers_everything_but_the_verbatim_tail(tmp_path):
    store = await _store_with_items(tmp_path, 45)
    llm = _RecordingLLM(reply="  They greeted each other.  ")
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: llm)

    assert await summarizer.needs_summarization(THREAD_ID) is True
    assert await summarizer.summarize_thread(THREAD_ID) is True

    prompt = llm.prompts[0]
    folded = [f"msg-{index:03d}" for index in range(45) if f"msg-{index:03d}" in prompt]
    assert folded == [f"msg-{index:03d}" for index in range(15)]
    assert await store.get_thread_summary(THREAD_ID) == "They greeted each other."


@pytest.mark.asyncio
async def test_existing_summary_is_fed_back_and_capped(tmp_path):
    store = await _store_with_items(tmp_path, 45)
    await store.update_summary(THREAD_ID, "Earlier: cats.")
    llm = _RecordingLLM(reply="z" * 3000)
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: llm)

    assert await summarizer.summarize_thread(THREAD_ID) is True

    assert "EXISTING SUMMARY (incorporate and update this):\nEarlier: cats." in llm.prompts[0]
    assert await store.get_thread_summary(THREAD_ID) == "z" * 2000


@pytest.mark.asyncio
async def test_model_failure_keeps_prior_summary(tmp_path):
    store = await _store_with_items(tmp_path, 45)
    await store.update_summary(THREAD_ID, "S")
    llm = _RecordingLLM(error=RuntimeError("timeout"))
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: llm)

    assert await summarizer.summarize_thread(THREAD_ID) is False
    await summarizer.maybe_summarize(THREAD_ID)

    assert await store.get_thread_summary(THREAD_ID) == "S"


@pytest.mark.asyncio
async def test_empty_response_is_not_stored(tmp_path):
    store = await _store_with_items(tmp_path, 45)
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: _RecordingLLM(reply="   "))

    assert await summarizer.summarize_thread(THREAD_ID) is False
    assert await store.get_thread_summary(THREAD_ID) is None


@pytest.mark.asyncio
async def test_missing_provider_returns_false(tmp_path):
    store = await _store_with_items(tmp_path, 45)

    def _no_provider():
        raise ValueError("No language model provider configured")

    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=_no_provider)

    assert await summarizer.summarize_thread(THREAD_ID) is False
    assert await summarizer.summarize_thread("discord:g1:missing") is False
    assert await RollingSummarizer(None, MemorySettings()).summarize_thread(THREAD_ID) is False


def test_prompt_marks_deleted_items():
    record = ItemRecord(
        id="i1",
        thread_id=THREAD_ID,
        created_at=datetime(2025, 1, 1, 12, 30, tzinfo=timezone.utc),
        type="user_message",
        role="user",
        author_id="u2",
        author_name="bob",
        content="",
        metadata={},
        source_message_id="m1",
        is_deleted=True,
    )

    prompt = build_summarization_prompt(None, [record], max_summary_chars=2000, item_chars=500)

    assert "[2025-01-01 12:30] bob: (deleted)" in prompt
    assert "EXISTING SUMMARY" not in prompt
    assert "(max 2000 characters)" in prompt


def test_format_summary_for_context():
    assert format_summary_for_context(None) == ""
    assert format_summary_for_context("S") == (
        "[CONVERSATION HISTORY SUMMARY]\nS\n[END SUMMARY - Recent messages follow]\n\n"
    )


@pytest.mark.asyncio
async def test_next_fold_waits_for_a_full_interval_of_new_items(tmp_path):
    store = await _store_with_items(tmp_path, 41)
    llm = _RecordingLLM()
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: llm)
    base = datetime.now(timezone.utc) - timedelta(minutes=30)

    await summarizer.maybe_summarize(THREAD_ID)
    assert len(llm.prompts) == 1
    assert (await store.get_thread(THREAD_ID)).state["summarized_item_count"] == 41

    for index in range(41, 60):
        await store.add_item(
            THREAD_ID,
            NewItem(
                type="user_message",
                role="user",
                author_name="alice",
                content=f"msg-{index:03d}",
                created_at=base + timedelta(seconds=index),
                source_message_id=f"m{index}",
            ),
        )
        await summarizer.maybe_summarize(THREAD_ID)
        # 41 + 10 new items triggers exactly one more fold.
        expected = 2 if index >= 50 else 1
        assert len(llm.prompts) == expected, index

    assert (await store.get_thread(THREAD_ID)).state["summarized_item_count"] == 51


@pytest.mark.asyncio
async def test_marker_above_item_count_is_treated_as_stale(tmp_path):
    store = await _store_with_items(tmp_path, 45)
    await store.update_state(THREAD_ID, {"summarized_item_count": 80})
    summarizer = RollingSummarizer(store, MemorySettings(), llm_provider=lambda: _RecordingLLM())

    assert await summarizer.needs_summarization(THREAD_ID) is True

    await store.update_state(THREAD_ID, {"summarized_item_count": 40})
    assert await summarizer.needs_summarization(THREAD_ID) is False


def test_format_thread_state_for_context():
    assert format_thread_state_for_context(None) == ""
    assert format_thread_state_for_context({"primary_user_id": "u1", "is_dm": False}) == ""
    assert format_thread_state_for_context(
        {"primary_username": "alice", "is_dm": True, "locale": "fr-FR", "guild_id": None}
    ) == "[THREAD STATE]\nPrimary user: alice\nContext: Private DM conversation\nLocale: fr-FR\n\n"
