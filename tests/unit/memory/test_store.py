import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.memory.models import NewItem
from src.memory.store import SQLiteThreadStore


async def _store(tmp_path) -> SQLiteThreadStore:
    store = SQLiteThreadStore(str(tmp_path / "thread_store.db"))
    await store.init()
    return store


def _item(source_id, *, created_at=None, content="hello", item_type="user_message"):
    return NewItem(
        type=item_type,
        role="assistant" if item_type == "assistant_message" else "user",
        author_id="u1",
        author_name="alice",
        content=content,
        created_at=created_at or datetime.now(timezone.utc),
        source_message_id=source_id,
    )


@pytest.mark.asyncio
async def test_get_or_create_thread_upserts_once(tmp_path):
    store = await _store(tmp_path)

    first = await store.get_or_create_thread("discord:g1:c1", {"primary_user_id": "u1"})
    second = await store.get_or_create_thread("discord:g1:c1", {"primary_user_id": "u2"})

    assert first.thread_id == second.thread_id
    assert second.created_at == first.created_at
    assert second.updated_at >= first.updated_at
    assert second.state == {"primary_user_id": "u1"}
    assert await store.get_thread("discord:g1:missing") is None


@pytest.mark.asyncio
async def test_concurrent_get_or_create_converges_on_one_thread(tmp_path):
    store = await _store(tmp_path)

    threads = await asyncio.gather(*(store.get_or_create_thread("discord:dm:c1") for _ in range(8)))

    assert {thread.created_at for thread in threads} == {threads[0].created_at}


@pytest.mark.asyncio
async def test_update_state_merges_shallowly(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1", {"a": 1, "nested": {"x": 1}})

    updated = await store.update_state("discord:dm:c1", {"b": 2, "nested": {"y": 2}})

    assert updated is not None
    assert updated.state == {"a": 1, "b": 2, "nested": {"y": 2}}
    assert await store.update_state("discord:dm:missing", {"a": 1}) is None


@pytest.mark.asyncio
async def test_concurrent_state_updates_are_not_lost(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")

    await asyncio.gather(*(store.update_state("discord:dm:c1", {f"key{i}": i}) for i in range(10)))

    thread = await store.get_thread("discord:dm:c1")
    assert thread.state == {f"key{i}": i for i in range(10)}


@pytest.mark.asyncio
async def test_update_summary(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")
    assert await store.get_thread_summary("discord:dm:c1") is None

    await store.update_summary("discord:dm:c1", "They talked about cats.")

    thread = await store.get_thread("discord:dm:c1")
    assert thread.summary == "They talked about cats."
    assert thread.summary_updated_at is not None


@pytest.mark.asyncio
async def test_add_item_is_idempotent_on_source_id(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")

    first = await store.add_item("discord:dm:c1", _item("m1"))
    second = await store.add_item("discord:dm:c1", _item("m1", content="different"))

    assert first.id == second.id
    assert second.content == "hello"
    assert await store.count_items("discord:dm:c1") == 1


@pytest.mark.asyncio
async def test_get_items_returns_newest_first_with_filters(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")
    base = datetime.now(timezone.utc) - timedelta(hours=2)
    for index in range(5):
        await store.add_item("discord:dm:c1", _item(f"m{index}", created_at=base + timedelta(minutes=index)))
    await store.add_item(
        "discord:dm:c1",
        NewItem(type="system_event", content="joined", created_at=base + timedelta(minutes=10)),
    )

    items = await store.get_items("discord:dm:c1")
    assert [item.source_message_id for item in items] == [None, "m4", "m3", "m2", "m1", "m0"]

    messages = await store.get_items("discord:dm:c1", limit=2, types=["user_message"])
    assert [item.source_message_id for item in messages] == ["m4", "m3"]

    recent = await store.get_items("discord:dm:c1", since=base + timedelta(minutes=3), types=["user_message"])
    assert [item.source_message_id for item in recent] == ["m4", "m3"]


@pytest.mark.asyncio
async def test_edit_and_tombstone_item(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")
    await store.add_item("discord:dm:c1", _item("m1"))

    assert await store.update_item_content("m1", "edited") is True
    edited = await store.get_item_by_source("m1")
    assert edited.content == "edited"
    assert edited.edited_at is not None

    assert await store.tombstone_item("m1") is True
    deleted = await store.get_item_by_source("m1")
    assert deleted.is_deleted is True
    assert deleted.content == ""
    assert await store.tombstone_item("unknown") is False


@pytest.mark.asyncio
async def test_run_leaves_started_exactly_once(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")
    item = await store.add_item("discord:dm:c1", _item("m1"))

    run_id = await store.start_run(
        "discord:dm:c1",
        trigger_item_id=item.id,
        trigger_source_id="m1",
        provider="openai",
        model="gpt",
        selected_item_ids=[item.id],
        token_estimate=12,
    )
    started = await store.get_run(run_id)
    assert started.status == "started"
    assert await store.has_processed_trigger("m1") is False

    assert await store.complete_run(run_id, {"content": "hi"}) is True
    assert await store.complete_run(run_id, {"content": "again"}) is False
    assert await store.fail_run(run_id, "late failure") is False

    run = await store.get_run(run_id)
    assert run.status == "succeeded"
    assert run.response_payload == {"content": "hi"}
    assert run.selected_item_ids == [item.id]
    assert run.completed_at is not None
    assert await store.has_processed_trigger("m1") is True


@pytest.mark.asyncio
async def test_failed_run_does_not_count_as_processed(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")

    run_id = await store.start_run("discord:dm:c1", trigger_source_id="m1")
    assert await store.fail_run(run_id, "boom") is True
    assert await store.complete_run(run_id) is False

    run = await store.get_run(run_id)
    assert run.status == "failed"
    assert run.error == "boom"
    assert await store.has_processed_trigger("m1") is False


@pytest.mark.asyncio
async def test_purge_old_items_keeps_thread_and_summary(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")
    await store.update_summary("discord:dm:c1", "S")
    now = datetime.now(timezone.utc)
    for source_id, age in (("m1", 1), ("m5", 5), ("m10", 10)):
        await store.add_item("discord:dm:c1", _item(source_id, created_at=now - timedelta(hours=age)))

    assert await store.purge_old_items(4) == 2

    remaining = await store.get_items("discord:dm:c1")
    assert [item.source_message_id for item in remaining] == ["m1"]
    thread = await store.get_thread("discord:dm:c1")
    assert thread is not None
    assert thread.summary == "S"


@pytest.mark.asyncio
async def test_purging_trigger_item_keeps_run_history(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")
    old = await store.add_item(
        "discord:dm:c1", _item("m1", created_at=datetime.now(timezone.utc) - timedelta(hours=6))
    )
    run_id = await store.start_run("discord:dm:c1", trigger_item_id=old.id, trigger_source_id="m1")
    await store.complete_run(run_id)

    await store.purge_old_items(4)

    run = await store.get_run(run_id)
    assert run.trigger_item_id is None
    assert await store.has_processed_trigger("m1") is True
    assert await store.purge_old_runs(24) == 0


@pytest.mark.asyncio
async def test_insert_item_reports_whether_a_row_was_written(tmp_path):
    store = await _store(tmp_path)
    await store.get_or_create_thread("discord:dm:c1")

    first, created = await store.insert_item("discord:dm:c1", _item("m1"))
    again, created_again = await store.insert_item("discord:dm:c1", _item("m1", content="different"))

    assert created is True
    assert created_again is False
    assert again.id == first.id
