from datetime import datetime, timedelta, timezone

import pytest

from src.config.memory import MemorySettings
from src.memory.models import NewItem
from src.memory.retention import RetentionScheduler
from src.memory.store import SQLiteThreadStore


class _FlakyStore(SQLiteThreadStore):
    async def purge_old_messages(self, ttl_hours):
        raise RuntimeError("database is locked")


async def _seed(store: SQLiteThreadStore) -> None:
    await store.init()
    await store.get_or_create_thread("discord:dm:c1")
    await store.update_summary("discord:dm:c1", "S")
    now = datetime.now(timezone.utc)
    for source_id, age in (("m1", 1), ("m5", 5), ("m10", 10)):
        await store.add_item(
            "discord:dm:c1",
            NewItem(
                type="user_message",
                content=source_id,
                created_at=now - timedelta(hours=age),
                source_message_id=source_id,
            ),
        )


@pytest.mark.asyncio
async def test_run_cleanup_purges_expired_rows(tmp_path):
    store = SQLiteThreadStore(str(tmp_path / "retention.db"))
    await _seed(store)
    scheduler = RetentionScheduler(store, MemorySettings())

    counts = await scheduler.run_cleanup()

    assert counts == {"messages": 0, "items": 2, "runs": 0}
    assert await store.count_items("discord:dm:c1") == 1
    assert await store.get_thread_summary("discord:dm:c1") == "S"
    assert await scheduler.run_cleanup_now() == 0


@pytest.mark.asyncio
async def test_failing_purge_does_not_stop_the_others(tmp_path):
    store = _FlakyStore(str(tmp_path / "retention.db"))
    await _seed(store)

    counts = await RetentionScheduler(store, MemorySettings()).run_cleanup()

    assert counts["messages"] == 0
    assert counts["items"] == 2


@pytest.mark.asyncio
async def test_without_storage_cleanup_is_a_no_op():
    scheduler = RetentionScheduler(None, MemorySettings(db_path=""))

    assert await scheduler.run_cleanup_now() == 0
    scheduler.start()
    assert scheduler.running is False


@pytest.mark.asyncio
async def test_start_and_stop_background_job(tmp_path):
    store = SQLiteThreadStore(str(tmp_path / "retention.db"))
    await store.init()
    scheduler = RetentionScheduler(store, MemorySettings(cleanup_initial_delay_seconds=60))

    scheduler.start()
    scheduler.start()
    assert scheduler.running is True

    await scheduler.stop()
    assert scheduler.running is False
