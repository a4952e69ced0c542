from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence
from uuid import uuid4

from .models import ITEM_TYPES, ItemRecord, MessageRecord, NewItem, RunRecord, ThreadRecord

logger = logging.getLogger(__name__)


_THREADS_DDL = """
CREATE TABLE IF NOT EXISTS threads (
    thread_id TEXT PRIMARY KEY,
    state TEXT NOT NULL DEFAULT '{}',
    summary TEXT,
    summary_updated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_ITEMS_DDL = f"""
CREATE TABLE IF NOT EXISTS thread_items (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    type TEXT NOT NULL,
    role TEXT,
    author_id TEXT,
    author_name TEXT,
    content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{{}}',
    source_message_id TEXT,
    edited_at TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(thread_id) REFERENCES threads(thread_id) ON DELETE CASCADE,
    CHECK (type IN ({", ".join(f"'{item_type}'" for item_type in ITEM_TYPES)}))
);
"""

_RUNS_DDL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    trigger_item_id TEXT,
    trigger_source_id TEXT,
    status TEXT NOT NULL DEFAULT 'started',
    provider TEXT,
    model TEXT,
    request_payload TEXT,
    response_payload TEXT,
    error TEXT,
    selected_item_ids TEXT,
    token_estimate INTEGER,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY(thread_id) REFERENCES threads(thread_id) ON DELETE CASCADE,
    FOREIGN KEY(trigger_item_id) REFERENCES thread_items(id) ON DELETE SET NULL,
    CHECK (status IN ('started', 'succeeded', 'failed'))
);
"""

_RECENT_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS recent_messages (
    message_id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    guild_id TEXT,
    author_id TEXT NOT NULL,
    author_name TEXT NOT NULL,
    is_bot INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    ingested_at TEXT NOT NULL,
    content TEXT NOT NULL,
    mentions_bot INTEGER NOT NULL DEFAULT 0,
    reply_to_message_id TEXT,
    has_image INTEGER NOT NULL DEFAULT 0,
    has_attachments INTEGER NOT NULL DEFAULT 0,
    attachments TEXT NOT NULL DEFAULT '[]',
    is_deleted INTEGER NOT NULL DEFAULT 0,
    edited_at TEXT
);
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_thread_items_thread_time ON thread_items(thread_id, created_at DESC);",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_thread_items_source ON thread_items(source_message_id)"
    " WHERE source_message_id IS NOT NULL;",
    "CREATE INDEX IF NOT EXISTS idx_thread_items_created ON thread_items(created_at);",
    "CREATE INDEX IF NOT EXISTS idx_runs_thread ON runs(thread_id, created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_runs_trigger ON runs(trigger_source_id, status);",
    "CREATE INDEX IF NOT EXISTS idx_recent_messages_channel ON recent_messages(channel_id, created_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_recent_messages_ingested ON recent_messages(ingested_at);",
]

_THREAD_COLUMNS = "thread_id, state, summary, summary_updated_at, created_at, updated_at"
_ITEM_COLUMNS = (
    "id, thread_id, created_at, type, role, author_id, author_name, content, metadata,"
    " source_message_id, edited_at, is_deleted"
)
_RUN_COLUMNS = (
    "run_id, thread_id, trigger_item_id, status, provider, model, request_payload, response_payload,"
    " error, selected_item_ids, token_estimate, created_at, completed_at"
)
_MESSAGE_COLUMNS = (
    "message_id, channel_id, guild_id, author_id, author_name, is_bot, created_at, ingested_at, content,"
    " mentions_bot, reply_to_message_id, has_image, has_attachments, attachments, is_deleted, edited_at"
)

# SQLite waits this long on a locked database before raising.
_BUSY_TIMEOUT_SECONDS = 30.0


def _ensure_pragmas(connection: sqlite3.Connection) -> None:
    connection.execute("PRAGMA foreign_keys = ON;")
    connection.execute("PRAGMA journal_mode = WAL;")


class SQLiteThreadStore:
    """SQLite-backed repository for threads, thread items, runs and recent messages.

    Correctness under concurrent writers relies on SQLite's own primitives
    (``ON CONFLICT`` upserts, unique indexes, immediate transactions) rather
    than on an in-process lock, so several processes may share one database.
    """

    def __init__(self, db_path: str) -> None:
        path = Path(db_path)
        if not path.is_absolute():
            path = Path.cwd() / path
        if path.suffix != ".db":
            path = path.with_suffix(".db")
        self._db_path = str(path)

    @property
    def db_path(self) -> str:
        return self._db_path

    async def init(self) -> None:
        """Initialise database schema."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        def _init() -> None:
            with closing(self._connect()) as connection, connection:
                connection.execute(_THREADS_DDL)
                connection.execute(_ITEMS_DDL)
                connection.execute(_RUNS_DDL)
                connection.execute(_RECENT_MESSAGES_DDL)
                for statement in _CREATE_INDEXES:
                    connection.execute(statement)

        await asyncio.to_thread(_init)
        logger.info("Thread memory database initialised at %s", self._db_path)

    async def close(self) -> None:  # pragma: no cover - compatibility placeholder
        return None

    # ------------------------------------------------------------------ threads

    async def get_or_create_thread(
        self, thread_id: str, initial_state: Optional[dict[str, Any]] = None
    ) -> ThreadRecord:
        now = _utc_now_str()
        state_json = json.dumps(initial_state or {})

        def _upsert() -> sqlite3.Row:
            with closing(self._connect()) as connection, connection:
                connection.execute(
                    "INSERT INTO threads (thread_id, state, created_at, updated_at) VALUES (?, ?, ?, ?)"
                    " ON CONFLICT(thread_id) DO UPDATE SET updated_at = excluded.updated_at",
                    (thread_id, state_json, now, now),
                )
                return connection.execute(
                    f"SELECT {_THREAD_COLUMNS} FROM threads WHERE thread_id = ?", (thread_id,)
                ).fetchone()

        row = await asyncio.to_thread(_upsert)
        return self._row_to_thread(row)

    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_THREAD_COLUMNS} FROM threads WHERE thread_id = ?",
            (thread_id,),
        )
        return self._row_to_thread(row) if row else None

    async def get_thread_summary(self, thread_id: str) -> Optional[str]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT summary FROM threads WHERE thread_id = ?", (thread_id,)
        )
        return row["summary"] if row else None

    async def update_state(self, thread_id: str, partial_state: dict[str, Any]) -> Optional[ThreadRecord]:
        """Shallow-merge ``partial_state`` into the thread state.

        The read-modify-write runs inside one ``BEGIN IMMEDIATE`` transaction
        so concurrent merges serialize instead of overwriting each other.
        """
        now = _utc_now_str()

        def _merge() -> Optional[sqlite3.Row]:
            with closing(self._connect(isolation_level=None)) as connection:
                connection.execute("BEGIN IMMEDIATE")
                try:
                    row = connection.execute(
                        "SELECT state FROM threads WHERE thread_id = ?", (thread_id,)
                    ).fetchone()
                    if row is None:
                        connection.execute("ROLLBACK")
                        return None
                    state = json.loads(row["state"]) if row["state"] else {}
                    state.update(partial_state)
                    connection.execute(
                        "UPDATE threads SET state = ?, updated_at = ? WHERE thread_id = ?",
                        (json.dumps(state), now, thread_id),
                    )
                    updated = connection.execute(
                        f"SELECT {_THREAD_COLUMNS} FROM threads WHERE thread_id = ?", (thread_id,)
                    ).fetchone()
                    connection.execute("COMMIT")
                    return updated
                except Exception:
                    connection.execute("ROLLBACK")
                    raise

        row = await asyncio.to_thread(_merge)
        return self._row_to_thread(row) if row else None

    async def update_summary(self, thread_id: str, summary: str) -> None:
        now = _utc_now_str()
        await asyncio.to_thread(
            self._execute,
            "UPDATE threads SET summary = ?, summary_updated_at = ?, updated_at = ? WHERE thread_id = ?",
            (summary, now, now, thread_id),
        )

    # -------------------------------------------------------------- thread items

    async def add_item(self, thread_id: str, item: NewItem) -> ItemRecord:
        """Insert an item; a repeated ``source_message_id`` returns the existing row."""
        record, _ = await self.insert_item(thread_id, item)
        return record

    async def insert_item(self, thread_id: str, item: NewItem) -> tuple[ItemRecord, bool]:
        """Like ``add_item`` but also reports whether a new row was written."""
        item_id = uuid4().hex

        def _insert() -> tuple[sqlite3.Row, bool]:
            with closing(self._connect()) as connection, connection:
                cursor = connection.execute(
                    f"INSERT OR IGNORE INTO thread_items ({_ITEM_COLUMNS})"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 0)",
                    (
                        item_id,
                        thread_id,
                        _format_ts(item.created_at),
                        item.type,
                        item.role,
                        item.author_id,
                        item.author_name,
                        item.content,
                        json.dumps(item.metadata or {}),
                        item.source_message_id,
                    ),
                )
                created = cursor.rowcount > 0
                if item.source_message_id:
                    row = connection.execute(
                        f"SELECT {_ITEM_COLUMNS} FROM thread_items WHERE source_message_id = ?",
                        (item.source_message_id,),
                    ).fetchone()
                else:
                    row = connection.execute(
                        f"SELECT {_ITEM_COLUMNS} FROM thread_items WHERE id = ?", (item_id,)
                    ).fetchone()
                return row, created

        row, created = await asyncio.to_thread(_insert)
        return self._row_to_item(row), created

    async def get_item_by_source(self, source_message_id: str) -> Optional[ItemRecord]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_ITEM_COLUMNS} FROM thread_items WHERE source_message_id = ?",
            (source_message_id,),
        )
        return self._row_to_item(row) if row else None

    async def get_items(
        self,
        thread_id: str,
        *,
        limit: Optional[int] = None,
        types: Optional[Sequence[str]] = None,
        since: Optional[datetime] = None,
    ) -> list[ItemRecord]:
        """Return items for a thread, newest first."""
        clauses = ["thread_id = ?"]
        params: list[Any] = [thread_id]
        if types:
            clauses.append(f"type IN ({', '.join('?' for _ in types)})")
            params.extend(types)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_format_ts(since))
        query = (
            f"SELECT {_ITEM_COLUMNS} FROM thread_items WHERE {' AND '.join(clauses)}"
            " ORDER BY created_at DESC, rowid DESC"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, tuple(params))
        return [self._row_to_item(row) for row in rows]

    async def count_items(self, thread_id: str) -> int:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT COUNT(*) AS item_count FROM thread_items WHERE thread_id = ?",
            (thread_id,),
        )
        return int(row["item_count"] or 0) if row else 0

    async def update_item_content(
        self, source_message_id: str, content: str, edited_at: Optional[datetime] = None
    ) -> bool:
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE thread_items SET content = ?, edited_at = ? WHERE source_message_id = ?",
            (content, _format_ts(edited_at) if edited_at else _utc_now_str(), source_message_id),
        )
        return rowcount > 0

    async def tombstone_item(self, source_message_id: str) -> bool:
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE thread_items SET content = '', is_deleted = 1 WHERE source_message_id = ?",
            (source_message_id,),
        )
        return rowcount > 0

    # ----------------------------------------------------------- recent messages

    async def upsert_recent_message(self, record: MessageRecord) -> None:
        now = _utc_now_str()
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO recent_messages ({_MESSAGE_COLUMNS})"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(message_id) DO UPDATE SET"
            " content = excluded.content, edited_at = excluded.edited_at",
            (
                record.message_id,
                record.channel_id,
                record.guild_id,
                record.author_id,
                record.author_name,
                int(record.is_bot),
                _format_ts(record.created_at),
                now,
                record.content,
                int(record.mentions_bot),
                record.reply_to_message_id,
                int(record.has_image),
                int(record.has_attachments),
                json.dumps(record.attachments),
                int(record.is_deleted),
                _format_ts(record.edited_at) if record.edited_at else None,
            ),
        )

    async def get_recent_message(self, message_id: str) -> Optional[MessageRecord]:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_MESSAGE_COLUMNS} FROM recent_messages WHERE message_id = ?",
            (message_id,),
        )
        return self._row_to_message(row) if row else None

    async def update_recent_message(
        self, message_id: str, content: str, edited_at: Optional[datetime] = None
    ) -> bool:
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE recent_messages SET content = ?, edited_at = ? WHERE message_id = ?",
            (content, _format_ts(edited_at) if edited_at else _utc_now_str(), message_id),
        )
        return rowcount > 0

    async def tombstone_recent_message(self, message_id: str) -> bool:
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE recent_messages SET content = '', is_deleted = 1 WHERE message_id = ?",
            (message_id,),
        )
        return rowcount > 0

    async def cap_channel_messages(self, channel_id: str, max_messages: int) -> int:
        """Keep only the newest ``max_messages`` rows for a channel."""
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM recent_messages WHERE message_id IN ("
            " SELECT message_id FROM recent_messages WHERE channel_id = ?"
            " ORDER BY created_at DESC LIMIT -1 OFFSET ?)",
            (channel_id, max(max_messages, 0)),
        )
        if deleted:
            logger.debug("Capped channel %s: removed %s messages", channel_id, deleted)
        return deleted

    # ---------------------------------------------------------------------- runs

    async def start_run(
        self,
        thread_id: str,
        *,
        trigger_item_id: Optional[str] = None,
        trigger_source_id: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        request_payload: Optional[Any] = None,
        selected_item_ids: Optional[Iterable[str]] = None,
        token_estimate: Optional[int] = None,
    ) -> str:
        run_id = uuid4().hex
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO runs (run_id, thread_id, trigger_item_id, trigger_source_id, status, provider, model,"
            " request_payload, selected_item_ids, token_estimate, created_at)"
            " VALUES (?, ?, ?, ?, 'started', ?, ?, ?, ?, ?, ?)",
            (
                run_id,
                thread_id,
                trigger_item_id,
                trigger_source_id,
                provider,
                model,
                json.dumps(request_payload) if request_payload is not None else None,
                json.dumps(list(selected_item_ids)) if selected_item_ids is not None else None,
                token_estimate,
                _utc_now_str(),
            ),
        )
        return run_id

    async def complete_run(self, run_id: str, response_payload: Optional[Any] = None) -> bool:
        """Mark a started run as succeeded. Returns False if it was already closed."""
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = 'succeeded', response_payload = ?, completed_at = ?"
            " WHERE run_id = ? AND status = 'started'",
            (
                json.dumps(response_payload) if response_payload is not None else None,
                _utc_now_str(),
                run_id,
            ),
        )
        return rowcount > 0

    async def fail_run(self, run_id: str, error: str) -> bool:
        """Mark a started run as failed. Returns False if it was already closed."""
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE runs SET status = 'failed', error = ?, completed_at = ?"
            " WHERE run_id = ? AND status = 'started'",
            (error, _utc_now_str(), run_id),
        )
        return rowcount > 0

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM runs WHERE run_id = ?", (run_id,)
        )
        return self._row_to_run(row) if row else None

    async def has_processed_trigger(self, trigger_source_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 AS hit FROM runs WHERE trigger_source_id = ? AND status = 'succeeded' LIMIT 1",
            (trigger_source_id,),
        )
        return row is not None

    # ----------------------------------------------------------------- retention

    async def purge_old_messages(self, ttl_hours: float) -> int:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM recent_messages WHERE ingested_at < ?",
            (_cutoff_str(ttl_hours),),
        )
        logger.info("Purged %s recent messages older than %sh", deleted, ttl_hours)
        return deleted

    async def purge_old_items(self, ttl_hours: float) -> int:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM thread_items WHERE created_at < ?",
            (_cutoff_str(ttl_hours),),
        )
        logger.info("Purged %s thread items older than %sh", deleted, ttl_hours)
        return deleted

    async def purge_old_runs(self, ttl_hours: float) -> int:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM runs WHERE created_at < ?",
            (_cutoff_str(ttl_hours),),
        )
        logger.info("Purged %s runs older than %sh", deleted, ttl_hours)
        return deleted

    # ------------------------------------------------------------------- helpers

    def _connect(self, **kwargs: Any) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path, timeout=_BUSY_TIMEOUT_SECONDS, **kwargs)
        connection.row_factory = sqlite3.Row
        _ensure_pragmas(connection)
        return connection

    def _execute(self, query: str, params: tuple = ()) -> int:
        with closing(self._connect()) as connection, connection:
            cursor = connection.execute(query, params)
            return cursor.rowcount

    def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        with closing(self._connect()) as connection:
            return connection.execute(query, params).fetchall()

    def _fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with closing(self._connect()) as connection:
            return connection.execute(query, params).fetchone()

    @staticmethod
    def _row_to_thread(row: sqlite3.Row) -> ThreadRecord:
        return ThreadRecord(
            thread_id=row["thread_id"],
            state=json.loads(row["state"]) if row["state"] else {},
            summary=row["summary"],
            summary_updated_at=_parse_ts(row["summary_updated_at"]) if row["summary_updated_at"] else None,
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> ItemRecord:
        return ItemRecord(
            id=row["id"],
            thread_id=row["thread_id"],
            created_at=_parse_ts(row["created_at"]),
            type=row["type"],
            role=row["role"],
            author_id=row["author_id"],
            author_name=row["author_name"],
            content=row["content"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            source_message_id=row["source_message_id"],
            edited_at=_parse_ts(row["edited_at"]) if row["edited_at"] else None,
            is_deleted=bool(row["is_deleted"]),
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            thread_id=row["thread_id"],
            trigger_item_id=row["trigger_item_id"],
            status=row["status"],
            provider=row["provider"],
            model=row["model"],
            request_payload=json.loads(row["request_payload"]) if row["request_payload"] else None,
            response_payload=json.loads(row["response_payload"]) if row["response_payload"] else None,
            error=row["error"],
            selected_item_ids=json.loads(row["selected_item_ids"]) if row["selected_item_ids"] else None,
            token_estimate=row["token_estimate"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]) if row["completed_at"] else None,
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            message_id=row["message_id"],
            channel_id=row["channel_id"],
            guild_id=row["guild_id"],
            author_id=row["author_id"],
            author_name=row["author_name"],
            is_bot=bool(row["is_bot"]),
            created_at=_parse_ts(row["created_at"]),
            content=row["content"],
            mentions_bot=bool(row["mentions_bot"]),
            reply_to_message_id=row["reply_to_message_id"],
            has_image=bool(row["has_image"]),
            has_attachments=bool(row["has_attachments"]),
            attachments=json.loads(row["attachments"]) if row["attachments"] else [],
            is_deleted=bool(row["is_deleted"]),
            edited_at=_parse_ts(row["edited_at"]) if row["edited_at"] else None,
            ingested_at=_parse_ts(row["ingested_at"]),
        )


# Fixed-width UTC timestamps so lexicographic order matches chronological order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _utc_now_str() -> str:
    return _format_ts(utc_now())


def _cutoff_str(ttl_hours: float) -> str:
    return _format_ts(utc_now() - timedelta(hours=ttl_hours))


def _parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1]
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)
