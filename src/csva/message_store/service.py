"""Durable message and tool-call store with row-insert notifications."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from blinker import Signal
from loguru import logger

from csva.errors import StoreError
from csva.types import MessageRecord, ToolCallRecord

Table = Literal["messages", "tool_calls"]
InsertHandler = Callable[[Table, MessageRecord | ToolCallRecord], None]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    turn_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tool_calls TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages (session_id, created_at);
CREATE TABLE IF NOT EXISTS tool_calls (
    id TEXT PRIMARY KEY,
    tool_call_id TEXT NOT NULL,
    session_id TEXT NOT NULL,
    message_id TEXT,
    tool_name TEXT NOT NULL,
    input TEXT NOT NULL,
    output TEXT,
    status TEXT NOT NULL,
    duration_ms INTEGER,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tool_calls_session ON tool_calls (session_id);
"""


class MessageStore:
    """SQLite-backed store for messages and tool-call records.

    Inserts are idempotent by primary key. A notification fires only for
    rows that were actually written, so replaying an insert never produces
    a second notification.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        self._local = threading.local()
        self._inserted = Signal("csva.store.inserted")

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA)
            conn.commit()
            self._local.conn = conn
            return conn
        return self._local.conn  # type: ignore[no-any-return]

    def on_insert(self, session_id: str, handler: InsertHandler) -> Callable[[], None]:
        """Subscribe to row inserts of one session. Returns an unsubscribe callable."""

        def _receiver(sender: Any, *, table: Table, row: MessageRecord | ToolCallRecord) -> None:
            if row.session_id != session_id:
                return
            try:
                handler(table, row)
            except Exception:
                logger.exception("store.handler.error session={} table={} id={}", session_id, table, row.id)

        self._inserted.connect(_receiver, weak=False)
        return lambda: self._inserted.disconnect(_receiver)

    def add_message(self, msg: MessageRecord) -> bool:
        """Insert a message. Returns False when a row with the same id exists."""
        inserted = self._insert(
            """INSERT OR IGNORE INTO messages
            (id, session_id, turn_id, role, content, tool_calls, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                msg.id,
                msg.session_id,
                msg.turn_id,
                msg.role,
                msg.content,
                json.dumps(msg.tool_calls) if msg.tool_calls else None,
                msg.created_at,
            ),
        )
        if inserted:
            self._inserted.send(self, table="messages", row=msg)
        return inserted

    def add_tool_call(self, record: ToolCallRecord) -> bool:
        """Insert a tool-call record. Returns False when a row with the same id exists."""
        inserted = self._insert(
            """INSERT OR IGNORE INTO tool_calls
            (id, tool_call_id, session_id, message_id, tool_name, input, output, status, duration_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.id,
                record.tool_call_id,
                record.session_id,
                record.message_id,
                record.tool_name,
                json.dumps(record.input, ensure_ascii=False),
                json.dumps(record.output, ensure_ascii=False, default=str) if record.output is not None else None,
                record.status,
                record.duration_ms,
                record.created_at,
            ),
        )
        if inserted:
            self._inserted.send(self, table="tool_calls", row=record)
        return inserted

    def _insert(self, sql: str, params: tuple[Any, ...]) -> bool:
        try:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return cursor.rowcount == 1

    def get_messages(self, session_id: str, limit: int | None = None) -> list[MessageRecord]:
        """Messages of one session in insertion order."""
        sql = "SELECT * FROM messages WHERE session_id = ? ORDER BY created_at, rowid"
        params: tuple[Any, ...] = (session_id,)
        if limit is not None:
            sql = (
                "SELECT * FROM (SELECT rowid AS seq, * FROM messages WHERE session_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?) ORDER BY created_at, seq"
            )
            params = (session_id, limit)
        rows = self._select(sql, params)
        return [_message_from_row(row) for row in rows]

    def get_assistant_message(self, session_id: str, turn_id: str) -> MessageRecord | None:
        rows = self._select(
            "SELECT * FROM messages WHERE session_id = ? AND turn_id = ? AND role = 'assistant' LIMIT 1",
            (session_id, turn_id),
        )
        return _message_from_row(rows[0]) if rows else None

    def get_tool_calls(self, session_id: str) -> list[ToolCallRecord]:
        rows = self._select(
            "SELECT * FROM tool_calls WHERE session_id = ? ORDER BY created_at, rowid",
            (session_id,),
        )
        return [_tool_call_from_row(row) for row in rows]

    def _select(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def purge_sessions(self, older_than: datetime) -> list[str]:
        """Delete sessions whose newest message is older than ``older_than``."""
        cutoff = older_than.isoformat()
        rows = self._select(
            "SELECT session_id FROM messages GROUP BY session_id HAVING MAX(created_at) < ?",
            (cutoff,),
        )
        session_ids = [row["session_id"] for row in rows]
        if not session_ids:
            return []
        placeholders = ", ".join("?" for _ in session_ids)
        try:
            self._conn.execute(f"DELETE FROM tool_calls WHERE session_id IN ({placeholders})", session_ids)  # noqa: S608
            self._conn.execute(f"DELETE FROM messages WHERE session_id IN ({placeholders})", session_ids)  # noqa: S608
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        logger.info("store.purge sessions={}", len(session_ids))
        return session_ids

    def close(self) -> None:
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def write_with_retry(write: Callable[[], bool], *, what: str, retries: int) -> bool:
    """Run one store write, retrying on StoreError. A final failure is logged, not raised."""
    for attempt in range(retries + 1):
        try:
            return write()
        except StoreError:
            if attempt < retries:
                logger.warning("store.write.retry what={} attempt={}", what, attempt + 1)
                continue
            logger.exception("store.write.error what={} attempts={}", what, attempt + 1)
    return False


def _message_from_row(row: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        id=row["id"],
        session_id=row["session_id"],
        turn_id=row["turn_id"],
        role=row["role"],
        content=row["content"],
        tool_calls=json.loads(row["tool_calls"]) if row["tool_calls"] else None,
        created_at=row["created_at"],
    )


def _tool_call_from_row(row: sqlite3.Row) -> ToolCallRecord:
    return ToolCallRecord(
        id=row["id"],
        tool_call_id=row["tool_call_id"],
        session_id=row["session_id"],
        message_id=row["message_id"],
        tool_name=row["tool_name"],
        input=json.loads(row["input"]),
        output=json.loads(row["output"]) if row["output"] else None,
        status=row["status"],
        duration_ms=row["duration_ms"],
        created_at=row["created_at"],
    )
