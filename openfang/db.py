"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from openfang.models import (
    KIND_RECURRING,
    ORIGIN_BOT_DM,
    ChatMessage,
    Conversation,
    MessageContent,
    Schedule,
    content_from_json,
    content_to_json,
)

SCHEMA_VERSION = 1
CONVERSATION_REUSE_WINDOW = timedelta(hours=6)
TITLE_MAX_CHARS = 80


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                origin TEXT NOT NULL,
                external_user_id TEXT,
                title TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user
                ON conversations(external_user_id, updated_at);

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                model TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS schedules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                prompt TEXT NOT NULL,
                cron_expr TEXT,
                timezone TEXT NOT NULL DEFAULT 'UTC',
                run_at TEXT,
                enabled INTEGER NOT NULL DEFAULT 1,
                last_run_at TEXT,
                next_run_at TEXT NOT NULL,
                tools_enabled INTEGER NOT NULL DEFAULT 1,
                recipient TEXT,
                created_at TEXT NOT NULL
            );
            """
        )

    # -- conversations -------------------------------------------------

    def find_or_create_conversation(
        self,
        origin: str,
        external_user_id: str | None = None,
        explicit_id: str | None = None,
        now: datetime | None = None,
    ) -> str:
        """Return a conversation id, reusing recent bot conversations.

        An explicit id wins when it exists. A bot-originated conversation for
        the same external user is reused while its last update is within six
        hours; anything else starts a new conversation.
        """

        now = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            if explicit_id:
                row = conn.execute("SELECT id FROM conversations WHERE id = ?", (explicit_id,)).fetchone()
                if row:
                    return row["id"]

            if origin == ORIGIN_BOT_DM and external_user_id:
                row = conn.execute(
                    """
                    SELECT id, updated_at FROM conversations
                    WHERE external_user_id = ?
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """,
                    (external_user_id,),
                ).fetchone()
                if row and now - _parse_iso(row["updated_at"]) < CONVERSATION_REUSE_WINDOW:
                    return row["id"]

            conversation_id = uuid.uuid4().hex
            stamp = _iso(now)
            conn.execute(
                """
                INSERT INTO conversations(id, origin, external_user_id, title, created_at, updated_at)
                VALUES (?, ?, ?, NULL, ?, ?)
                """,
                (conversation_id, origin, external_user_id, stamp, stamp),
            )
            return conversation_id

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            origin=row["origin"],
            external_user_id=row["external_user_id"],
            title=row["title"],
            created_at=_parse_iso(row["created_at"]),
            updated_at=_parse_iso(row["updated_at"]),
        )

    def set_title_if_missing(self, conversation_id: str, user_text: str) -> bool:
        """Set the title from the first user message; no-op when already titled."""

        title = user_text[:TITLE_MAX_CHARS] + ("..." if len(user_text) > TITLE_MAX_CHARS else "")
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE conversations SET title = ? WHERE id = ? AND (title IS NULL OR title = '')",
                (title, conversation_id),
            )
            return cur.rowcount > 0

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: MessageContent,
        model: str | None = None,
    ) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO messages(conversation_id, role, content, model, created_at) VALUES (?, ?, ?, ?, ?)",
                (conversation_id, role, content_to_json(content), model, now),
            )
            conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))

    def load_recent_history(self, conversation_id: str, limit: int) -> list[ChatMessage]:
        """Return the last ``limit`` messages in chronological order."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, model
                FROM messages
                WHERE conversation_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        ordered = list(reversed(rows))
        return [
            ChatMessage(role=row["role"], content=content_from_json(row["content"]), model=row["model"])
            for row in ordered
        ]

    def log_tool_execution(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(tool_name, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    tool_name,
                    json.dumps(tool_input, default=str),
                    json.dumps(tool_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, input_json, output_json, succeeded FROM tool_executions ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    # -- schedules -----------------------------------------------------

    def create_schedule(
        self,
        kind: str,
        prompt: str,
        next_run_at: datetime,
        cron_expr: str | None = None,
        timezone_name: str = "UTC",
        run_at: datetime | None = None,
        tools_enabled: bool = True,
        recipient: str | None = None,
        enabled: bool = True,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO schedules(
                    kind, prompt, cron_expr, timezone, run_at, enabled,
                    last_run_at, next_run_at, tools_enabled, recipient, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?)
                """,
                (
                    kind,
                    prompt,
                    cron_expr,
                    timezone_name,
                    _iso(run_at) if run_at else None,
                    int(enabled),
                    _iso(next_run_at),
                    int(tools_enabled),
                    recipient,
                    _utc_now_iso(),
                ),
            )
            return int(cur.lastrowid)

    def get_schedule(self, schedule_id: int) -> Schedule | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM schedules WHERE id = ?", (schedule_id,)).fetchone()
        return _row_to_schedule(row) if row else None

    def list_schedules(self, enabled_only: bool = False) -> list[Schedule]:
        query = "SELECT * FROM schedules"
        if enabled_only:
            query += " WHERE enabled = 1"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY next_run_at ASC").fetchall()
        return [_row_to_schedule(row) for row in rows]

    def list_enabled_recurring(self) -> list[Schedule]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM schedules WHERE enabled = 1 AND kind = ? ORDER BY id ASC",
                (KIND_RECURRING,),
            ).fetchall()
        return [_row_to_schedule(row) for row in rows]

    def get_due_schedules(self, now: datetime) -> list[Schedule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM schedules
                WHERE enabled = 1 AND next_run_at <= ?
                ORDER BY next_run_at ASC, id ASC
                """,
                (_iso(now),),
            ).fetchall()
        return [_row_to_schedule(row) for row in rows]

    def set_schedule_next_run(self, schedule_id: int, next_run_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE schedules SET next_run_at = ? WHERE id = ?",
                (_iso(next_run_at), schedule_id),
            )

    def mark_schedule_run(self, schedule_id: int, last_run_at: datetime, next_run_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE schedules SET last_run_at = ?, next_run_at = ? WHERE id = ?",
                (_iso(last_run_at), _iso(next_run_at), schedule_id),
            )

    def disable_schedule(self, schedule_id: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE schedules SET enabled = 0 WHERE id = ?", (schedule_id,))

    def delete_schedule(self, schedule_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM schedules WHERE id = ?", (schedule_id,))
            return cur.rowcount > 0


def _row_to_schedule(row: sqlite3.Row) -> Schedule:
    return Schedule(
        id=int(row["id"]),
        kind=row["kind"],
        prompt=row["prompt"],
        cron_expr=row["cron_expr"],
        timezone=row["timezone"],
        run_at=_parse_iso(row["run_at"]) if row["run_at"] else None,
        enabled=bool(row["enabled"]),
        last_run_at=_parse_iso(row["last_run_at"]) if row["last_run_at"] else None,
        next_run_at=_parse_iso(row["next_run_at"]),
        tools_enabled=bool(row["tools_enabled"]),
        recipient=row["recipient"],
        created_at=_parse_iso(row["created_at"]),
    )


def _iso(value: datetime) -> str:
    # Fixed width so that SQL string comparison matches time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now_iso() -> str:
    return _iso(datetime.now(timezone.utc))
