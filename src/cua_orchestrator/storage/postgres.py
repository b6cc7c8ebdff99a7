"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
import uuid
from datetime import UTC, datetime
from typing import Any

from cua_orchestrator.storage.base import CounterLimitError
from cua_orchestrator.storage.models import (
    TASK_MUTABLE_FIELDS,
    BatchCounter,
    BatchRecord,
    BatchStatus,
    MemoryFileRecord,
    MessageRecord,
    NewTask,
    TaskRecord,
    TaskStatus,
)

_JSON_TASK_FIELDS = frozenset({"agent_evidence"})
_COUNTER_COLUMNS = {"completed": "completed_count", "failed": "failed_count"}


class PostgresStorage:
    """Persist batches, tasks, model exchanges and memory files in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("CUA_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    session_id UUID PRIMARY KEY,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS batch_executions (
                    batch_id UUID PRIMARY KEY,
                    session_id UUID NOT NULL REFERENCES chat_sessions(session_id)
                        ON DELETE CASCADE,
                    task_count INTEGER NOT NULL CHECK (task_count > 0),
                    completed_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    browser_session_id TEXT,
                    config_overrides JSONB NOT NULL DEFAULT '{}'::jsonb,
                    webhook_url TEXT,
                    webhook_secret TEXT,
                    error_message TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    CHECK (completed_count + failed_count <= task_count)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_batch_executions_status
                ON batch_executions(status)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id UUID PRIMARY KEY,
                    session_id UUID NOT NULL REFERENCES chat_sessions(session_id)
                        ON DELETE CASCADE,
                    batch_id UUID REFERENCES batch_executions(batch_id) ON DELETE CASCADE,
                    task_index INTEGER,
                    user_message TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_iteration INTEGER NOT NULL DEFAULT 0,
                    result_message TEXT,
                    config_overrides JSONB NOT NULL DEFAULT '{}'::jsonb,
                    destroy_browser_on_completion BOOLEAN NOT NULL DEFAULT FALSE,
                    browser_session_id TEXT,
                    agent_status TEXT,
                    agent_message TEXT,
                    agent_evidence JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_batch_id
                ON tasks(batch_id, task_index)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    message_id UUID PRIMARY KEY,
                    sequence BIGSERIAL,
                    session_id UUID NOT NULL REFERENCES chat_sessions(session_id)
                        ON DELETE CASCADE,
                    task_id UUID REFERENCES tasks(task_id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    model_request JSONB,
                    model_response JSONB,
                    tool_results JSONB,
                    iteration INTEGER,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_messages_task_created
                ON messages(task_id, created_at DESC, sequence DESC)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS memory_files (
                    path TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.commit()

    def create_session(self) -> str:
        session_id = uuid.uuid4()
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT INTO chat_sessions (session_id, created_at) VALUES (%s, %s)",
                (session_id, datetime.now(tz=UTC)),
            )
            conn.commit()
        return str(session_id)

    # Batches

    def create_batch(
        self,
        *,
        session_id: str,
        task_count: int,
        config_overrides: dict[str, Any] | None = None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
    ) -> BatchRecord:
        if task_count < 1:
            raise ValueError("task_count must be positive")
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO batch_executions (
                    batch_id,
                    session_id,
                    task_count,
                    status,
                    config_overrides,
                    webhook_url,
                    webhook_secret,
                    created_at,
                    started_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    session_id,
                    task_count,
                    "running",
                    self._json_wrapper(config_overrides or {}),
                    webhook_url,
                    webhook_secret,
                    now,
                    now,
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist batch execution")
        return self._row_to_batch(row)

    def get_batch(self, batch_id: str) -> BatchRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM batch_executions WHERE batch_id::text = %s",
                (batch_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_batch(row)

    def update_batch(
        self,
        batch_id: str,
        *,
        status: BatchStatus,
        error_message: str | None = None,
    ) -> BatchRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE batch_executions
                SET status = %s,
                    error_message = COALESCE(%s, error_message),
                    completed_at = CASE
                        WHEN %s IN ('completed', 'failed', 'stopped') THEN %s
                        ELSE completed_at
                    END
                WHERE batch_id::text = %s
                RETURNING *
                """,
                (status, error_message, status, datetime.now(tz=UTC), batch_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Batch {batch_id} does not exist")
        return self._row_to_batch(row)

    def set_batch_browser_session(
        self, batch_id: str, browser_session_id: str | None
    ) -> BatchRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE batch_executions
                SET browser_session_id = %s
                WHERE batch_id::text = %s
                RETURNING *
                """,
                (browser_session_id, batch_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Batch {batch_id} does not exist")
        return self._row_to_batch(row)

    def increment_batch_counter(self, batch_id: str, counter: BatchCounter) -> BatchRecord:
        column = _COUNTER_COLUMNS[counter]
        with self._lock, self._connect() as conn:
            # Single conditional UPDATE so concurrent increments never lose a count.
            row = conn.execute(
                f"""
                UPDATE batch_executions
                SET {column} = {column} + 1
                WHERE batch_id::text = %s
                  AND completed_count + failed_count < task_count
                RETURNING *
                """,
                (batch_id,),
            ).fetchone()
            if row is None:
                exists = conn.execute(
                    "SELECT 1 FROM batch_executions WHERE batch_id::text = %s",
                    (batch_id,),
                ).fetchone()
            conn.commit()
        if row is None:
            if exists is None:
                raise KeyError(f"Batch {batch_id} does not exist")
            raise CounterLimitError(f"Batch {batch_id} already accounts for all its tasks")
        return self._row_to_batch(row)

    # Tasks

    def create_tasks(
        self,
        *,
        session_id: str,
        batch_id: str | None,
        tasks: list[NewTask],
    ) -> list[TaskRecord]:
        now = datetime.now(tz=UTC)
        created: list[TaskRecord] = []
        with self._lock, self._connect() as conn:
            for index, task in enumerate(tasks):
                row = conn.execute(
                    """
                    INSERT INTO tasks (
                        task_id,
                        session_id,
                        batch_id,
                        task_index,
                        user_message,
                        status,
                        config_overrides,
                        destroy_browser_on_completion,
                        created_at,
                        updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        uuid.uuid4(),
                        session_id,
                        batch_id,
                        index if batch_id is not None else None,
                        task.user_message,
                        "queued",
                        self._json_wrapper(task.config_overrides),
                        task.destroy_browser_on_completion,
                        now,
                        now,
                    ),
                ).fetchone()
                if row is None:
                    raise RuntimeError("Failed to persist task")
                created.append(self._row_to_task(row))
            conn.commit()
        return created

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE task_id::text = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def list_batch_tasks(self, batch_id: str) -> list[TaskRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM tasks
                WHERE batch_id::text = %s
                ORDER BY task_index ASC, created_at ASC
                """,
                (batch_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        assignments, params = self._task_assignments(changes)
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"UPDATE tasks SET {assignments} WHERE task_id::text = %s RETURNING *",
                (*params, task_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Task {task_id} does not exist")
        return self._row_to_task(row)

    def update_batch_tasks_with_status(
        self,
        batch_id: str,
        *,
        where_status: TaskStatus,
        **changes: Any,
    ) -> list[TaskRecord]:
        assignments, params = self._task_assignments(changes)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                UPDATE tasks
                SET {assignments}
                WHERE batch_id::text = %s AND status = %s
                RETURNING *
                """,
                (*params, batch_id, where_status),
            ).fetchall()
            conn.commit()
        return [self._row_to_task(row) for row in rows]

    # Messages

    def add_message(
        self,
        *,
        session_id: str,
        task_id: str | None,
        role: str,
        content: str,
        model_request: dict[str, Any] | None = None,
        model_response: dict[str, Any] | None = None,
        iteration: int | None = None,
    ) -> MessageRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO messages (
                    message_id,
                    session_id,
                    task_id,
                    role,
                    content,
                    model_request,
                    model_response,
                    iteration,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    uuid.uuid4(),
                    session_id,
                    task_id,
                    role,
                    content,
                    self._json_wrapper(model_request) if model_request is not None else None,
                    self._json_wrapper(model_response) if model_response is not None else None,
                    iteration,
                    datetime.now(tz=UTC),
                ),
            ).fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist message")
        return self._row_to_message(row)

    def attach_tool_results(
        self, message_id: str, tool_results: list[dict[str, Any]]
    ) -> MessageRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE messages
                SET tool_results = %s
                WHERE message_id::text = %s
                RETURNING *
                """,
                (self._json_wrapper(tool_results), message_id),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Message {message_id} does not exist")
        return self._row_to_message(row)

    def get_latest_exchange(self, task_id: str) -> MessageRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT *
                FROM messages
                WHERE task_id::text = %s AND model_request IS NOT NULL
                ORDER BY created_at DESC, sequence DESC
                LIMIT 1
                """,
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def list_task_messages(self, task_id: str) -> list[MessageRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM messages
                WHERE task_id::text = %s
                ORDER BY sequence ASC
                """,
                (task_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    # Memory files

    def get_memory_file(self, path: str) -> MemoryFileRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM memory_files WHERE path = %s",
                (path,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_memory_file(row)

    def insert_memory_file(self, path: str, content: str) -> MemoryFileRecord:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            try:
                row = conn.execute(
                    """
                    INSERT INTO memory_files (path, content, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (path, content, now, now),
                ).fetchone()
            except self._psycopg.errors.UniqueViolation as exc:
                conn.rollback()
                raise ValueError(f"Memory file {path} already exists") from exc
            conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist memory file")
        return self._row_to_memory_file(row)

    def update_memory_file(self, path: str, content: str) -> MemoryFileRecord:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE memory_files
                SET content = %s, updated_at = %s
                WHERE path = %s
                RETURNING *
                """,
                (content, datetime.now(tz=UTC), path),
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Memory file {path} does not exist")
        return self._row_to_memory_file(row)

    def delete_memory_file(self, path: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "DELETE FROM memory_files WHERE path = %s RETURNING path",
                (path,),
            ).fetchone()
            conn.commit()
        return row is not None

    def rename_memory_file(self, old_path: str, new_path: str) -> MemoryFileRecord:
        with self._lock, self._connect() as conn:
            try:
                row = conn.execute(
                    """
                    UPDATE memory_files
                    SET path = %s, updated_at = %s
                    WHERE path = %s
                    RETURNING *
                    """,
                    (new_path, datetime.now(tz=UTC), old_path),
                ).fetchone()
            except self._psycopg.errors.UniqueViolation as exc:
                conn.rollback()
                raise ValueError(f"Memory file {new_path} already exists") from exc
            conn.commit()
        if row is None:
            raise KeyError(f"Memory file {old_path} does not exist")
        return self._row_to_memory_file(row)

    def list_memory_files(self) -> list[MemoryFileRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_files ORDER BY created_at DESC"
            ).fetchall()
        return [self._row_to_memory_file(row) for row in rows]

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _task_assignments(self, changes: dict[str, Any]) -> tuple[str, list[Any]]:
        unknown = set(changes) - TASK_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        # Column names come from the whitelist above, never from callers.
        columns: list[str] = []
        params: list[Any] = []
        for name, value in changes.items():
            columns.append(f"{name} = %s")
            if name in _JSON_TASK_FIELDS and value is not None:
                value = self._json_wrapper(value)
            params.append(value)
        columns.append("updated_at = %s")
        params.append(datetime.now(tz=UTC))
        return ", ".join(columns), params

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> Any:
        if raw is None:
            return None
        if isinstance(raw, str):
            return json.loads(raw)
        return raw

    @staticmethod
    def _parse_datetime_optional(raw: Any) -> datetime | None:
        if raw is None:
            return None
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_batch(cls, row: Any) -> BatchRecord:
        return BatchRecord(
            batch_id=str(row["batch_id"]),
            session_id=str(row["session_id"]),
            task_count=int(row["task_count"]),
            completed_count=int(row["completed_count"]),
            failed_count=int(row["failed_count"]),
            status=row["status"],
            browser_session_id=row["browser_session_id"],
            config_overrides=cls._parse_json_optional(row["config_overrides"]) or {},
            webhook_url=row["webhook_url"],
            webhook_secret=row["webhook_secret"],
            error_message=row["error_message"],
            created_at=cls._parse_datetime_optional(row["created_at"]),
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        batch_id = row["batch_id"]
        return TaskRecord(
            task_id=str(row["task_id"]),
            session_id=str(row["session_id"]),
            batch_id=str(batch_id) if batch_id is not None else None,
            task_index=row["task_index"],
            user_message=row["user_message"],
            status=row["status"],
            current_iteration=int(row["current_iteration"]),
            result_message=row["result_message"],
            config_overrides=cls._parse_json_optional(row["config_overrides"]) or {},
            destroy_browser_on_completion=bool(row["destroy_browser_on_completion"]),
            browser_session_id=row["browser_session_id"],
            agent_status=row["agent_status"],
            agent_message=row["agent_message"],
            agent_evidence=cls._parse_json_optional(row["agent_evidence"]),
            created_at=cls._parse_datetime_optional(row["created_at"]),
            updated_at=cls._parse_datetime_optional(row["updated_at"]),
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
        )

    @classmethod
    def _row_to_message(cls, row: Any) -> MessageRecord:
        task_id = row["task_id"]
        return MessageRecord(
            message_id=str(row["message_id"]),
            sequence=int(row["sequence"]),
            session_id=str(row["session_id"]),
            task_id=str(task_id) if task_id is not None else None,
            role=row["role"],
            content=row["content"] or "",
            model_request=cls._parse_json_optional(row["model_request"]),
            model_response=cls._parse_json_optional(row["model_response"]),
            tool_results=cls._parse_json_optional(row["tool_results"]),
            iteration=row["iteration"],
            created_at=cls._parse_datetime_optional(row["created_at"]),
        )

    @classmethod
    def _row_to_memory_file(cls, row: Any) -> MemoryFileRecord:
        return MemoryFileRecord(
            path=row["path"],
            content=row["content"],
            created_at=cls._parse_datetime_optional(row["created_at"]),
            updated_at=cls._parse_datetime_optional(row["updated_at"]),
        )
