"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

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

TERMINAL_BATCH_STATUSES = frozenset({"completed", "failed", "stopped"})


class InMemoryStorage:
    """Dict-backed implementation; every read returns a copy."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: set[str] = set()
        self._batches: dict[str, BatchRecord] = {}
        self._tasks: dict[str, TaskRecord] = {}
        self._messages: list[MessageRecord] = []
        self._memory_files: dict[str, MemoryFileRecord] = {}
        self._next_sequence = 1

    def migrate(self) -> None:
        return None

    def create_session(self) -> str:
        session_id = str(uuid4())
        with self._lock:
            self._sessions.add(session_id)
        return session_id

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
        now = datetime.now(UTC)
        record = BatchRecord(
            batch_id=str(uuid4()),
            session_id=session_id,
            task_count=task_count,
            config_overrides=dict(config_overrides or {}),
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
            created_at=now,
            started_at=now,
        )
        with self._lock:
            self._batches[record.batch_id] = record
        return record.model_copy(deep=True)

    def get_batch(self, batch_id: str) -> BatchRecord | None:
        with self._lock:
            record = self._batches.get(batch_id)
            return record.model_copy(deep=True) if record else None

    def update_batch(
        self,
        batch_id: str,
        *,
        status: BatchStatus,
        error_message: str | None = None,
    ) -> BatchRecord:
        with self._lock:
            current = self._require_batch(batch_id)
            update: dict[str, Any] = {"status": status}
            if error_message is not None:
                update["error_message"] = error_message
            if status in TERMINAL_BATCH_STATUSES:
                update["completed_at"] = datetime.now(UTC)
            updated = current.model_copy(update=update)
            self._batches[batch_id] = updated
            return updated.model_copy(deep=True)

    def set_batch_browser_session(
        self, batch_id: str, browser_session_id: str | None
    ) -> BatchRecord:
        with self._lock:
            current = self._require_batch(batch_id)
            updated = current.model_copy(update={"browser_session_id": browser_session_id})
            self._batches[batch_id] = updated
            return updated.model_copy(deep=True)

    def increment_batch_counter(self, batch_id: str, counter: BatchCounter) -> BatchRecord:
        field = f"{counter}_count"
        with self._lock:
            # Re-read under the lock so a concurrent writer cannot lose an update.
            current = self._require_batch(batch_id)
            if current.completed_count + current.failed_count >= current.task_count:
                raise CounterLimitError(
                    f"Batch {batch_id} already accounts for all {current.task_count} tasks"
                )
            updated = current.model_copy(update={field: getattr(current, field) + 1})
            self._batches[batch_id] = updated
            return updated.model_copy(deep=True)

    def create_tasks(
        self,
        *,
        session_id: str,
        batch_id: str | None,
        tasks: list[NewTask],
    ) -> list[TaskRecord]:
        now = datetime.now(UTC)
        created: list[TaskRecord] = []
        with self._lock:
            for index, task in enumerate(tasks):
                record = TaskRecord(
                    task_id=str(uuid4()),
                    session_id=session_id,
                    batch_id=batch_id,
                    task_index=index if batch_id is not None else None,
                    user_message=task.user_message,
                    config_overrides=dict(task.config_overrides),
                    destroy_browser_on_completion=task.destroy_browser_on_completion,
                    created_at=now,
                    updated_at=now,
                )
                self._tasks[record.task_id] = record
                created.append(record.model_copy(deep=True))
        return created

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            record = self._tasks.get(task_id)
            return record.model_copy(deep=True) if record else None

    def list_batch_tasks(self, batch_id: str) -> list[TaskRecord]:
        with self._lock:
            rows = [task for task in self._tasks.values() if task.batch_id == batch_id]
            rows.sort(key=lambda task: (task.task_index or 0, task.created_at))
            return [task.model_copy(deep=True) for task in rows]

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord:
        _check_task_fields(changes)
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            updated = current.model_copy(update={**changes, "updated_at": datetime.now(UTC)})
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    def update_batch_tasks_with_status(
        self,
        batch_id: str,
        *,
        where_status: TaskStatus,
        **changes: Any,
    ) -> list[TaskRecord]:
        _check_task_fields(changes)
        now = datetime.now(UTC)
        updated_rows: list[TaskRecord] = []
        with self._lock:
            for task_id, task in list(self._tasks.items()):
                if task.batch_id != batch_id or task.status != where_status:
                    continue
                updated = task.model_copy(update={**changes, "updated_at": now})
                self._tasks[task_id] = updated
                updated_rows.append(updated.model_copy(deep=True))
        return updated_rows

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
        with self._lock:
            record = MessageRecord(
                message_id=str(uuid4()),
                sequence=self._next_sequence,
                session_id=session_id,
                task_id=task_id,
                role=role,
                content=content,
                model_request=model_request,
                model_response=model_response,
                iteration=iteration,
                created_at=datetime.now(UTC),
            )
            self._next_sequence += 1
            self._messages.append(record)
            return record.model_copy(deep=True)

    def attach_tool_results(
        self, message_id: str, tool_results: list[dict[str, Any]]
    ) -> MessageRecord:
        with self._lock:
            for idx, message in enumerate(self._messages):
                if message.message_id != message_id:
                    continue
                updated = message.model_copy(update={"tool_results": list(tool_results)})
                self._messages[idx] = updated
                return updated.model_copy(deep=True)
        raise KeyError(f"Message {message_id} does not exist")

    def get_latest_exchange(self, task_id: str) -> MessageRecord | None:
        with self._lock:
            candidates = [
                message
                for message in self._messages
                if message.task_id == task_id and message.model_request is not None
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda message: (message.created_at, message.sequence))
            return latest.model_copy(deep=True)

    def list_task_messages(self, task_id: str) -> list[MessageRecord]:
        with self._lock:
            return [
                message.model_copy(deep=True)
                for message in self._messages
                if message.task_id == task_id
            ]

    def get_memory_file(self, path: str) -> MemoryFileRecord | None:
        with self._lock:
            record = self._memory_files.get(path)
            return record.model_copy() if record else None

    def insert_memory_file(self, path: str, content: str) -> MemoryFileRecord:
        now = datetime.now(UTC)
        with self._lock:
            if path in self._memory_files:
                raise ValueError(f"Memory file {path} already exists")
            record = MemoryFileRecord(path=path, content=content, created_at=now, updated_at=now)
            self._memory_files[path] = record
            return record.model_copy()

    def update_memory_file(self, path: str, content: str) -> MemoryFileRecord:
        with self._lock:
            current = self._memory_files.get(path)
            if current is None:
                raise KeyError(f"Memory file {path} does not exist")
            updated = current.model_copy(
                update={"content": content, "updated_at": datetime.now(UTC)}
            )
            self._memory_files[path] = updated
            return updated.model_copy()

    def delete_memory_file(self, path: str) -> bool:
        with self._lock:
            return self._memory_files.pop(path, None) is not None

    def rename_memory_file(self, old_path: str, new_path: str) -> MemoryFileRecord:
        with self._lock:
            current = self._memory_files.get(old_path)
            if current is None:
                raise KeyError(f"Memory file {old_path} does not exist")
            if new_path in self._memory_files and new_path != old_path:
                raise ValueError(f"Memory file {new_path} already exists")
            renamed = current.model_copy(
                update={"path": new_path, "updated_at": datetime.now(UTC)}
            )
            del self._memory_files[old_path]
            self._memory_files[new_path] = renamed
            return renamed.model_copy()

    def list_memory_files(self) -> list[MemoryFileRecord]:
        with self._lock:
            rows = sorted(
                self._memory_files.values(), key=lambda record: record.created_at, reverse=True
            )
            return [record.model_copy() for record in rows]

    def _require_batch(self, batch_id: str) -> BatchRecord:
        current = self._batches.get(batch_id)
        if current is None:
            raise KeyError(f"Batch {batch_id} does not exist")
        return current


def _check_task_fields(changes: dict[str, Any]) -> None:
    unknown = set(changes) - TASK_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
