"""Storage interface for batches, tasks, model exchanges and memory files."""

from __future__ import annotations

from typing import Any, Protocol

from cua_orchestrator.storage.models import (
    BatchCounter,
    BatchRecord,
    BatchStatus,
    MemoryFileRecord,
    MessageRecord,
    NewTask,
    TaskRecord,
    TaskStatus,
)


class CounterLimitError(RuntimeError):
    """Incrementing would push completed + failed past the batch task count."""


class OrchestratorStorage(Protocol):
    def migrate(self) -> None: ...

    def create_session(self) -> str: ...

    # Batches

    def create_batch(
        self,
        *,
        session_id: str,
        task_count: int,
        config_overrides: dict[str, Any] | None = None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
    ) -> BatchRecord: ...

    def get_batch(self, batch_id: str) -> BatchRecord | None: ...

    def update_batch(
        self,
        batch_id: str,
        *,
        status: BatchStatus,
        error_message: str | None = None,
    ) -> BatchRecord: ...

    def set_batch_browser_session(
        self, batch_id: str, browser_session_id: str | None
    ) -> BatchRecord: ...

    def increment_batch_counter(self, batch_id: str, counter: BatchCounter) -> BatchRecord: ...

    # Tasks

    def create_tasks(
        self,
        *,
        session_id: str,
        batch_id: str | None,
        tasks: list[NewTask],
    ) -> list[TaskRecord]: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def list_batch_tasks(self, batch_id: str) -> list[TaskRecord]: ...

    def update_task(self, task_id: str, **changes: Any) -> TaskRecord: ...

    def update_batch_tasks_with_status(
        self,
        batch_id: str,
        *,
        where_status: TaskStatus,
        **changes: Any,
    ) -> list[TaskRecord]: ...

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
    ) -> MessageRecord: ...

    def attach_tool_results(
        self, message_id: str, tool_results: list[dict[str, Any]]
    ) -> MessageRecord: ...

    def get_latest_exchange(self, task_id: str) -> MessageRecord | None: ...

    def list_task_messages(self, task_id: str) -> list[MessageRecord]: ...

    # Memory files

    def get_memory_file(self, path: str) -> MemoryFileRecord | None: ...

    def insert_memory_file(self, path: str, content: str) -> MemoryFileRecord: ...

    def update_memory_file(self, path: str, content: str) -> MemoryFileRecord: ...

    def delete_memory_file(self, path: str) -> bool: ...

    def rename_memory_file(self, old_path: str, new_path: str) -> MemoryFileRecord: ...

    def list_memory_files(self) -> list[MemoryFileRecord]: ...
