"""Sequential batch execution over one shared browser session."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from cua_orchestrator.config.resolver import ExecutionConfig, ExecutionDefaults, resolve_config
from cua_orchestrator.executor.lifecycle import (
    RESUMABLE_TASK_STATUSES,
    InvalidTransitionError,
    fail_task,
    stop_batch_records,
    stop_task,
    transition_batch,
)
from cua_orchestrator.executor.task_runner import TaskOutcome, TaskRunner
from cua_orchestrator.providers.browser import BrowserProvider
from cua_orchestrator.storage.base import CounterLimitError, OrchestratorStorage
from cua_orchestrator.storage.models import BatchCounter, BatchRecord, NewTask, TaskRecord

logger = logging.getLogger(__name__)

TASK_ERROR_PREFIX = "Task execution error: "


class TaskSummary(BaseModel):
    task_id: str
    task_index: int | None
    status: str
    user_message: str
    result_message: str | None = None
    agent_status: str | None = None
    agent_message: str | None = None
    current_iteration: int = 0


class BatchStatusView(BaseModel):
    batch: BatchRecord
    overall_status: str
    tasks: list[TaskSummary]
    active_task: TaskSummary | None = None


class BatchExecutor:
    """Owns the browser session of a batch and runs its tasks strictly in order.

    Task failures are contained: a task that raises is marked failed and the
    batch moves on. Only a failure to set up the browser fails the batch.
    """

    def __init__(
        self,
        *,
        storage: OrchestratorStorage,
        browser_provider: BrowserProvider,
        task_runner: TaskRunner,
        defaults: ExecutionDefaults | None = None,
    ) -> None:
        self.storage = storage
        self.browser_provider = browser_provider
        self.task_runner = task_runner
        self.defaults = defaults or ExecutionDefaults()

    def create(
        self,
        tasks: list[NewTask],
        *,
        config_overrides: Mapping[str, Any] | None = None,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        session_id: str | None = None,
    ) -> tuple[BatchRecord, list[TaskRecord]]:
        if not tasks:
            raise ValueError("A batch needs at least one task")
        session_id = session_id or self.storage.create_session()
        batch = self.storage.create_batch(
            session_id=session_id,
            task_count=len(tasks),
            config_overrides=dict(config_overrides or {}),
            webhook_url=webhook_url,
            webhook_secret=webhook_secret,
        )
        records = self.storage.create_tasks(
            session_id=session_id, batch_id=batch.batch_id, tasks=tasks
        )
        logger.info(
            "batch_run event=created batch_id=%s session_id=%s task_count=%s",
            batch.batch_id,
            session_id,
            len(records),
        )
        return batch, records

    def execute(self, batch_id: str) -> BatchRecord:
        batch = self._require_batch(batch_id)
        if batch.status != "running":
            logger.info(
                "batch_run event=skipped batch_id=%s status=%s", batch_id, batch.status
            )
            return batch

        config = resolve_config(batch.config_overrides, defaults=self.defaults)
        handle: str | None = None
        try:
            handle = self.browser_provider.create(timeout_s=config.browser_timeout_s).handle
            # Persist right away so a concurrent stop can find and release it.
            self.storage.set_batch_browser_session(batch_id, handle)
        except Exception as exc:
            logger.exception("batch_run event=setup_failed batch_id=%s", batch_id)
            if handle:
                self._destroy_quietly(batch_id, handle)
            return self._finish(batch_id, "failed", error_message=str(exc))
        logger.info("batch_run event=browser_created batch_id=%s handle=%s", batch_id, handle)

        try:
            for task in self.storage.list_batch_tasks(batch_id):
                current_batch = self._require_batch(batch_id)
                if current_batch.status != "running":
                    logger.info(
                        "batch_run event=stop_observed batch_id=%s status=%s",
                        batch_id,
                        current_batch.status,
                    )
                    break

                current = self.storage.get_task(task.task_id)
                if current is None or current.status != "queued":
                    logger.info(
                        "batch_run event=task_skipped batch_id=%s task_id=%s status=%s",
                        batch_id,
                        task.task_id,
                        current.status if current else None,
                    )
                    continue

                handle = self._run_one(current_batch, current, handle)
        except Exception as exc:
            logger.exception("batch_run event=loop_failed batch_id=%s", batch_id)
            if handle:
                self._destroy_quietly(batch_id, handle)
                self.storage.set_batch_browser_session(batch_id, None)
            return self._finish(batch_id, "failed", error_message=str(exc))

        return self._finish(batch_id, "completed")

    def stop_batch(self, batch_id: str) -> BatchRecord:
        batch = self._require_batch(batch_id)
        stopped = stop_batch_records(self.storage, batch_id)
        if batch.browser_session_id:
            self._destroy_quietly(batch_id, batch.browser_session_id)
            stopped = self.storage.set_batch_browser_session(batch_id, None)
        logger.info("batch_run event=stopped batch_id=%s", batch_id)
        return stopped

    def stop_task(self, task_id: str) -> TaskRecord:
        return stop_task(self.storage, task_id)

    def resume_handle(self, task: TaskRecord) -> str | None:
        """Browser a resumed task should drive: the batch's live session, else the task's own."""
        if task.batch_id is not None:
            batch = self.storage.get_batch(task.batch_id)
            return batch.browser_session_id if batch else None
        return task.browser_session_id

    def resume_task(self, task_id: str, user_message: str) -> TaskOutcome | None:
        task = self.storage.get_task(task_id)
        if task is None:
            raise KeyError(f"Task {task_id} does not exist")
        if task.status not in RESUMABLE_TASK_STATUSES:
            raise InvalidTransitionError("task", task_id, task.status, "running")
        handle = self.resume_handle(task)
        if not handle:
            raise LookupError(f"Task {task_id} has no live browser session to resume on")

        config = self._config_for(task)
        try:
            return self.task_runner.resume(
                task, browser_handle=handle, config=config, user_message=user_message
            )
        except Exception as exc:
            logger.exception("task_run event=resume_failed task_id=%s", task_id)
            fail_task(self.storage, task_id, f"{TASK_ERROR_PREFIX}{exc}")
            return None

    def describe_batch(self, batch_id: str) -> BatchStatusView | None:
        batch = self.storage.get_batch(batch_id)
        if batch is None:
            return None
        summaries = [
            TaskSummary(
                task_id=task.task_id,
                task_index=task.task_index,
                status=task.status,
                user_message=task.user_message,
                result_message=task.result_message,
                agent_status=task.agent_status,
                agent_message=task.agent_message,
                current_iteration=task.current_iteration,
            )
            for task in self.storage.list_batch_tasks(batch_id)
        ]
        active = next(
            (task for task in summaries if task.status in ("running", "paused")), None
        )
        return BatchStatusView(
            batch=batch,
            overall_status=_overall_status(batch, summaries),
            tasks=summaries,
            active_task=active,
        )

    def _run_one(
        self, batch: BatchRecord, task: TaskRecord, handle: str | None
    ) -> str | None:
        config = self._config_for(task, batch)
        try:
            if handle is None:
                handle = self._open_browser(batch, config)
            outcome = self.task_runner.run(task, browser_handle=handle, config=config)
        except Exception as exc:
            logger.exception(
                "batch_run event=task_failed batch_id=%s task_index=%s error=%s",
                batch.batch_id,
                task.task_index,
                exc,
            )
            fail_task(self.storage, task.task_id, f"{TASK_ERROR_PREFIX}{exc}")
            self._account(batch.batch_id, task.task_id, raised=True)
        else:
            self._account(batch.batch_id, outcome.task.task_id, raised=False)

        if task.destroy_browser_on_completion and handle:
            self._destroy_quietly(batch.batch_id, handle)
            self.storage.set_batch_browser_session(batch.batch_id, None)
            handle = None
        return handle

    def _account(self, batch_id: str, task_id: str, *, raised: bool) -> None:
        """Count by loop outcome: a loop that raised and left the task failed counts as failed.

        An agent-reported failure is a loop success. Nothing is counted once the
        batch itself was stopped.
        """
        batch = self._require_batch(batch_id)
        if batch.status == "stopped":
            logger.info(
                "batch_run event=count_skipped batch_id=%s task_id=%s", batch_id, task_id
            )
            return
        task = self.storage.get_task(task_id)
        failed = raised and task is not None and task.status == "failed"
        self._count(batch_id, "failed" if failed else "completed")

    def _count(self, batch_id: str, counter: BatchCounter) -> None:
        try:
            updated = self.storage.increment_batch_counter(batch_id, counter)
        except CounterLimitError:
            logger.error(
                "batch_run event=counter_limit batch_id=%s counter=%s", batch_id, counter
            )
            return
        logger.info(
            "batch_run event=counted batch_id=%s completed=%s failed=%s total=%s",
            batch_id,
            updated.completed_count,
            updated.failed_count,
            updated.task_count,
        )

    def _config_for(self, task: TaskRecord, batch: BatchRecord | None = None) -> ExecutionConfig:
        if batch is None and task.batch_id is not None:
            batch = self.storage.get_batch(task.batch_id)
        if batch is None:
            return resolve_config(None, task.config_overrides, defaults=self.defaults)
        return resolve_config(
            batch.config_overrides,
            task.config_overrides,
            defaults=self.defaults,
            webhook_url=batch.webhook_url,
            webhook_secret=batch.webhook_secret,
            batch_execution_id=batch.batch_id,
            task_index=task.task_index,
        )

    def _open_browser(self, batch: BatchRecord, config: ExecutionConfig) -> str:
        """Replacement session for a batch whose previous one was released by a task."""
        session = self.browser_provider.create(timeout_s=config.browser_timeout_s)
        self.storage.set_batch_browser_session(batch.batch_id, session.handle)
        logger.info(
            "batch_run event=browser_recreated batch_id=%s handle=%s",
            batch.batch_id,
            session.handle,
        )
        return session.handle

    def _destroy_quietly(self, batch_id: str, handle: str) -> None:
        try:
            self.browser_provider.destroy(handle)
        except Exception:
            logger.warning(
                "batch_run event=browser_destroy_failed batch_id=%s handle=%s",
                batch_id,
                handle,
                exc_info=True,
            )
            return
        logger.info("batch_run event=browser_destroyed batch_id=%s handle=%s", batch_id, handle)

    def _finish(
        self, batch_id: str, target: str, *, error_message: str | None = None
    ) -> BatchRecord:
        batch = self._require_batch(batch_id)
        if batch.status != "running":
            # A stop is terminal and is never overwritten.
            return batch
        try:
            return transition_batch(self.storage, batch_id, target, error_message=error_message)
        except InvalidTransitionError:
            logger.info("batch_run event=finish_skipped batch_id=%s", batch_id)
            return self._require_batch(batch_id)

    def _require_batch(self, batch_id: str) -> BatchRecord:
        batch = self.storage.get_batch(batch_id)
        if batch is None:
            raise KeyError(f"Batch {batch_id} does not exist")
        return batch


def _overall_status(batch: BatchRecord, tasks: list[TaskSummary]) -> str:
    """Status as seen through the tasks; a paused task shows the batch as paused."""
    statuses = {task.status for task in tasks}
    if "running" in statuses:
        return "running"
    if "paused" in statuses:
        return "paused"
    if tasks and statuses == {"completed"}:
        return "completed"
    if "failed" in statuses:
        return "failed"
    return batch.status
