"""Task and batch status transitions.

Every status change goes through this module so the state machine is enforced
in one place. Reads and writes are separate calls; the single batch worker is
the only writer of a task while it runs, apart from stop requests.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from cua_orchestrator.storage.base import OrchestratorStorage
from cua_orchestrator.storage.models import (
    AgentStatus,
    BatchRecord,
    BatchStatus,
    TaskRecord,
    TaskStatus,
)

logger = logging.getLogger(__name__)

TASK_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running", "stopped", "failed"}),
    "running": frozenset({"completed", "failed", "paused", "stopped"}),
    "paused": frozenset({"running", "stopped"}),
    "stopped": frozenset({"running"}),
    "completed": frozenset(),
    "failed": frozenset(),
}
BATCH_TRANSITIONS: dict[str, frozenset[str]] = {
    "running": frozenset({"completed", "failed", "stopped"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "stopped": frozenset(),
}
TASK_FINISHED = frozenset({"completed", "failed", "stopped"})
RESUMABLE_TASK_STATUSES = frozenset({"paused", "stopped"})

AGENT_TO_TASK_STATUS: dict[str, TaskStatus] = {
    "completed": "completed",
    "failed": "failed",
    "needs_clarification": "paused",
}

BATCH_STOP_RUNNING_MESSAGE = "Task stopped as part of batch stop"
BATCH_STOP_QUEUED_MESSAGE = "Task cancelled - batch execution stopped by user"


class InvalidTransitionError(ValueError):
    def __init__(self, kind: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {kind} {entity_id} from {current} to {target}")
        self.kind = kind
        self.entity_id = entity_id
        self.current = current
        self.target = target


def can_transition_task(current: str, target: str) -> bool:
    return target in TASK_TRANSITIONS.get(current, frozenset())


def transition_task(
    storage: OrchestratorStorage,
    task_id: str,
    target: TaskStatus,
    **changes: Any,
) -> TaskRecord:
    task = storage.get_task(task_id)
    if task is None:
        raise KeyError(f"Task {task_id} does not exist")
    if not can_transition_task(task.status, target):
        raise InvalidTransitionError("task", task_id, task.status, target)

    now = datetime.now(UTC)
    if target == "running":
        changes.setdefault("started_at", task.started_at or now)
        changes.setdefault("completed_at", None)
    elif target in TASK_FINISHED:
        changes.setdefault("completed_at", now)
    updated = storage.update_task(task_id, status=target, **changes)
    logger.info(
        "task_lifecycle event=transition task_id=%s from=%s to=%s",
        task_id,
        task.status,
        target,
    )
    return updated


def transition_batch(
    storage: OrchestratorStorage,
    batch_id: str,
    target: BatchStatus,
    *,
    error_message: str | None = None,
) -> BatchRecord:
    batch = storage.get_batch(batch_id)
    if batch is None:
        raise KeyError(f"Batch {batch_id} does not exist")
    if target not in BATCH_TRANSITIONS.get(batch.status, frozenset()):
        raise InvalidTransitionError("batch", batch_id, batch.status, target)
    updated = storage.update_batch(batch_id, status=target, error_message=error_message)
    logger.info(
        "batch_lifecycle event=transition batch_id=%s from=%s to=%s",
        batch_id,
        batch.status,
        target,
    )
    return updated


def start_task(
    storage: OrchestratorStorage, task_id: str, *, browser_session_id: str
) -> TaskRecord:
    return transition_task(
        storage,
        task_id,
        "running",
        browser_session_id=browser_session_id,
        result_message=None,
    )


def fail_task(storage: OrchestratorStorage, task_id: str, message: str) -> TaskRecord | None:
    """Mark a task failed; a task already stopped or finished keeps its status."""
    task = storage.get_task(task_id)
    if task is None or not can_transition_task(task.status, "failed"):
        logger.warning(
            "task_lifecycle event=fail_skipped task_id=%s status=%s",
            task_id,
            task.status if task else None,
        )
        return task
    return transition_task(storage, task_id, "failed", result_message=message)


def apply_agent_report(
    storage: OrchestratorStorage,
    task_id: str,
    *,
    agent_status: AgentStatus,
    message: str,
    evidence: dict[str, Any] | None = None,
) -> TaskRecord | None:
    """Persist a status the agent reported. Returns None when a stop already won."""
    target = AGENT_TO_TASK_STATUS[agent_status]
    task = storage.get_task(task_id)
    if task is None:
        raise KeyError(f"Task {task_id} does not exist")
    if not can_transition_task(task.status, target):
        logger.warning(
            "task_lifecycle event=report_ignored task_id=%s status=%s reported=%s",
            task_id,
            task.status,
            agent_status,
        )
        return None
    return transition_task(
        storage,
        task_id,
        target,
        agent_status=agent_status,
        agent_message=message,
        agent_evidence=evidence,
        result_message=message,
    )


def stop_task(storage: OrchestratorStorage, task_id: str) -> TaskRecord:
    """Only a running task can be stopped; nothing but its status changes."""
    task = storage.get_task(task_id)
    if task is None:
        raise KeyError(f"Task {task_id} does not exist")
    if task.status != "running":
        raise InvalidTransitionError("task", task_id, task.status, "stopped")
    return transition_task(storage, task_id, "stopped")


def stop_batch_records(storage: OrchestratorStorage, batch_id: str) -> BatchRecord:
    """Stop a running batch along with its running and queued tasks."""
    batch = transition_batch(storage, batch_id, "stopped")
    now = datetime.now(UTC)
    storage.update_batch_tasks_with_status(
        batch_id,
        where_status="running",
        status="stopped",
        result_message=BATCH_STOP_RUNNING_MESSAGE,
        completed_at=now,
    )
    storage.update_batch_tasks_with_status(
        batch_id,
        where_status="queued",
        status="stopped",
        result_message=BATCH_STOP_QUEUED_MESSAGE,
        completed_at=now,
    )
    return batch
