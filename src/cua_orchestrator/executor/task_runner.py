"""Run one task, fresh or resumed, through the agent graph."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cua_orchestrator.config.resolver import ExecutionConfig
from cua_orchestrator.conversation.blocks import ConversationMessage
from cua_orchestrator.conversation.reconstruct import reconstruct_for_task
from cua_orchestrator.executor.lifecycle import (
    RESUMABLE_TASK_STATUSES,
    InvalidTransitionError,
    start_task,
    transition_task,
)
from cua_orchestrator.graph.runtime import AgentRuntime, IterationLimitReached
from cua_orchestrator.graph.state import initial_state
from cua_orchestrator.graph.workflow import run_agent
from cua_orchestrator.memory.store import MemoryStore
from cua_orchestrator.providers.browser import BrowserProvider
from cua_orchestrator.providers.model import ModelProvider
from cua_orchestrator.storage.base import OrchestratorStorage
from cua_orchestrator.storage.models import TaskRecord
from cua_orchestrator.tools.definitions import task_message
from cua_orchestrator.tools.gateway import ToolExecutor
from cua_orchestrator.webhook.dispatcher import WebhookPayload

logger = logging.getLogger(__name__)

__all__ = ["IterationLimitReached", "TaskOutcome", "TaskRunner"]


@dataclass(frozen=True)
class TaskOutcome:
    task: TaskRecord
    outcome: str | None
    reported_status: str | None = None


class TaskRunner:
    """Drives the agent graph for one task against a borrowed browser handle.

    The runner never creates or destroys browsers. Exceptions from the loop
    propagate; the caller decides how a failed run is accounted.
    """

    def __init__(
        self,
        *,
        storage: OrchestratorStorage,
        model_provider: ModelProvider,
        browser_provider: BrowserProvider,
        memory_store: MemoryStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
        notify: Callable[[str, WebhookPayload, str | None], Any] | None = None,
    ) -> None:
        self.storage = storage
        self.model_provider = model_provider
        self.browser_provider = browser_provider
        self.memory_store = memory_store or MemoryStore(storage)
        self.sleep = sleep
        self.notify = notify

    def run(
        self, task: TaskRecord, *, browser_handle: str, config: ExecutionConfig
    ) -> TaskOutcome:
        running = start_task(self.storage, task.task_id, browser_session_id=browser_handle)
        self._record_user_message(running, running.user_message)
        messages = [
            ConversationMessage(
                role="user", content=task_message(running.task_id, running.user_message)
            )
        ]
        logger.info(
            "task_run event=started task_id=%s batch_id=%s task_index=%s",
            running.task_id,
            running.batch_id,
            running.task_index,
        )
        return self._drive(running, messages, browser_handle, config)

    def resume(
        self,
        task: TaskRecord,
        *,
        browser_handle: str,
        config: ExecutionConfig,
        user_message: str,
    ) -> TaskOutcome:
        if task.status not in RESUMABLE_TASK_STATUSES:
            raise InvalidTransitionError("task", task.task_id, task.status, "running")

        # Rebuild before the new user message is persisted so it is not read back as history.
        messages = reconstruct_for_task(self.storage, task.task_id, user_message)
        running = transition_task(
            self.storage,
            task.task_id,
            "running",
            browser_session_id=browser_handle,
            result_message=None,
        )
        self._record_user_message(running, user_message)
        logger.info(
            "task_run event=resumed task_id=%s iteration=%s messages=%s",
            running.task_id,
            running.current_iteration,
            len(messages),
        )
        return self._drive(running, messages, browser_handle, config)

    def _drive(
        self,
        task: TaskRecord,
        messages: list[ConversationMessage],
        browser_handle: str,
        config: ExecutionConfig,
    ) -> TaskOutcome:
        tools = ToolExecutor(
            browser=self.browser_provider,
            browser_handle=browser_handle,
            memory_store=self.memory_store,
            typing_delay_ms=config.typing_delay_ms,
            sleep=self.sleep,
        )
        runtime = AgentRuntime.for_task(
            task=task,
            config=config,
            storage=self.storage,
            model=self.model_provider,
            tools=tools,
            sleep=self.sleep,
            notify=self.notify,
        )
        final = run_agent(runtime, initial_state(messages, iteration=task.current_iteration))

        outcome = final.get("outcome")
        if outcome == "ended":
            self._complete_without_report(task.task_id, final.get("final_text") or "")

        record = self.storage.get_task(task.task_id)
        if record is None:
            raise KeyError(f"Task {task.task_id} does not exist")
        logger.info(
            "task_run event=finished task_id=%s outcome=%s status=%s iteration=%s",
            record.task_id,
            outcome,
            record.status,
            record.current_iteration,
        )
        return TaskOutcome(
            task=record,
            outcome=outcome,
            reported_status=final.get("reported_status"),
        )

    def _complete_without_report(self, task_id: str, final_text: str) -> None:
        current = self.storage.get_task(task_id)
        if current is None or current.status != "running":
            return
        transition_task(
            self.storage,
            task_id,
            "completed",
            result_message=final_text or "Agent finished without reporting a status",
        )

    def _record_user_message(self, task: TaskRecord, content: str) -> None:
        self.storage.add_message(
            session_id=task.session_id,
            task_id=task.task_id,
            role="user",
            content=content,
        )
