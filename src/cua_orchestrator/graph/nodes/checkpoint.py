"""Checkpoint node: observe stop requests and the iteration budget between iterations."""

from __future__ import annotations

import logging

from cua_orchestrator.graph.runtime import AgentRuntime, IterationLimitReached
from cua_orchestrator.graph.state import AgentState

logger = logging.getLogger(__name__)


def build(runtime: AgentRuntime):
    task = runtime.task
    config = runtime.config

    def run(state: AgentState) -> AgentState:
        if state.get("outcome"):
            return {}

        # A batch stop also moves its running task to stopped, so the task row is enough.
        current = runtime.storage.get_task(task.task_id)
        if current is None or current.status != "running":
            logger.info(
                "agent_loop event=stop_observed task_id=%s status=%s",
                task.task_id,
                current.status if current else None,
            )
            return {"outcome": "stopped"}

        if int(state.get("run_iterations", 0)) >= config.max_iterations:
            raise IterationLimitReached(
                f"Reached {config.max_iterations} iterations without a status report"
            )

        if config.sampling_delay_ms > 0:
            runtime.sleep(config.sampling_delay_ms / 1000.0)
        return {}

    return run
