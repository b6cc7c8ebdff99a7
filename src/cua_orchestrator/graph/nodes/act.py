"""Act node: execute requested tools and record any status the agent reports."""

from __future__ import annotations

import logging

from cua_orchestrator.conversation.blocks import (
    ContentBlock,
    ConversationMessage,
    ToolUseBlock,
    dump_blocks,
    joined_text,
    sanitize_payload,
)
from cua_orchestrator.executor.lifecycle import AGENT_TO_TASK_STATUS, apply_agent_report
from cua_orchestrator.graph.runtime import AgentRuntime
from cua_orchestrator.graph.state import AgentState
from cua_orchestrator.tools.schemas import ReportTaskStatusInput
from cua_orchestrator.webhook.dispatcher import WebhookPayload

logger = logging.getLogger(__name__)


def build(runtime: AgentRuntime):
    def run(state: AgentState) -> AgentState:
        response = state.get("response")
        blocks = list(response.content) if response is not None else []
        tool_uses = [block for block in blocks if isinstance(block, ToolUseBlock)]
        if not tool_uses:
            return {"outcome": "ended", "final_text": joined_text(blocks)}

        results: list[ContentBlock] = []
        report: ReportTaskStatusInput | None = None
        for tool_use in tool_uses:
            outcome = runtime.tools.execute(tool_use)
            results.append(outcome.result)
            if outcome.reported_status is not None:
                report = outcome.reported_status

        exchange_id = state.get("exchange_id")
        if exchange_id:
            runtime.storage.attach_tool_results(
                exchange_id, sanitize_payload(dump_blocks(results))
            )

        messages = list(state.get("messages", []))
        messages.append(ConversationMessage(role="user", content=results))
        updates: AgentState = {"messages": messages}
        if report is None:
            return updates

        _record_report(runtime, report)
        updates["outcome"] = "reported"
        updates["reported_status"] = report.status
        updates["final_text"] = report.message
        return updates

    return run


def _record_report(runtime: AgentRuntime, report: ReportTaskStatusInput) -> None:
    task = runtime.task
    config = runtime.config
    persisted = apply_agent_report(
        runtime.storage,
        task.task_id,
        agent_status=report.status,
        message=report.message,
        evidence=report.evidence,
    )
    logger.info(
        "agent_loop event=status_reported task_id=%s agent_status=%s persisted=%s",
        task.task_id,
        report.status,
        persisted is not None,
    )
    if persisted is None or not config.webhook_url or config.batch_execution_id is None:
        return

    payload = WebhookPayload(
        batch_execution_id=config.batch_execution_id,
        task_id=task.task_id,
        task_index=config.task_index if config.task_index is not None else 0,
        status=AGENT_TO_TASK_STATUS[report.status],
        agent_status=report.status,
        message=report.message,
        reasoning=report.reasoning or report.message,
        next_step=report.next_step,
        evidence=report.evidence,
    )
    try:
        runtime.notify(config.webhook_url, payload, config.webhook_secret)
    except Exception:
        # Delivery is best-effort; the persisted report stands either way.
        logger.exception(
            "agent_loop event=notify_failed task_id=%s url=%s", task.task_id, config.webhook_url
        )
