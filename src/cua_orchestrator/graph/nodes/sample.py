"""Sample node: one model call, persisted as an exchange before any tool runs."""

from __future__ import annotations

import logging

from cua_orchestrator.conversation.blocks import ConversationMessage, joined_text, sanitize_payload
from cua_orchestrator.graph.runtime import AgentRuntime
from cua_orchestrator.graph.state import AgentState

logger = logging.getLogger(__name__)


def build(runtime: AgentRuntime):
    task = runtime.task

    def run(state: AgentState) -> AgentState:
        request = state.get("request", {})
        response = runtime.model.create_message(request)

        iteration = int(state.get("iteration", 0)) + 1
        runtime.storage.update_task(task.task_id, current_iteration=iteration)
        exchange = runtime.storage.add_message(
            session_id=task.session_id,
            task_id=task.task_id,
            role="assistant",
            content=joined_text(response.content),
            model_request=sanitize_payload(request),
            model_response=sanitize_payload(response.to_record()),
            iteration=iteration,
        )

        usage = response.usage
        input_tokens = (
            usage.input_tokens
            + (usage.cache_read_input_tokens or 0)
            + (usage.cache_creation_input_tokens or 0)
        )
        logger.info(
            "agent_loop event=sampled task_id=%s iteration=%s stop_reason=%s input_tokens=%s",
            task.task_id,
            iteration,
            response.stop_reason,
            input_tokens,
        )

        messages = list(state.get("messages", []))
        if response.content:
            messages.append(ConversationMessage(role="assistant", content=list(response.content)))
        return {
            "messages": messages,
            "response": response,
            "exchange_id": exchange.message_id,
            "input_tokens": input_tokens,
            "iteration": iteration,
            "run_iterations": int(state.get("run_iterations", 0)) + 1,
        }

    return run
