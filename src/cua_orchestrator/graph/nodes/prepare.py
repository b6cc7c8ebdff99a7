"""Prepare node: shrink the context and build the next model request."""

from __future__ import annotations

from typing import Any

from cua_orchestrator.config.resolver import ExecutionConfig
from cua_orchestrator.conversation.blocks import ConversationMessage, dump_messages
from cua_orchestrator.conversation.trimming import (
    retain_recent_screenshots,
    retain_recent_thinking,
)
from cua_orchestrator.graph.runtime import AgentRuntime
from cua_orchestrator.graph.state import AgentState
from cua_orchestrator.tools.definitions import (
    COMPUTER_USE_BETA,
    CONTEXT_MANAGEMENT_BETA,
    DEFAULT_SYSTEM_PROMPT,
    build_tool_definitions,
)


def build(runtime: AgentRuntime):
    def run(state: AgentState) -> AgentState:
        config = runtime.config
        trimmed = runtime.trimmer.trim(state.get("messages", []), state.get("input_tokens"))
        messages = retain_recent_screenshots(trimmed.messages, config.max_base64_screenshots)
        messages = retain_recent_thinking(messages, config.keep_recent_thinking_blocks)
        return {"messages": messages, "request": build_request(config, messages)}

    return run


def build_request(
    config: ExecutionConfig, messages: list[ConversationMessage]
) -> dict[str, Any]:
    request: dict[str, Any] = {
        "model": config.model,
        "max_tokens": config.max_tokens,
        "system": config.system_prompt or DEFAULT_SYSTEM_PROMPT,
        "messages": dump_messages(messages),
        "tools": build_tool_definitions(),
        "betas": [COMPUTER_USE_BETA, CONTEXT_MANAGEMENT_BETA],
    }
    if config.thinking_budget_tokens > 0:
        request["thinking"] = {"type": "enabled", "budget_tokens": config.thinking_budget_tokens}
    return request
