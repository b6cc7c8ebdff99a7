"""Rebuild a task's tool-aware conversation when it resumes with a new user message."""

from __future__ import annotations

import logging

from cua_orchestrator.conversation.blocks import (
    ContentBlock,
    ConversationMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    parse_blocks,
    parse_messages,
)
from cua_orchestrator.storage.base import OrchestratorStorage
from cua_orchestrator.storage.models import MessageRecord

logger = logging.getLogger(__name__)

INTERRUPTED_RESULT = (
    "Action was interrupted before it completed; its outcome is unknown. "
    "Take a screenshot to check the current state before continuing."
)


def reconstruct(
    exchange: MessageRecord | None, new_user_message: str
) -> list[ConversationMessage]:
    """Return prior history, the assistant turn the agent acted on, then the new user turn.

    The persisted request already holds every earlier tool_use/tool_result pair,
    so history is taken from it verbatim. Tool invocations in the persisted
    response are answered from the results stored on the exchange; nothing is
    re-executed.
    """
    if exchange is None or not exchange.model_request:
        return [ConversationMessage(role="user", content=new_user_message)]

    history = parse_messages(exchange.model_request.get("messages") or [])
    response_blocks = parse_blocks((exchange.model_response or {}).get("content") or [])

    messages = list(history)
    if response_blocks:
        messages.append(ConversationMessage(role="assistant", content=response_blocks))

    pending = [block for block in response_blocks if isinstance(block, ToolUseBlock)]
    if not pending:
        messages.append(ConversationMessage(role="user", content=new_user_message))
        return messages

    executed = {
        block.tool_use_id: block
        for block in parse_blocks(exchange.tool_results or [])
        if isinstance(block, ToolResultBlock)
    }
    user_blocks: list[ContentBlock] = []
    for tool_use in pending:
        result = executed.get(tool_use.id)
        if result is None:
            logger.info(
                "reconstruct event=interrupted_tool task_id=%s tool_use_id=%s",
                exchange.task_id,
                tool_use.id,
            )
            result = ToolResultBlock(
                tool_use_id=tool_use.id,
                content=[TextBlock(text=INTERRUPTED_RESULT)],
                is_error=True,
            )
        user_blocks.append(result)
    user_blocks.append(TextBlock(text=new_user_message))
    messages.append(ConversationMessage(role="user", content=user_blocks))
    return messages


def reconstruct_for_task(
    storage: OrchestratorStorage, task_id: str, new_user_message: str
) -> list[ConversationMessage]:
    exchange = storage.get_latest_exchange(task_id)
    messages = reconstruct(exchange, new_user_message)
    logger.info(
        "reconstruct event=loaded task_id=%s found_exchange=%s messages=%s",
        task_id,
        exchange is not None,
        len(messages),
    )
    return messages
