"""Typed conversation content, resume reconstruction and context trimming."""

from cua_orchestrator.conversation.blocks import (
    ContentBlock,
    ConversationMessage,
    ImageBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    parse_messages,
    sanitize_payload,
)
from cua_orchestrator.conversation.reconstruct import reconstruct, reconstruct_for_task
from cua_orchestrator.conversation.trimming import (
    ContextTrimmer,
    TrimResult,
    estimate_tokens,
    find_unmatched_tool_blocks,
    retain_recent_screenshots,
    retain_recent_thinking,
)

__all__ = [
    "ContentBlock",
    "ContextTrimmer",
    "ConversationMessage",
    "ImageBlock",
    "TextBlock",
    "ThinkingBlock",
    "ToolResultBlock",
    "ToolUseBlock",
    "TrimResult",
    "estimate_tokens",
    "find_unmatched_tool_blocks",
    "parse_messages",
    "reconstruct",
    "reconstruct_for_task",
    "retain_recent_screenshots",
    "retain_recent_thinking",
    "sanitize_payload",
]
