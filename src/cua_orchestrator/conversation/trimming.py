"""Keep a conversation under the token budget without breaking tool pairing.

All helpers return new message lists; the input is never mutated. Tool-use
blocks are never removed, and a tool result is only ever collapsed in place,
so every ``tool_use_id`` keeps its partner.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from cua_orchestrator.conversation.blocks import (
    ContentBlock,
    ConversationMessage,
    ImageBlock,
    RedactedThinkingBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
IMAGE_TOKENS = 1500
CLEARED_TOOL_RESULT = "[Tool result cleared to save context]"
SCREENSHOT_REMOVED = "[Screenshot removed to save context]"


def _text_tokens(text: str) -> int:
    return (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def block_tokens(block: ContentBlock) -> int:
    if isinstance(block, TextBlock):
        return _text_tokens(block.text)
    if isinstance(block, ImageBlock):
        return IMAGE_TOKENS
    if isinstance(block, ThinkingBlock):
        return _text_tokens(block.thinking)
    if isinstance(block, RedactedThinkingBlock):
        return _text_tokens(block.data)
    if isinstance(block, ToolUseBlock):
        return _text_tokens(block.name) + _text_tokens(json.dumps(block.input))
    if isinstance(block, ToolResultBlock):
        return sum(block_tokens(item) for item in block.content_blocks())
    return 0


def estimate_tokens(messages: Sequence[ConversationMessage]) -> int:
    """Rough estimate used when the provider has not reported usage yet."""
    return sum(block_tokens(block) for message in messages for block in message.blocks())


@dataclass(frozen=True)
class TrimResult:
    messages: list[ConversationMessage]
    cleared: int = 0
    freed_tokens: int = 0
    triggered: bool = False


def _is_cleared(block: ToolResultBlock) -> bool:
    items = block.content_blocks()
    return (
        len(items) == 1
        and isinstance(items[0], TextBlock)
        and items[0].text == CLEARED_TOOL_RESULT
    )


def _replace_blocks(
    messages: Sequence[ConversationMessage],
    replacements: dict[tuple[int, int], ContentBlock | None],
) -> list[ConversationMessage]:
    """Copy ``messages`` swapping (message, block) positions; ``None`` drops the block."""
    if not replacements:
        return list(messages)
    output: list[ConversationMessage] = []
    for message_idx, message in enumerate(messages):
        if isinstance(message.content, str):
            output.append(message)
            continue
        touched = False
        content: list[ContentBlock] = []
        for block_idx, block in enumerate(message.content):
            key = (message_idx, block_idx)
            if key not in replacements:
                content.append(block)
                continue
            touched = True
            replacement = replacements[key]
            if replacement is not None:
                content.append(replacement)
        output.append(message.model_copy(update={"content": content}) if touched else message)
    return output


class ContextTrimmer:
    """Collapses old tool results once the context grows past ``trigger_tokens``."""

    def __init__(
        self,
        *,
        trigger_tokens: int,
        keep_tool_uses: int,
        clear_min_tokens: int,
    ) -> None:
        self.trigger_tokens = trigger_tokens
        self.keep_tool_uses = max(0, keep_tool_uses)
        self.clear_min_tokens = max(0, clear_min_tokens)

    def trim(
        self,
        messages: Sequence[ConversationMessage],
        input_tokens: int | None = None,
    ) -> TrimResult:
        if self.trigger_tokens <= 0:
            return TrimResult(messages=list(messages))
        measured = input_tokens if input_tokens is not None else estimate_tokens(messages)
        if measured <= self.trigger_tokens:
            return TrimResult(messages=list(messages))

        results: list[tuple[int, int, ToolResultBlock]] = []
        for message_idx, message in enumerate(messages):
            if isinstance(message.content, str):
                continue
            for block_idx, block in enumerate(message.content):
                if isinstance(block, ToolResultBlock):
                    results.append((message_idx, block_idx, block))

        older = results[: max(0, len(results) - self.keep_tool_uses)]
        replacements: dict[tuple[int, int], ContentBlock | None] = {}
        freed = 0
        for message_idx, block_idx, block in older:
            if _is_cleared(block):
                continue
            collapsed = block.model_copy(
                update={"content": [TextBlock(text=CLEARED_TOOL_RESULT)]}
            )
            saving = block_tokens(block) - block_tokens(collapsed)
            if saving <= 0:
                continue
            replacements[(message_idx, block_idx)] = collapsed
            freed += saving

        if not replacements or freed < self.clear_min_tokens:
            logger.info(
                "context_trim event=skipped measured=%s trigger=%s freeable=%s min=%s",
                measured,
                self.trigger_tokens,
                freed,
                self.clear_min_tokens,
            )
            return TrimResult(messages=list(messages), triggered=True)

        logger.info(
            "context_trim event=cleared measured=%s cleared=%s freed_tokens=%s",
            measured,
            len(replacements),
            freed,
        )
        return TrimResult(
            messages=_replace_blocks(messages, replacements),
            cleared=len(replacements),
            freed_tokens=freed,
            triggered=True,
        )


def retain_recent_screenshots(
    messages: Sequence[ConversationMessage], keep: int
) -> list[ConversationMessage]:
    """Keep only the newest ``keep`` base64 screenshots; older and sanitized ones become text."""
    replacements: dict[tuple[int, int], ContentBlock | None] = {}
    kept = 0
    for message_idx in range(len(messages) - 1, -1, -1):
        message = messages[message_idx]
        if isinstance(message.content, str):
            continue
        for block_idx in range(len(message.content) - 1, -1, -1):
            block = message.content[block_idx]
            if isinstance(block, ImageBlock):
                if block.is_sanitized or kept >= keep:
                    replacements[(message_idx, block_idx)] = TextBlock(text=SCREENSHOT_REMOVED)
                else:
                    kept += 1
            elif isinstance(block, ToolResultBlock) and isinstance(block.content, list):
                new_items: list[TextBlock | ImageBlock] = []
                changed = False
                for item in reversed(block.content):
                    if isinstance(item, ImageBlock) and (item.is_sanitized or kept >= keep):
                        new_items.append(TextBlock(text=SCREENSHOT_REMOVED))
                        changed = True
                        continue
                    if isinstance(item, ImageBlock):
                        kept += 1
                    new_items.append(item)
                if changed:
                    new_items.reverse()
                    replacements[(message_idx, block_idx)] = block.model_copy(
                        update={"content": new_items}
                    )
    return _replace_blocks(messages, replacements)


def retain_recent_thinking(
    messages: Sequence[ConversationMessage], keep: int
) -> list[ConversationMessage]:
    """Drop thinking blocks from all but the newest ``keep`` assistant turns that have them."""
    replacements: dict[tuple[int, int], ContentBlock | None] = {}
    seen = 0
    for message_idx in range(len(messages) - 1, -1, -1):
        message = messages[message_idx]
        if message.role != "assistant" or isinstance(message.content, str):
            continue
        thinking = [
            block_idx
            for block_idx, block in enumerate(message.content)
            if isinstance(block, (ThinkingBlock, RedactedThinkingBlock))
        ]
        if not thinking:
            continue
        seen += 1
        if seen <= keep or len(thinking) == len(message.content):
            continue
        for block_idx in thinking:
            replacements[(message_idx, block_idx)] = None
    return _replace_blocks(messages, replacements)


def find_unmatched_tool_blocks(messages: Sequence[ConversationMessage]) -> list[str]:
    """Ids that appear on only one side of a tool_use/tool_result pair."""
    uses: set[str] = set()
    results: set[str] = set()
    for message in messages:
        for block in message.blocks():
            if isinstance(block, ToolUseBlock):
                uses.add(block.id)
            elif isinstance(block, ToolResultBlock):
                results.add(block.tool_use_id)
    return sorted(uses ^ results)
