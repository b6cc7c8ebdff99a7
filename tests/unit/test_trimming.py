from __future__ import annotations

import pytest

from cua_orchestrator.conversation.blocks import (
    IMAGE_DATA_REMOVED,
    ConversationMessage,
    ImageBlock,
    ImageSource,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    count_block_types,
)
from cua_orchestrator.conversation.trimming import (
    CLEARED_TOOL_RESULT,
    SCREENSHOT_REMOVED,
    ContextTrimmer,
    estimate_tokens,
    find_unmatched_tool_blocks,
    retain_recent_screenshots,
    retain_recent_thinking,
)


def _image(data: str = "QUJD") -> ImageBlock:
    return ImageBlock(source=ImageSource(data=data))


def _conversation(turns: int, *, result_chars: int = 4000) -> list[ConversationMessage]:
    messages = [ConversationMessage(role="user", content="do the thing")]
    for index in range(turns):
        tool_id = f"tu_{index}"
        messages.append(
            ConversationMessage(
                role="assistant",
                content=[
                    ThinkingBlock(thinking=f"step {index}", signature="sig"),
                    ToolUseBlock(id=tool_id, name="computer", input={"action": "screenshot"}),
                ],
            )
        )
        messages.append(
            ConversationMessage(
                role="user",
                content=[
                    ToolResultBlock(
                        tool_use_id=tool_id,
                        content=[TextBlock(text="x" * result_chars), _image()],
                    )
                ],
            )
        )
    return messages


def _results(messages: list[ConversationMessage]) -> list[ToolResultBlock]:
    return [
        block
        for message in messages
        for block in message.blocks()
        if isinstance(block, ToolResultBlock)
    ]


def test_below_trigger_returns_input_unchanged() -> None:
    messages = _conversation(4)
    trimmer = ContextTrimmer(trigger_tokens=1_000_000, keep_tool_uses=1, clear_min_tokens=0)

    result = trimmer.trim(messages)

    assert result.messages == messages
    assert not result.triggered
    assert result.cleared == 0


def test_collapses_all_but_most_recent_results() -> None:
    messages = _conversation(5)
    trimmer = ContextTrimmer(trigger_tokens=100, keep_tool_uses=2, clear_min_tokens=0)

    result = trimmer.trim(messages)

    results = _results(result.messages)
    assert result.cleared == 3
    assert result.freed_tokens > 0
    assert [block.content[0].text for block in results[:3]] == [CLEARED_TOOL_RESULT] * 3
    assert all(len(block.content) == 2 for block in results[3:])
    assert [block.tool_use_id for block in results] == [f"tu_{i}" for i in range(5)]
    # The input list is left alone.
    assert _results(messages)[0].content[0].text == "x" * 4000


def test_minimum_saving_gate_skips_small_clears() -> None:
    messages = _conversation(3, result_chars=40)
    trimmer = ContextTrimmer(trigger_tokens=10, keep_tool_uses=1, clear_min_tokens=1_000_000)

    result = trimmer.trim(messages)

    assert result.triggered
    assert result.cleared == 0
    assert result.messages == messages


def test_reported_input_tokens_take_precedence_over_estimate() -> None:
    messages = _conversation(2, result_chars=10)
    trimmer = ContextTrimmer(trigger_tokens=50_000, keep_tool_uses=0, clear_min_tokens=0)

    assert not trimmer.trim(messages, input_tokens=10).triggered
    assert trimmer.trim(messages, input_tokens=60_000).cleared == 2


def test_disabled_when_trigger_is_zero() -> None:
    messages = _conversation(3)
    trimmer = ContextTrimmer(trigger_tokens=0, keep_tool_uses=0, clear_min_tokens=0)

    assert trimmer.trim(messages, input_tokens=10**9).cleared == 0


@pytest.mark.parametrize("keep", [0, 1, 3, 10])
def test_pairing_survives_any_keep_count(keep: int) -> None:
    messages = _conversation(6)
    trimmer = ContextTrimmer(trigger_tokens=1, keep_tool_uses=keep, clear_min_tokens=0)

    trimmed = trimmer.trim(messages).messages

    assert find_unmatched_tool_blocks(trimmed) == []
    before = count_block_types(messages)
    after = count_block_types(trimmed)
    assert after["tool_use"] == before["tool_use"]
    assert after["tool_result"] == before["tool_result"]


def test_already_cleared_results_are_not_counted_twice() -> None:
    trimmer = ContextTrimmer(trigger_tokens=1, keep_tool_uses=1, clear_min_tokens=0)
    once = trimmer.trim(_conversation(4)).messages

    again = trimmer.trim(once)

    assert again.cleared == 0


def test_screenshot_retention_keeps_newest_images() -> None:
    messages = _conversation(4)

    kept = retain_recent_screenshots(messages, 2)

    images = [
        item
        for block in _results(kept)
        for item in block.content
        if isinstance(item, ImageBlock)
    ]
    placeholders = [
        block.tool_use_id
        for block in _results(kept)
        if any(isinstance(i, TextBlock) and i.text == SCREENSHOT_REMOVED for i in block.content)
    ]
    assert len(images) == 2
    assert placeholders == ["tu_0", "tu_1"]
    assert find_unmatched_tool_blocks(kept) == []


def test_sanitized_images_never_count_as_screenshots() -> None:
    messages = [
        ConversationMessage(
            role="user", content=[_image(IMAGE_DATA_REMOVED), TextBlock(text="hi")]
        )
    ]

    kept = retain_recent_screenshots(messages, 5)

    assert isinstance(kept[0].content[0], TextBlock)
    assert kept[0].content[0].text == SCREENSHOT_REMOVED


def test_thinking_retention_keeps_most_recent_turns() -> None:
    messages = _conversation(3)

    kept = retain_recent_thinking(messages, 1)

    thinking_turns = [
        index
        for index, message in enumerate(kept)
        if any(isinstance(block, ThinkingBlock) for block in message.blocks())
    ]
    assert thinking_turns == [5]
    assert count_block_types(kept)["tool_use"] == 3


def test_thinking_only_turn_is_never_emptied() -> None:
    messages = [
        ConversationMessage(role="assistant", content=[ThinkingBlock(thinking="a")]),
        ConversationMessage(role="user", content="next"),
        ConversationMessage(role="assistant", content=[ThinkingBlock(thinking="b")]),
    ]

    kept = retain_recent_thinking(messages, 0)

    assert all(message.content for message in kept)


def test_estimate_counts_images_at_fixed_cost() -> None:
    text_only = [ConversationMessage(role="user", content="abcd" * 10)]
    with_image = [ConversationMessage(role="user", content=[_image()])]

    assert estimate_tokens(text_only) == 10
    assert estimate_tokens(with_image) == 1500
