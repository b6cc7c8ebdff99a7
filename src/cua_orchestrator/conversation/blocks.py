"""Typed content blocks for model conversations.

Every block kind the provider exchanges is one pydantic model with a literal
``type`` tag, and ``ContentBlock`` is the discriminated union over them. Code
that walks a conversation matches on the concrete class instead of poking at
untyped dicts.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

IMAGE_DATA_REMOVED = "[BASE64_IMAGE_REMOVED]"


class _Block(BaseModel):
    # Provider-side extras (cache_control, citations) round-trip untouched.
    model_config = ConfigDict(extra="allow")


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str


class ThinkingBlock(_Block):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str | None = None


class RedactedThinkingBlock(_Block):
    type: Literal["redacted_thinking"] = "redacted_thinking"
    data: str


class ImageSource(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "base64"
    media_type: str = "image/png"
    data: str | None = None


class ImageBlock(_Block):
    type: Literal["image"] = "image"
    source: ImageSource

    @property
    def is_sanitized(self) -> bool:
        return self.source.data == IMAGE_DATA_REMOVED


class ToolUseBlock(_Block):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


ToolResultContent = Annotated[Union[TextBlock, ImageBlock], Field(discriminator="type")]


class ToolResultBlock(_Block):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[ToolResultContent] = Field(default_factory=list)
    is_error: bool = False

    def content_blocks(self) -> list[TextBlock | ImageBlock]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)] if self.content else []
        return list(self.content)


ContentBlock = Annotated[
    Union[
        TextBlock,
        ThinkingBlock,
        RedactedThinkingBlock,
        ImageBlock,
        ToolUseBlock,
        ToolResultBlock,
    ],
    Field(discriminator="type"),
]


class ConversationMessage(BaseModel):
    """One turn: a role plus either plain text or ordered content blocks."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    def blocks(self) -> list[ContentBlock]:
        if isinstance(self.content, str):
            return [TextBlock(text=self.content)]
        return list(self.content)

    def to_provider(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


_MESSAGES = TypeAdapter(list[ConversationMessage])
_BLOCKS = TypeAdapter(list[ContentBlock])


def parse_messages(raw: Iterable[Any]) -> list[ConversationMessage]:
    return _MESSAGES.validate_python(list(raw))


def parse_blocks(raw: Iterable[Any]) -> list[ContentBlock]:
    return _BLOCKS.validate_python(list(raw))


def dump_messages(messages: Iterable[ConversationMessage]) -> list[dict[str, Any]]:
    return [message.to_provider() for message in messages]


def dump_blocks(blocks: Iterable[BaseModel]) -> list[dict[str, Any]]:
    return [block.model_dump(mode="json", exclude_none=True) for block in blocks]


def iter_blocks(messages: Iterable[ConversationMessage]) -> Iterator[ContentBlock]:
    for message in messages:
        yield from message.blocks()


def count_block_types(messages: Iterable[ConversationMessage]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for block in iter_blocks(messages):
        counts[block.type] = counts.get(block.type, 0) + 1
    return counts


def joined_text(blocks: Iterable[BaseModel]) -> str:
    return "\n".join(block.text for block in blocks if isinstance(block, TextBlock)).strip()


def sanitize_payload(value: Any) -> Any:
    """Deep copy of a provider payload with base64 image data replaced by a marker."""
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    if not isinstance(value, dict):
        return value

    output: dict[str, Any] = {}
    for key, item in value.items():
        if key == "source" and isinstance(item, dict) and item.get("type") == "base64":
            output[key] = {**item, "data": IMAGE_DATA_REMOVED}
        else:
            output[key] = sanitize_payload(item)
    return output
