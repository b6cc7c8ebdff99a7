"""Computer tool: maps validated actions onto the browser provider."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from cua_orchestrator.conversation.blocks import (
    ImageBlock,
    ImageSource,
    TextBlock,
    ToolResultBlock,
)
from cua_orchestrator.providers.browser import BrowserProvider
from cua_orchestrator.tools.schemas import ComputerActionInput

logger = logging.getLogger(__name__)


def execute_computer_action(
    browser: BrowserProvider,
    handle: str,
    tool_use_id: str,
    raw_input: dict[str, Any],
    *,
    typing_delay_ms: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ToolResultBlock:
    """Run one action. Bad input becomes an error result; provider failures raise."""
    try:
        payload = ComputerActionInput.model_validate(raw_input)
    except ValidationError as exc:
        message = "; ".join(error["msg"] for error in exc.errors())
        logger.info(
            "computer_tool event=invalid_input tool_use_id=%s error=%s", tool_use_id, message
        )
        return _result(tool_use_id, f"Invalid computer action input: {message}", is_error=True)

    action = payload.action
    logger.info("computer_tool event=action tool_use_id=%s action=%s", tool_use_id, action)

    if action == "screenshot":
        image = browser.screenshot(handle)
        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=[
                TextBlock(text="Screenshot taken"),
                ImageBlock(source=ImageSource(type="base64", media_type="image/png", data=image)),
            ],
        )

    if action == "cursor_position":
        x, y = browser.cursor_position(handle)
        return _result(tool_use_id, f"Cursor position: ({x}, {y})")

    if action == "wait":
        sleep(payload.duration)
        return _result(tool_use_id, f"Waited for {payload.duration:g}s")

    if action == "type":
        browser.type_text(handle, payload.text or "", delay_ms=typing_delay_ms)
        return _result(tool_use_id, f'Typed: "{payload.text}"')

    if action == "key":
        browser.key_press(handle, payload.text or "")
        return _result(tool_use_id, f"Pressed key: {payload.text}")

    x, y = payload.coordinate or (0, 0)
    if action == "left_click":
        browser.click(handle, x, y)
        return _result(tool_use_id, f"Left clicked at coordinates ({x}, {y})")
    if action == "right_click":
        browser.right_click(handle, x, y)
        return _result(tool_use_id, f"Right clicked at coordinates ({x}, {y})")
    if action == "double_click":
        browser.double_click(handle, x, y)
        return _result(tool_use_id, f"Double clicked at coordinates ({x}, {y})")
    if action == "mouse_move":
        browser.move_mouse(handle, x, y)
        return _result(tool_use_id, f"Moved mouse to ({x}, {y})")

    browser.scroll(handle, x, y, payload.scroll_direction, payload.scroll_amount)
    return _result(
        tool_use_id,
        f"Scrolled {payload.scroll_direction} by {payload.scroll_amount} at ({x}, {y})",
    )


def _result(tool_use_id: str, text: str, *, is_error: bool = False) -> ToolResultBlock:
    return ToolResultBlock(
        tool_use_id=tool_use_id, content=[TextBlock(text=text)], is_error=is_error
    )
