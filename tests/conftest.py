from __future__ import annotations

import copy
from collections.abc import Callable
from types import SimpleNamespace
from typing import Any

import pytest

from cua_orchestrator.providers.browser import BrowserProviderError, BrowserSession
from cua_orchestrator.providers.model import ModelProviderError, ModelResponse

SCREENSHOT_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4nGNgYGD4DwABBAEAfbLI3wAAAABJRU5E"
    "rkJggg=="
)


class ScriptedModelProvider:
    """Test-only model double that replays one scripted turn per call.

    A step is a list of content block dicts, an exception to raise, or a
    callable that receives the request body and returns either of those.
    """

    def __init__(self, steps: list[Any]) -> None:
        self.steps = list(steps)
        self.requests: list[dict[str, Any]] = []

    def create_message(self, request_body: dict[str, Any]) -> ModelResponse:
        self.requests.append(copy.deepcopy(request_body))
        if not self.steps:
            raise ModelProviderError("scripted model has no more turns")
        step = self.steps.pop(0)
        if callable(step):
            step = step(request_body)
        if isinstance(step, BaseException):
            raise step
        has_tool_use = any(block.get("type") == "tool_use" for block in step)
        return ModelResponse.model_validate(
            {
                "id": f"msg_{len(self.requests)}",
                "model": request_body.get("model", "test-model"),
                "content": step,
                "stop_reason": "tool_use" if has_tool_use else "end_turn",
                "usage": {"input_tokens": 100, "output_tokens": 20},
            }
        )


class FakeBrowserProvider:
    """Test-only browser double recording every call."""

    def __init__(
        self,
        *,
        fail_actions: set[str] | None = None,
        create_error: Exception | None = None,
        destroy_error: Exception | None = None,
    ) -> None:
        self.fail_actions = fail_actions or set()
        self.create_error = create_error
        self.destroy_error = destroy_error
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.actions: list[tuple[str, str, tuple[Any, ...]]] = []

    def create(self, *, timeout_s: int | None = None) -> BrowserSession:
        if self.create_error is not None:
            raise self.create_error
        handle = f"browser-{len(self.created) + 1}"
        self.created.append(handle)
        return BrowserSession(
            handle=handle,
            control_url=f"wss://browser.test/{handle}",
            live_view_url=None,
        )

    def pause(self, handle: str) -> None:
        self._record("pause", handle)

    def resume(self, handle: str) -> None:
        self._record("resume", handle)

    def destroy(self, handle: str) -> None:
        if self.destroy_error is not None:
            raise self.destroy_error
        self.destroyed.append(handle)

    def control_url(self, handle: str) -> str | None:
        return f"wss://browser.test/{handle}"

    def screenshot(self, handle: str) -> str:
        self._record("screenshot", handle)
        return SCREENSHOT_B64

    def click(self, handle: str, x: int, y: int) -> None:
        self._record("left_click", handle, x, y)

    def double_click(self, handle: str, x: int, y: int) -> None:
        self._record("double_click", handle, x, y)

    def right_click(self, handle: str, x: int, y: int) -> None:
        self._record("right_click", handle, x, y)

    def type_text(self, handle: str, text: str, *, delay_ms: int | None = None) -> None:
        self._record("type", handle, text, delay_ms)

    def key_press(self, handle: str, keys: str) -> None:
        self._record("key", handle, keys)

    def scroll(self, handle: str, x: int, y: int, direction: str, amount: int) -> None:
        self._record("scroll", handle, x, y, direction, amount)

    def move_mouse(self, handle: str, x: int, y: int) -> None:
        self._record("mouse_move", handle, x, y)

    def cursor_position(self, handle: str) -> tuple[int, int]:
        self._record("cursor_position", handle)
        return (640, 400)

    def _record(self, action: str, handle: str, *args: Any) -> None:
        if action in self.fail_actions:
            raise BrowserProviderError(f"{action} failed on {handle}")
        self.actions.append((action, handle, args))


def _text(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def _tool_use(tool_id: str, name: str, **tool_input: Any) -> dict[str, Any]:
    return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}


def _computer(tool_id: str, action: str, **params: Any) -> dict[str, Any]:
    return _tool_use(tool_id, "computer", action=action, **params)


def _report(tool_id: str, status: str, message: str, **extra: Any) -> dict[str, Any]:
    return _tool_use(tool_id, "report_task_status", status=status, message=message, **extra)


@pytest.fixture
def blocks() -> SimpleNamespace:
    return SimpleNamespace(
        text=_text,
        tool_use=_tool_use,
        computer=_computer,
        report=_report,
        screenshot_b64=SCREENSHOT_B64,
    )


@pytest.fixture
def scripted_model() -> Callable[[list[Any]], ScriptedModelProvider]:
    return ScriptedModelProvider


@pytest.fixture
def browser() -> FakeBrowserProvider:
    return FakeBrowserProvider()


@pytest.fixture
def browser_factory() -> Callable[..., FakeBrowserProvider]:
    return FakeBrowserProvider


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return lambda _seconds: None
