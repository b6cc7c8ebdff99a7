"""Route the model's tool invocations to their implementations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from cua_orchestrator.conversation.blocks import TextBlock, ToolResultBlock, ToolUseBlock
from cua_orchestrator.memory.commands import dispatch
from cua_orchestrator.memory.store import MemoryStore, MemoryStoreError
from cua_orchestrator.providers.browser import BrowserProvider
from cua_orchestrator.tools.computer import execute_computer_action
from cua_orchestrator.tools.schemas import ReportTaskStatusInput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolOutcome:
    result: ToolResultBlock
    reported_status: ReportTaskStatusInput | None = None


class ToolExecutor:
    """Executes one tool_use block against the borrowed browser and the memory store.

    Input problems and memory failures come back as ``is_error`` results so the
    agent can correct itself. Browser provider failures propagate and fail the task.
    """

    def __init__(
        self,
        *,
        browser: BrowserProvider,
        browser_handle: str,
        memory_store: MemoryStore,
        typing_delay_ms: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.browser = browser
        self.browser_handle = browser_handle
        self.memory_store = memory_store
        self.typing_delay_ms = typing_delay_ms
        self.sleep = sleep

    def execute(self, tool_use: ToolUseBlock) -> ToolOutcome:
        if tool_use.name == "computer":
            return ToolOutcome(
                result=execute_computer_action(
                    self.browser,
                    self.browser_handle,
                    tool_use.id,
                    tool_use.input,
                    typing_delay_ms=self.typing_delay_ms,
                    sleep=self.sleep,
                )
            )
        if tool_use.name == "memory":
            return ToolOutcome(result=self._run_memory(tool_use))
        if tool_use.name == "report_task_status":
            return self._report_status(tool_use)

        logger.warning("tool_gateway event=unknown_tool name=%s", tool_use.name)
        return ToolOutcome(result=_error(tool_use.id, f"Unknown tool: {tool_use.name}"))

    def _run_memory(self, tool_use: ToolUseBlock) -> ToolResultBlock:
        try:
            output = dispatch(self.memory_store, tool_use.input)
        except ValidationError as exc:
            message = "; ".join(error["msg"] for error in exc.errors())
            return _error(tool_use.id, f"Invalid memory command: {message}")
        except MemoryStoreError as exc:
            logger.info(
                "tool_gateway event=memory_error command=%s error=%s",
                tool_use.input.get("command"),
                exc,
            )
            return _error(tool_use.id, str(exc))
        return ToolResultBlock(tool_use_id=tool_use.id, content=[TextBlock(text=output)])

    def _report_status(self, tool_use: ToolUseBlock) -> ToolOutcome:
        try:
            report = ReportTaskStatusInput.model_validate(tool_use.input)
        except ValidationError as exc:
            message = "; ".join(error["msg"] for error in exc.errors())
            return ToolOutcome(result=_error(tool_use.id, f"Invalid status report: {message}"))
        return ToolOutcome(
            result=ToolResultBlock(
                tool_use_id=tool_use.id,
                content=[TextBlock(text=f"Status recorded: {report.status}")],
            ),
            reported_status=report,
        )


def _error(tool_use_id: str, text: str) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=[TextBlock(text=text)], is_error=True)
