"""Agent tools: computer actions, memory commands and status reporting."""

from cua_orchestrator.tools.computer import execute_computer_action
from cua_orchestrator.tools.definitions import (
    DEFAULT_SYSTEM_PROMPT,
    build_tool_definitions,
    task_message,
)
from cua_orchestrator.tools.gateway import ToolExecutor, ToolOutcome
from cua_orchestrator.tools.schemas import ComputerActionInput, ReportTaskStatusInput

__all__ = [
    "ComputerActionInput",
    "DEFAULT_SYSTEM_PROMPT",
    "ReportTaskStatusInput",
    "ToolExecutor",
    "ToolOutcome",
    "build_tool_definitions",
    "execute_computer_action",
    "task_message",
]
