"""Tool definitions and the default system prompt sent with every model request."""

from typing import Any

from cua_orchestrator.tools.schemas import ReportTaskStatusInput

COMPUTER_USE_BETA = "computer-use-2025-01-24"
CONTEXT_MANAGEMENT_BETA = "context-management-2025-06-27"

DISPLAY_WIDTH_PX = 1280
DISPLAY_HEIGHT_PX = 800

DEFAULT_SYSTEM_PROMPT = """You are an agent that controls a remote browser to complete tasks.

Tools:
- computer: screenshot, left_click, right_click, double_click, type, key,
  mouse_move, scroll, wait, cursor_position.
- memory: notes that survive across iterations and across stop/resume. Your
  memory file is named after the id in the <task_id> tag. View it first; a
  missing file means this is a first run.
- report_task_status: call exactly once when the task is completed, has failed,
  or needs clarification from a human.

Work in small verified steps: take a screenshot, decide, act, then take another
screenshot to confirm the result before moving on."""


def computer_tool() -> dict[str, Any]:
    return {
        "type": "computer_20250124",
        "name": "computer",
        "display_width_px": DISPLAY_WIDTH_PX,
        "display_height_px": DISPLAY_HEIGHT_PX,
        "display_number": 1,
    }


def memory_tool() -> dict[str, Any]:
    return {"type": "memory_20250818", "name": "memory"}


def report_task_status_tool() -> dict[str, Any]:
    return {
        "name": "report_task_status",
        "description": (
            "Report the final outcome of the current task. Use needs_clarification when "
            "a human must answer a question before the task can continue."
        ),
        "input_schema": ReportTaskStatusInput.model_json_schema(),
    }


def build_tool_definitions() -> list[dict[str, Any]]:
    return [computer_tool(), memory_tool(), report_task_status_tool()]


def task_message(task_id: str, user_message: str) -> str:
    return f"<task_id>{task_id}</task_id>\n\n{user_message}"
