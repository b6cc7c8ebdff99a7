"""Input models for the tools exposed to the agent."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ComputerAction = Literal[
    "screenshot",
    "left_click",
    "right_click",
    "double_click",
    "type",
    "key",
    "mouse_move",
    "scroll",
    "wait",
    "cursor_position",
]

_POINTER_ACTIONS = frozenset({"left_click", "right_click", "double_click", "mouse_move", "scroll"})
_TEXT_ACTIONS = frozenset({"type", "key"})


class ComputerActionInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: ComputerAction
    coordinate: list[int] | None = Field(default=None, min_length=2, max_length=2)
    text: str | None = None
    scroll_direction: Literal["up", "down", "left", "right"] = "down"
    scroll_amount: int = Field(default=3, ge=1, le=50)
    duration: float = Field(default=1.0, ge=0.0, le=60.0)

    @model_validator(mode="after")
    def _check_required(self) -> "ComputerActionInput":
        if self.action in _POINTER_ACTIONS and self.coordinate is None:
            raise ValueError(f"{self.action} requires coordinate [x, y]")
        if self.action in _TEXT_ACTIONS and not self.text:
            raise ValueError(f"{self.action} requires text")
        return self


class ReportTaskStatusInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: Literal["completed", "failed", "needs_clarification"]
    message: str = Field(min_length=1)
    reasoning: str | None = None
    next_step: str | None = None
    evidence: dict[str, Any] | None = None
