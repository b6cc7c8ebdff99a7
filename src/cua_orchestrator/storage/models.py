"""Storage models shared by API, executor and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

BatchStatus = Literal["running", "completed", "failed", "stopped"]
TaskStatus = Literal["queued", "running", "paused", "stopped", "completed", "failed"]
AgentStatus = Literal["completed", "failed", "needs_clarification"]
BatchCounter = Literal["completed", "failed"]

TASK_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "result_message",
        "current_iteration",
        "browser_session_id",
        "agent_status",
        "agent_message",
        "agent_evidence",
        "started_at",
        "completed_at",
    }
)


class BatchRecord(BaseModel):
    """Persisted batch execution."""

    batch_id: str
    session_id: str
    task_count: int
    completed_count: int = 0
    failed_count: int = 0
    status: BatchStatus = "running"
    browser_session_id: str | None = None
    config_overrides: dict[str, Any] = Field(default_factory=dict)
    webhook_url: str | None = None
    # Never serialized into API responses.
    webhook_secret: str | None = Field(default=None, exclude=True)
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class NewTask(BaseModel):
    """Task as submitted, before it gets an id."""

    user_message: str
    destroy_browser_on_completion: bool = False
    config_overrides: dict[str, Any] = Field(default_factory=dict)


class TaskRecord(BaseModel):
    """Persisted task. ``batch_id`` is None for tasks run outside a batch."""

    task_id: str
    session_id: str
    batch_id: str | None = None
    task_index: int | None = None
    user_message: str
    status: TaskStatus = "queued"
    current_iteration: int = 0
    result_message: str | None = None
    config_overrides: dict[str, Any] = Field(default_factory=dict)
    destroy_browser_on_completion: bool = False
    browser_session_id: str | None = None
    agent_status: AgentStatus | None = None
    agent_message: str | None = None
    agent_evidence: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class MessageRecord(BaseModel):
    """One persisted conversation turn.

    Assistant turns produced by the agent loop also carry the sanitized model
    request/response pair and the tool results produced by acting on it.
    """

    message_id: str
    sequence: int
    session_id: str
    task_id: str | None = None
    role: Literal["user", "assistant"]
    content: str = ""
    model_request: dict[str, Any] | None = None
    model_response: dict[str, Any] | None = None
    tool_results: list[dict[str, Any]] | None = None
    iteration: int | None = None
    created_at: datetime


class MemoryFileRecord(BaseModel):
    """Agent memory file keyed by normalized path."""

    path: str
    content: str
    created_at: datetime
    updated_at: datetime
