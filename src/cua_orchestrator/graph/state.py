"""Typed state contract for the agent iteration graph."""

from typing import Any, Literal, TypedDict

from cua_orchestrator.conversation.blocks import ConversationMessage
from cua_orchestrator.providers.model import ModelResponse

LoopOutcome = Literal["reported", "ended", "stopped"]


class AgentState(TypedDict, total=False):
    messages: list[ConversationMessage]
    request: dict[str, Any]
    response: ModelResponse | None
    exchange_id: str | None
    input_tokens: int | None
    iteration: int
    run_iterations: int
    outcome: LoopOutcome | None
    reported_status: str | None
    final_text: str


def initial_state(messages: list[ConversationMessage], *, iteration: int = 0) -> AgentState:
    return {
        "messages": list(messages),
        "request": {},
        "response": None,
        "exchange_id": None,
        "input_tokens": None,
        "iteration": iteration,
        "run_iterations": 0,
        "outcome": None,
        "reported_status": None,
        "final_text": "",
    }
