"""Collaborators shared by the agent graph nodes for one task run."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from cua_orchestrator.config.resolver import ExecutionConfig
from cua_orchestrator.conversation.trimming import ContextTrimmer
from cua_orchestrator.providers.model import ModelProvider
from cua_orchestrator.storage.base import OrchestratorStorage
from cua_orchestrator.storage.models import TaskRecord
from cua_orchestrator.tools.gateway import ToolExecutor
from cua_orchestrator.webhook.dispatcher import DeliveryResult, WebhookPayload, deliver


class IterationLimitReached(RuntimeError):
    """The run used its iteration budget without the agent reporting a status."""


def _default_notifier(
    url: str, payload: WebhookPayload, secret: str | None
) -> DeliveryResult:
    return deliver(url, payload, secret)


@dataclass
class AgentRuntime:
    task: TaskRecord
    config: ExecutionConfig
    storage: OrchestratorStorage
    model: ModelProvider
    tools: ToolExecutor
    trimmer: ContextTrimmer
    sleep: Callable[[float], None] = time.sleep
    notify: Callable[[str, WebhookPayload, str | None], Any] = field(
        default=_default_notifier
    )

    @classmethod
    def for_task(
        cls,
        *,
        task: TaskRecord,
        config: ExecutionConfig,
        storage: OrchestratorStorage,
        model: ModelProvider,
        tools: ToolExecutor,
        sleep: Callable[[float], None] = time.sleep,
        notify: Callable[[str, WebhookPayload, str | None], Any] | None = None,
    ) -> AgentRuntime:
        return cls(
            task=task,
            config=config,
            storage=storage,
            model=model,
            tools=tools,
            trimmer=ContextTrimmer(
                trigger_tokens=config.context_trigger_tokens,
                keep_tool_uses=config.context_keep_tool_uses,
                clear_min_tokens=config.context_clear_min_tokens,
            ),
            sleep=sleep,
            notify=notify or _default_notifier,
        )
