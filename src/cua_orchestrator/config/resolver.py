"""Layered execution configuration: defaults, then global overrides, then task overrides."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

logger = logging.getLogger(__name__)


class ExecutionDefaults(BaseModel):
    """Fallback values used when neither override layer sets a field."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=35, ge=1)
    sampling_delay_ms: int = Field(default=100, ge=0)
    max_base64_screenshots: int = Field(default=3, ge=0)
    keep_recent_thinking_blocks: int = Field(default=1, ge=0)
    thinking_budget_tokens: int = Field(default=1024, ge=0)
    context_trigger_tokens: int = Field(default=100_000, ge=0)
    context_keep_tool_uses: int = Field(default=3, ge=0)
    context_clear_min_tokens: int = Field(default=5_000, ge=0)
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = Field(default=4096, ge=1)


class ConfigOverrides(BaseModel):
    """Sparse configuration layer.

    Accepts the upper-case keys clients already send (``AGENT_MAX_ITERATIONS``)
    as well as the field names. Unknown keys are ignored and a value that fails
    validation is dropped, so a bad override degrades to the next layer instead
    of failing the batch.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    max_iterations: int | None = Field(default=None, alias="AGENT_MAX_ITERATIONS", ge=1)
    sampling_delay_ms: int | None = Field(default=None, alias="SAMPLING_LOOP_DELAY_MS", ge=0)
    max_base64_screenshots: int | None = Field(
        default=None, alias="MAX_BASE64_SCREENSHOTS", ge=0
    )
    keep_recent_thinking_blocks: int | None = Field(
        default=None, alias="KEEP_RECENT_THINKING_BLOCKS", ge=0
    )
    thinking_budget_tokens: int | None = Field(
        default=None, alias="THINKING_BUDGET_TOKENS", ge=0
    )
    context_trigger_tokens: int | None = Field(
        default=None, alias="CONTEXT_TRIGGER_TOKENS", ge=0
    )
    context_keep_tool_uses: int | None = Field(
        default=None, alias="CONTEXT_KEEP_TOOL_USES", ge=0
    )
    context_clear_min_tokens: int | None = Field(
        default=None, alias="CONTEXT_CLEAR_MIN_TOKENS", ge=0
    )
    model: str | None = Field(default=None, alias="ANTHROPIC_MODEL", min_length=1)
    max_tokens: int | None = Field(default=None, alias="ANTHROPIC_MAX_TOKENS", ge=1)
    system_prompt: str | None = Field(default=None, alias="SYSTEM_PROMPT", min_length=1)
    typing_delay_ms: int | None = Field(default=None, alias="TYPING_DELAY_MS", ge=0)
    browser_timeout_s: int | None = Field(default=None, alias="BROWSER_TIMEOUT_SECONDS", ge=1)

    @field_validator("*", mode="wrap")
    @classmethod
    def _drop_invalid(
        cls,
        value: Any,
        handler: ValidatorFunctionWrapHandler,
        info: ValidationInfo,
    ) -> Any:
        try:
            return handler(value)
        except ValidationError:
            logger.warning(
                "config_overrides event=invalid_value_dropped field=%s value=%r",
                info.field_name,
                value,
            )
            return None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | ConfigOverrides | None) -> ConfigOverrides:
        if raw is None:
            return cls()
        if isinstance(raw, ConfigOverrides):
            return raw
        if not isinstance(raw, Mapping):
            logger.warning(
                "config_overrides event=ignored_non_mapping type=%s", type(raw).__name__
            )
            return cls()
        known = set(cls.model_fields) | {
            field.alias for field in cls.model_fields.values() if field.alias
        }
        unknown = sorted(str(key) for key in raw if key not in known)
        if unknown:
            logger.warning(
                "config_overrides event=unknown_keys_ignored keys=%s", ",".join(unknown)
            )
        return cls.model_validate(dict(raw))

    def explicit(self) -> dict[str, Any]:
        """Fields this layer actually sets."""
        return {name: value for name, value in self if value is not None}


class ExecutionConfig(BaseModel):
    """Concrete configuration for one task run."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int
    sampling_delay_ms: int
    max_base64_screenshots: int
    keep_recent_thinking_blocks: int
    thinking_budget_tokens: int
    context_trigger_tokens: int
    context_keep_tool_uses: int
    context_clear_min_tokens: int
    model: str
    max_tokens: int
    system_prompt: str | None = None
    typing_delay_ms: int | None = None
    browser_timeout_s: int | None = None

    # Only used to tag outbound notifications.
    webhook_url: str | None = None
    webhook_secret: str | None = None
    batch_execution_id: str | None = None
    task_index: int | None = None


def resolve_config(
    global_overrides: Mapping[str, Any] | ConfigOverrides | None,
    task_overrides: Mapping[str, Any] | ConfigOverrides | None = None,
    *,
    defaults: ExecutionDefaults | None = None,
    webhook_url: str | None = None,
    webhook_secret: str | None = None,
    batch_execution_id: str | None = None,
    task_index: int | None = None,
) -> ExecutionConfig:
    """Merge override layers field by field; the task layer wins over the global one."""
    values: dict[str, Any] = (defaults or ExecutionDefaults()).model_dump()
    for layer in (global_overrides, task_overrides):
        values.update(ConfigOverrides.from_mapping(layer).explicit())

    return ExecutionConfig(
        **values,
        webhook_url=webhook_url or None,
        webhook_secret=webhook_secret or None,
        batch_execution_id=batch_execution_id,
        task_index=task_index,
    )
