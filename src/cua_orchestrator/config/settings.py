"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cua_orchestrator.config.resolver import ExecutionDefaults

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "cua-orchestrator"
    app_env: str = "dev"
    app_debug: bool = False
    database_url: str = ""

    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_version: str = "2023-06-01"
    anthropic_timeout_s: float = Field(default=120.0, ge=1.0)
    anthropic_max_retries: int = Field(default=1, ge=0)
    anthropic_backoff_s: float = Field(default=1.0, ge=0.0)

    browser_base_url: str = "https://api.onkernel.com"
    browser_api_key: str = ""
    browser_timeout_s: float = Field(default=60.0, ge=1.0)

    webhook_timeout_s: float = Field(default=10.0, gt=0.0)

    agent_max_iterations: int = Field(default=35, ge=1)
    sampling_loop_delay_ms: int = Field(default=100, ge=0)
    max_base64_screenshots: int = Field(default=3, ge=0)
    keep_recent_thinking_blocks: int = Field(default=1, ge=0)
    thinking_budget_tokens: int = Field(default=1024, ge=0)
    context_trigger_tokens: int = Field(default=100_000, ge=0)
    context_keep_tool_uses: int = Field(default=3, ge=0)
    context_clear_min_tokens: int = Field(default=5_000, ge=0)
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = Field(default=4096, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="CUA_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("ORCHESTRATOR_DATABASE_URL", "")

    def resolved_anthropic_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")

    def execution_defaults(self) -> ExecutionDefaults:
        return ExecutionDefaults(
            max_iterations=self.agent_max_iterations,
            sampling_delay_ms=self.sampling_loop_delay_ms,
            max_base64_screenshots=self.max_base64_screenshots,
            keep_recent_thinking_blocks=self.keep_recent_thinking_blocks,
            thinking_budget_tokens=self.thinking_budget_tokens,
            context_trigger_tokens=self.context_trigger_tokens,
            context_keep_tool_uses=self.context_keep_tool_uses,
            context_clear_min_tokens=self.context_clear_min_tokens,
            model=self.anthropic_model,
            max_tokens=self.anthropic_max_tokens,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
