"""Model provider interface and the Anthropic Messages API adapter."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cua_orchestrator.conversation.blocks import ContentBlock

logger = logging.getLogger(__name__)


class ModelProviderError(RuntimeError):
    pass


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None


class ModelResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    model: str = ""
    role: str = "assistant"
    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None
    stop_sequence: str | None = None
    usage: Usage = Field(default_factory=Usage)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ModelProvider(Protocol):
    def create_message(self, request_body: dict[str, Any]) -> ModelResponse: ...


class AnthropicModelProvider:
    """POST /v1/messages with a fixed-backoff retry."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.anthropic.com",
        api_version: str = "2023-06-01",
        timeout_s: float = 120.0,
        max_retries: int = 1,
        backoff_s: float = 1.0,
    ) -> None:
        if not api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is missing")
        self.api_key = api_key
        self.base_url = base_url
        self.api_version = api_version
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def create_message(self, request_body: dict[str, Any]) -> ModelResponse:
        body = dict(request_body)
        betas = body.pop("betas", None) or []
        response_json = self._request_with_retry(body, betas)
        try:
            return ModelResponse.model_validate(response_json)
        except ValidationError as exc:
            raise ModelProviderError("Model response had unexpected shape") from exc

    def _request_with_retry(self, body: dict[str, Any], betas: list[str]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request_once(body, betas)
            except ModelProviderError as exc:
                last_error = exc
                logger.warning(
                    "model_provider event=request_failed attempt=%s error=%s", attempt + 1, exc
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)

        if last_error is None:
            raise ModelProviderError("Model request failed")
        raise last_error

    def _request_once(self, body: dict[str, Any], betas: list[str]) -> dict[str, Any]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }
        if betas:
            headers["anthropic-beta"] = ",".join(betas)

        req = request.Request(
            url=f"{self.base_url.rstrip('/')}/v1/messages",
            data=json.dumps(body).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            raise ModelProviderError(
                f"Model request failed with status {exc.code}: {message[:400]}"
            ) from exc
        except error.URLError as exc:
            raise ModelProviderError(f"Model request failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ModelProviderError("Model request timed out") from exc

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ModelProviderError("Model returned non-JSON response") from exc
        if not isinstance(parsed, dict):
            raise ModelProviderError("Model response was not a JSON object")
        return parsed
