"""Signed, best-effort webhook delivery for task status changes."""

from __future__ import annotations

import hashlib
import hmac
import http.client
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal
from urllib import error, request

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

USER_AGENT = "cua-orchestrator/0.1"
SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
SIGNATURE_PREFIX = "sha256="
DEFAULT_TIMEOUT_S = 10.0


class WebhookPayload(BaseModel):
    """Body of a ``task_status`` notification, serialized with camelCase keys."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["task_status"] = "task_status"
    batch_execution_id: str = Field(alias="batchExecutionId")
    task_id: str = Field(alias="taskId")
    task_index: int = Field(alias="taskIndex")
    status: Literal["completed", "failed", "paused"]
    agent_status: Literal["completed", "failed", "needs_clarification"] = Field(
        alias="agentStatus"
    )
    message: str
    reasoning: str | None = None
    next_step: str | None = Field(default=None, alias="nextStep")
    evidence: dict[str, Any] | None = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    status_code: int | None = None
    error: str | None = None


def sign(body: str | bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""
    raw = body.encode("utf-8") if isinstance(body, str) else body
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def verify(body: str | bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a received signature, with or without the ``sha256=`` prefix."""
    received = signature.removeprefix(SIGNATURE_PREFIX)
    expected = sign(body, secret)
    if len(received) != len(expected):
        return False
    return hmac.compare_digest(received, expected)


def deliver(
    url: str,
    payload: WebhookPayload | dict[str, Any],
    secret: str | None = None,
    *,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> DeliveryResult:
    """POST the payload once. Failures are logged and reported, never raised."""
    if isinstance(payload, WebhookPayload):
        body = payload.to_json()
        event_type = payload.type
    else:
        body = json.dumps(payload, default=str)
        event_type = payload.get("type", "task_status")

    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        TIMESTAMP_HEADER: datetime.now(UTC).isoformat(),
    }
    if secret:
        headers[SIGNATURE_HEADER] = f"{SIGNATURE_PREFIX}{sign(body, secret)}"

    try:
        req = request.Request(url=url, data=body.encode("utf-8"), method="POST", headers=headers)
        with request.urlopen(req, timeout=timeout_s) as response:
            status_code = response.status
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")[:200]
        logger.warning(
            "webhook event=rejected url=%s type=%s status=%s body=%s",
            url,
            event_type,
            exc.code,
            detail,
        )
        return DeliveryResult(
            delivered=False, status_code=exc.code, error=detail or str(exc.reason)
        )
    except error.URLError as exc:
        logger.error("webhook event=failed url=%s type=%s error=%s", url, event_type, exc.reason)
        return DeliveryResult(delivered=False, error=str(exc.reason))
    except (TimeoutError, OSError, ValueError, http.client.HTTPException) as exc:
        logger.error("webhook event=failed url=%s type=%s error=%s", url, event_type, exc)
        return DeliveryResult(delivered=False, error=str(exc))

    logger.info(
        "webhook event=delivered url=%s type=%s status=%s signed=%s",
        url,
        event_type,
        status_code,
        bool(secret),
    )
    return DeliveryResult(delivered=True, status_code=status_code)
