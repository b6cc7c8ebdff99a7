"""Outbound task status notifications."""

from cua_orchestrator.webhook.dispatcher import (
    DeliveryResult,
    WebhookPayload,
    deliver,
    sign,
    verify,
)

__all__ = ["DeliveryResult", "WebhookPayload", "deliver", "sign", "verify"]
