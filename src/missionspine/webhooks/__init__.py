"""Webhook registrations for wait steps."""

from missionspine.webhooks.registry import (
    DEFAULT_TIMEOUT_MS,
    WaitResult,
    WebhookEvent,
    WebhookRegistration,
    WebhookRegistrationRequest,
    WebhookRegistry,
)

__all__ = [
    "DEFAULT_TIMEOUT_MS",
    "WaitResult",
    "WebhookEvent",
    "WebhookRegistration",
    "WebhookRegistrationRequest",
    "WebhookRegistry",
]
