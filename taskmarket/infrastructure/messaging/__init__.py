"""Outbound notification adapters."""

from .dispatcher import NotificationDispatcher
from .webhook_notifier import (
    LogNotifier,
    WebhookConfig,
    WebhookDelivery,
    WebhookNotifier,
    WebhookPayload,
    create_webhook_config_from_settings,
)

__all__ = [
    "NotificationDispatcher",
    "LogNotifier",
    "WebhookConfig",
    "WebhookDelivery",
    "WebhookNotifier",
    "WebhookPayload",
    "create_webhook_config_from_settings",
]
