# Notifications module - inbox publisher and webhook relay
from .publisher import (
    NotificationType,
    NotificationEvent,
    NotificationPublisher,
    list_notifications,
    mark_read,
)
from .webhooks import NotificationWebhookRelay, WebhookDelivery

__all__ = [
    "NotificationType",
    "NotificationEvent",
    "NotificationPublisher",
    "list_notifications",
    "mark_read",
    "NotificationWebhookRelay",
    "WebhookDelivery",
]
