"""credkeeper outbound notification package.

    protocol.py — NotificationChannel Protocol + DeliveryResult
    channels.py — LoggingChannel, WebhookChannel (httpx), create_notification_channel()
    messages.py — subject/body builders for lifecycle mail
"""

from credkeeper.notify.channels import (
    LoggingChannel,
    WebhookChannel,
    create_notification_channel,
)
from credkeeper.notify.protocol import DeliveryResult, NotificationChannel

__all__ = [
    "DeliveryResult",
    "NotificationChannel",
    "LoggingChannel",
    "WebhookChannel",
    "create_notification_channel",
]
