"""NotificationChannel Protocol + DeliveryResult.

A channel delivers one message to one address. Delivery failure is
reported through DeliveryResult, never raised: a mail outage must not roll
back token issuance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None


@runtime_checkable
class NotificationChannel(Protocol):
    """Outbound message channel.

    Implementations: LoggingChannel (default), WebhookChannel.
    Selection via create_notification_channel() (notify/channels.py).
    """

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        """Deliver a message. Must not raise."""
        ...

    async def close(self) -> None:
        ...
