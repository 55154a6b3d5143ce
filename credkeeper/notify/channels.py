"""Notification channel implementations.

  - LoggingChannel: writes the message envelope to the structured log. The
    body is logged only at DEBUG, because it embeds a live token link.
  - WebhookChannel: POSTs {"from", "to", "subject", "body"} as JSON through
    a shared httpx.AsyncClient with a 5 s timeout. Never raises; transport
    errors and non-2xx responses become DeliveryResult(success=False).
"""

from __future__ import annotations

from typing import Optional

import httpx

from credkeeper.config import MailConfig
from credkeeper.notify.protocol import DeliveryResult, NotificationChannel
from credkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class LoggingChannel:
    """Development channel: nothing leaves the process."""

    def __init__(self, sender: str = "no-reply@credkeeper.local") -> None:
        self.sender = sender

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        logger.info("mail_logged", to=to, subject=subject, sender=self.sender)
        logger.debug("mail_logged_body", to=to, body=body)
        return DeliveryResult(success=True)

    async def close(self) -> None:
        pass


class WebhookChannel:
    """Delivers mail by POSTing JSON to a relay endpoint."""

    def __init__(
        self,
        url: str,
        sender: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.sender = sender
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        payload = {"from": self.sender, "to": to, "subject": subject, "body": body}
        try:
            response = await self._client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning(
                "mail_delivery_failed",
                to=to,
                subject=subject,
                error_type=type(exc).__name__,
            )
            return DeliveryResult(success=False, error=type(exc).__name__)

        if response.status_code >= 300:
            logger.warning(
                "mail_delivery_rejected",
                to=to,
                subject=subject,
                status_code=response.status_code,
            )
            return DeliveryResult(success=False, error=f"HTTP {response.status_code}")

        logger.info("mail_delivered", to=to, subject=subject)
        return DeliveryResult(success=True)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_notification_channel(mail: MailConfig) -> NotificationChannel:
    """WebhookChannel when mail.webhook_url is set, LoggingChannel otherwise."""
    if mail.webhook_url:
        logger.info("notification_channel_selected", channel="WebhookChannel")
        return WebhookChannel(mail.webhook_url, mail.sender, mail.timeout_seconds)
    logger.info("notification_channel_selected", channel="LoggingChannel")
    return LoggingChannel(mail.sender)


assert isinstance(LoggingChannel(), NotificationChannel), (
    "LoggingChannel does not satisfy NotificationChannel protocol — implementation error"
)
