"""Notification channels.

- LoggingNotificationChannel    writes notifications to the structured log
- WebhookNotificationChannel    POSTs notifications as JSON to a webhook

Delivery is fire-and-forget from the orchestrator's point of view: a channel
raises on failure and the notification handler logs it without retrying.
"""

import httpx

from aumos_compliance_orchestrator.observability import get_logger

logger = get_logger(__name__)


class LoggingNotificationChannel:
    """Channel used when no webhook is configured."""

    async def send(self, recipients: tuple[str, ...], subject: str, body: str) -> None:
        logger.info("Notification", recipients=list(recipients), subject=subject, body=body)


class WebhookNotificationChannel:
    """Delivers notifications to an HTTP webhook.

    Args:
        webhook_url: Endpoint receiving ``{"recipients", "subject", "body"}``.
        timeout_seconds: Request timeout.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._transport = transport

    async def send(self, recipients: tuple[str, ...], subject: str, body: str) -> None:
        """POST the notification.

        Raises:
            httpx.HTTPError: If the webhook is unreachable or answers with an error status.
        """
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                self._webhook_url,
                json={"recipients": list(recipients), "subject": subject, "body": body},
            )
            response.raise_for_status()
        logger.debug("Notification delivered", webhook_url=self._webhook_url, recipients=len(recipients))
