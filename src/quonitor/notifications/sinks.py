"""Delivery targets for notifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import httpx

from quonitor.logging import get_logger
from quonitor.notifications.models import Notification

if TYPE_CHECKING:
    from quonitor.config import Settings

log = get_logger("quonitor.notifications.sinks")


class NotificationSink(Protocol):
    """Anything that can deliver a notification."""

    async def send(self, notification: Notification) -> None:
        """Deliver ``notification``. May raise; callers log and continue."""
        ...


class LogNotificationSink:
    """Writes notifications to the structured log."""

    async def send(self, notification: Notification) -> None:
        log.info(
            "notification",
            kind=notification.kind.value,
            account_id=notification.account_id,
            account_name=notification.account_name,
            urgency=notification.urgency.value,
            threshold=notification.threshold,
            title=notification.title,
            body=notification.body,
        )


class WebhookNotificationSink:
    """POSTs notifications as JSON to a configured URL."""

    def __init__(self, url: str, *, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout

    async def send(self, notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self._url,
                json=notification.to_dict(),
                headers={"Content-Type": "application/json"},
            )
        if resp.status_code >= 400:
            log.warning(
                "notification_webhook_rejected",
                status=resp.status_code,
                body=resp.text[:200],
            )
            raise httpx.HTTPStatusError(
                f"Webhook returned {resp.status_code}",
                request=resp.request,
                response=resp,
            )
        log.debug("notification_webhook_sent", account_id=notification.account_id)


def build_sinks(settings: Settings) -> list[NotificationSink]:
    """The log sink always, plus a webhook sink when a URL is configured."""
    sinks: list[NotificationSink] = [LogNotificationSink()]
    if settings.notification_webhook_url:
        sinks.append(WebhookNotificationSink(settings.notification_webhook_url))
    return sinks
