"""Threshold-crossing detection and notification suppression.

Each of the 75/90/95 % thresholds keeps its own last-notified timestamp
per account. A threshold fires when usage is at or above it and it has not
fired since the start of the current reporting window, so a sustained
ratio never fires the same threshold twice in one window.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from quonitor.constants import NOTIFICATION_THRESHOLDS
from quonitor.logging import get_logger
from quonitor.notifications.models import (
    THRESHOLD_URGENCY,
    Notification,
    NotificationKind,
    Urgency,
)
from quonitor.storage.models import NotificationState

if TYPE_CHECKING:
    from quonitor.notifications.sinks import NotificationSink
    from quonitor.services.cache import CacheEntry
    from quonitor.settings_store import RuntimeSettings
    from quonitor.storage.models import Account
    from quonitor.storage.repository import QuotaRepository

log = get_logger("quonitor.services.notifier")


def _quota_was_reset(previous: CacheEntry, current: CacheEntry) -> bool:
    """Upstream quota reset: more remaining than before, or a different limit."""
    if (
        previous.quota_limit is not None
        and current.quota_limit is not None
        and previous.quota_limit != current.quota_limit
    ):
        return True
    return (
        previous.quota_remaining is not None
        and current.quota_remaining is not None
        and current.quota_remaining > previous.quota_remaining
    )


class NotificationEngine:
    """Decides which notifications to emit and records that they were sent."""

    def __init__(
        self,
        repository: QuotaRepository,
        sinks: Sequence[NotificationSink] = (),
    ) -> None:
        self._repository = repository
        self._sinks = list(sinks)

    async def process(
        self,
        account: Account,
        current: CacheEntry,
        previous: CacheEntry | None,
        settings: RuntimeSettings,
        *,
        window_start: datetime,
        now: datetime | None = None,
    ) -> list[Notification]:
        """Evaluate thresholds for a freshly synced account.

        Returns the notifications that were emitted.
        """
        ratio = current.usage_ratio
        if ratio is None:
            return []
        now = now or datetime.now(UTC)

        stored = await self._repository.get_notification_state(account.id)
        state = stored or NotificationState(account_id=account.id)
        original = state

        if previous is not None and _quota_was_reset(previous, current):
            for threshold in NOTIFICATION_THRESHOLDS:
                if ratio < threshold / 100 and state.last_notified(threshold) is not None:
                    state = state.with_notified(threshold, None)
            if state != original:
                log.info("notification_thresholds_rearmed", account_id=account.id, ratio=ratio)

        fired: list[Notification] = []
        for threshold in NOTIFICATION_THRESHOLDS:
            if ratio < threshold / 100:
                break
            last = state.last_notified(threshold)
            if last is not None and last >= window_start:
                continue
            if not settings.notifications_enabled or not settings.threshold_enabled(threshold):
                log.debug(
                    "notification_disabled",
                    account_id=account.id,
                    threshold=threshold,
                )
                continue
            if settings.in_quiet_hours(now):
                log.info(
                    "notification_suppressed_quiet_hours",
                    account_id=account.id,
                    threshold=threshold,
                )
                continue
            fired.append(
                Notification(
                    kind=NotificationKind.THRESHOLD,
                    account_id=account.id,
                    account_name=account.name,
                    title=f"{account.name}: {threshold}% of quota used",
                    body=(
                        f"{account.provider.value} account '{account.name}' has used "
                        f"{ratio:.0%} of its quota."
                    ),
                    urgency=THRESHOLD_URGENCY[threshold],
                    threshold=threshold,
                    usage_ratio=ratio,
                    created_at=now,
                )
            )
            state = state.with_notified(threshold, now)

        if state != original:
            await self._repository.update_notification_state(state)

        for notification in fired:
            await self._dispatch(notification)
        return fired

    async def notify_reauth_required(
        self,
        account: Account,
        error: str,
        settings: RuntimeSettings,
        *,
        now: datetime | None = None,
    ) -> Notification | None:
        return await self._notify_account_problem(
            account,
            settings,
            now=now,
            kind=NotificationKind.REAUTH_REQUIRED,
            urgency=Urgency.CRITICAL,
            title=f"{account.name}: credentials need attention",
            body=(
                f"Syncing {account.provider.value} account '{account.name}' failed: {error}. "
                "Re-enter the credentials to resume monitoring."
            ),
        )

    async def notify_sync_failing(
        self,
        account: Account,
        failures: int,
        error: str,
        settings: RuntimeSettings,
        *,
        now: datetime | None = None,
    ) -> Notification | None:
        return await self._notify_account_problem(
            account,
            settings,
            now=now,
            kind=NotificationKind.SYNC_FAILING,
            urgency=Urgency.NORMAL,
            title=f"{account.name}: sync failing",
            body=(
                f"Syncing {account.provider.value} account '{account.name}' has failed "
                f"{failures} times in a row. Last error: {error}"
            ),
        )

    async def _notify_account_problem(
        self,
        account: Account,
        settings: RuntimeSettings,
        *,
        now: datetime | None,
        kind: NotificationKind,
        urgency: Urgency,
        title: str,
        body: str,
    ) -> Notification | None:
        now = now or datetime.now(UTC)
        if not settings.notifications_enabled:
            return None
        if settings.in_quiet_hours(now):
            log.info("notification_suppressed_quiet_hours", account_id=account.id, kind=kind.value)
            return None
        notification = Notification(
            kind=kind,
            account_id=account.id,
            account_name=account.name,
            title=title,
            body=body,
            urgency=urgency,
            created_at=now,
        )
        await self._dispatch(notification)
        return notification

    async def _dispatch(self, notification: Notification) -> None:
        for sink in self._sinks:
            try:
                await sink.send(notification)
            except Exception as exc:
                log.warning(
                    "notification_sink_failed",
                    sink=type(sink).__name__,
                    account_id=notification.account_id,
                    error=str(exc),
                )
