"""Notification data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class NotificationKind(StrEnum):
    THRESHOLD = "threshold"
    REAUTH_REQUIRED = "reauth_required"
    SYNC_FAILING = "sync_failing"


class Urgency(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    CRITICAL = "critical"


# Urgency per usage threshold (percent)
THRESHOLD_URGENCY: dict[int, Urgency] = {
    75: Urgency.LOW,
    90: Urgency.NORMAL,
    95: Urgency.CRITICAL,
}


@dataclass(frozen=True)
class Notification:
    """A single alert addressed to the user."""

    kind: NotificationKind
    account_id: str
    account_name: str
    title: str
    body: str
    urgency: Urgency
    threshold: int | None = None
    usage_ratio: float | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "title": self.title,
            "body": self.body,
            "urgency": self.urgency.value,
            "threshold": self.threshold,
            "usage_ratio": self.usage_ratio,
            "created_at": self.created_at.isoformat(),
        }
