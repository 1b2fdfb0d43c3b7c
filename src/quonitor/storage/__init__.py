"""Durable storage for accounts, usage history, notification state and settings."""

from quonitor.storage.models import (
    Account,
    AccountInfo,
    ModelUsage,
    NotificationState,
    QuotaSnapshot,
)
from quonitor.storage.repository import QuotaRepository

__all__ = [
    "Account",
    "AccountInfo",
    "ModelUsage",
    "NotificationState",
    "QuotaRepository",
    "QuotaSnapshot",
]
