"""Row types persisted by :class:`~quonitor.storage.repository.QuotaRepository`."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from quonitor.constants import NOTIFICATION_THRESHOLDS
from quonitor.providers.base import Provider


def usage_ratio(quota_limit: int | None, quota_remaining: int | None) -> float | None:
    """Fraction of the quota consumed, or None when no limit is reported."""
    if quota_limit is None or quota_remaining is None or quota_limit <= 0:
        return None
    return (quota_limit - quota_remaining) / quota_limit


@dataclass(frozen=True)
class AccountInfo:
    """Account metadata safe to hand to callers (no credentials)."""

    id: str
    provider: Provider
    name: str
    created_at: datetime
    last_synced: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider.value,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "last_synced": self.last_synced.isoformat() if self.last_synced else None,
        }


@dataclass(frozen=True)
class Account:
    """A configured provider account with its encrypted credentials."""

    id: str
    provider: Provider
    name: str
    credentials_encrypted: bytes = field(repr=False)
    created_at: datetime
    last_synced: datetime | None = None

    def to_info(self) -> AccountInfo:
        return AccountInfo(
            id=self.id,
            provider=self.provider,
            name=self.name,
            created_at=self.created_at,
            last_synced=self.last_synced,
        )


@dataclass(frozen=True)
class QuotaSnapshot:
    """Account-level usage measured in one poll cycle. Append-only."""

    account_id: str
    timestamp: datetime
    tokens_input: int | None
    tokens_output: int | None
    cost_usd: float | None
    quota_limit: int | None = None
    quota_remaining: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    @property
    def usage_ratio(self) -> float | None:
        return usage_ratio(self.quota_limit, self.quota_remaining)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "timestamp": self.timestamp.isoformat(),
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "cost_usd": self.cost_usd,
            "quota_limit": self.quota_limit,
            "quota_remaining": self.quota_remaining,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class ModelUsage:
    """Per-model usage measured in one poll cycle. Append-only."""

    account_id: str
    model_name: str
    timestamp: datetime
    tokens_input: int
    tokens_output: int
    cost_usd: float
    request_count: int
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "model_name": self.model_name,
            "timestamp": self.timestamp.isoformat(),
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "cost_usd": self.cost_usd,
            "request_count": self.request_count,
        }


@dataclass(frozen=True)
class NotificationState:
    """When each threshold last fired for an account."""

    account_id: str
    last_75_notified: datetime | None = None
    last_90_notified: datetime | None = None
    last_95_notified: datetime | None = None

    @staticmethod
    def _field(threshold: int) -> str:
        if threshold not in NOTIFICATION_THRESHOLDS:
            raise ValueError(f"Unknown threshold: {threshold}")
        return f"last_{threshold}_notified"

    def last_notified(self, threshold: int) -> datetime | None:
        value: datetime | None = getattr(self, self._field(threshold))
        return value

    def with_notified(self, threshold: int, moment: datetime | None) -> NotificationState:
        """Return a copy with ``threshold``'s timestamp set (or cleared with None)."""
        return replace(self, **{self._field(threshold): moment})
