"""In-memory latest-known-good usage per account.

Reads never touch storage and never block. Writes go through a lock so
that concurrent writers for the same account are applied one at a time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from quonitor.logging import get_logger
from quonitor.providers.base import ModelUsageEntry, Provider
from quonitor.storage.models import Account, ModelUsage, QuotaSnapshot, usage_ratio

if TYPE_CHECKING:
    from quonitor.storage.repository import QuotaRepository

log = get_logger("quonitor.services.cache")


@dataclass(frozen=True)
class CacheEntry:
    """Denormalized latest snapshot plus its per-model breakdown."""

    account_id: str
    provider: Provider
    account_name: str
    timestamp: datetime
    tokens_input: int | None
    tokens_output: int | None
    cost_usd: float | None
    quota_limit: int | None = None
    quota_remaining: int | None = None
    models: tuple[ModelUsageEntry, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def usage_ratio(self) -> float | None:
        return usage_ratio(self.quota_limit, self.quota_remaining)

    @classmethod
    def from_records(
        cls,
        account: Account,
        snapshot: QuotaSnapshot,
        model_usage: Sequence[ModelUsage],
    ) -> CacheEntry:
        return cls(
            account_id=account.id,
            provider=account.provider,
            account_name=account.name,
            timestamp=snapshot.timestamp,
            tokens_input=snapshot.tokens_input,
            tokens_output=snapshot.tokens_output,
            cost_usd=snapshot.cost_usd,
            quota_limit=snapshot.quota_limit,
            quota_remaining=snapshot.quota_remaining,
            models=tuple(
                ModelUsageEntry(
                    model_name=m.model_name,
                    tokens_input=m.tokens_input,
                    tokens_output=m.tokens_output,
                    cost_usd=m.cost_usd,
                    request_count=m.request_count,
                )
                for m in sorted(model_usage, key=lambda m: m.model_name)
            ),
            metadata=dict(snapshot.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "provider": self.provider.value,
            "account_name": self.account_name,
            "timestamp": self.timestamp.isoformat(),
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "cost_usd": self.cost_usd,
            "quota_limit": self.quota_limit,
            "quota_remaining": self.quota_remaining,
            "usage_ratio": self.usage_ratio,
            "models": [m.to_dict() for m in self.models],
            "metadata": self.metadata,
        }


class QuotaCache:
    """Map of account id to its latest :class:`CacheEntry`."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._write_lock = asyncio.Lock()

    def get(self, account_id: str) -> CacheEntry | None:
        return self._entries.get(account_id)

    def get_all(self) -> list[CacheEntry]:
        """All entries ordered by provider, account name and id."""
        return sorted(
            self._entries.values(),
            key=lambda e: (e.provider.value, e.account_name, e.account_id),
        )

    async def set(self, account_id: str, entry: CacheEntry) -> None:
        async with self._write_lock:
            self._entries[account_id] = entry

    async def remove(self, account_id: str) -> None:
        async with self._write_lock:
            self._entries.pop(account_id, None)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._entries

    async def warm(self, repository: QuotaRepository) -> int:
        """Populate from the newest stored snapshot of every account.

        Returns the number of entries loaded.
        """
        accounts = {a.id: a for a in await repository.list_accounts()}
        loaded = 0
        async with self._write_lock:
            for snapshot, model_usage in await repository.get_latest_snapshots_with_models():
                account = accounts.get(snapshot.account_id)
                if account is None:
                    continue
                self._entries[account.id] = CacheEntry.from_records(account, snapshot, model_usage)
                loaded += 1
        log.info("quota_cache_warmed", entries=loaded)
        return loaded
