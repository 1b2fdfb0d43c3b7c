"""One polling cycle: fetch, normalize, persist, cache, notify.

Every account is synced in its own task. Failures are contained per
account: a failing or hung provider marks that account's status and the
rest of the cycle carries on. Only a failure to list accounts at all
escapes :meth:`Aggregator.run_cycle`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from quonitor.constants import REPORTING_WINDOW_HOURS
from quonitor.errors import (
    REAUTH_ERRORS,
    TRANSIENT_ERRORS,
    AccountNotFoundError,
    QuonitorError,
    RateLimited,
    StorageError,
    Unavailable,
    error_kind,
)
from quonitor.logging import get_logger
from quonitor.services.cache import CacheEntry
from quonitor.storage.models import ModelUsage, QuotaSnapshot

if TYPE_CHECKING:
    from quonitor.providers.base import Credentials, Provider, UsageReport
    from quonitor.providers.registry import ProviderRegistry
    from quonitor.security.vault import CredentialVault
    from quonitor.services.cache import QuotaCache
    from quonitor.services.notifier import NotificationEngine
    from quonitor.settings_store import RuntimeSettings
    from quonitor.storage.models import Account
    from quonitor.storage.repository import QuotaRepository

log = get_logger("quonitor.services.aggregator")


@dataclass
class AccountSyncStatus:
    """Failure bookkeeping for one account."""

    account_id: str
    consecutive_failures: int = 0
    last_error_kind: str | None = None
    last_error: str | None = None
    last_attempt: datetime | None = None
    last_success: datetime | None = None
    needs_reauth: bool = False
    backoff_until: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "consecutive_failures": self.consecutive_failures,
            "last_error_kind": self.last_error_kind,
            "last_error": self.last_error,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "needs_reauth": self.needs_reauth,
            "backoff_until": self.backoff_until.isoformat() if self.backoff_until else None,
        }


@dataclass(frozen=True)
class AccountOutcome:
    account_id: str
    success: bool
    error_kind: str | None = None
    error: str | None = None
    duplicate: bool = False
    skipped: bool = False


@dataclass
class CycleResult:
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[AccountOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.success and not o.skipped)


class Aggregator:
    """Fans a polling cycle out over all active accounts."""

    def __init__(
        self,
        repository: QuotaRepository,
        vault: CredentialVault,
        registry: ProviderRegistry,
        cache: QuotaCache,
        notifier: NotificationEngine,
        *,
        max_concurrency: int = 4,
        fetch_timeout: float = 60.0,
        failure_alert_threshold: int = 3,
        window_hours: int = REPORTING_WINDOW_HOURS,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._repository = repository
        self._vault = vault
        self._registry = registry
        self._cache = cache
        self._notifier = notifier
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._fetch_timeout = fetch_timeout
        self._failure_alert_threshold = failure_alert_threshold
        self._window = timedelta(hours=window_hours)
        self._account_locks: dict[str, asyncio.Lock] = {}
        self._status: dict[str, AccountSyncStatus] = {}
        self._removed: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_cycle(self, settings: RuntimeSettings) -> CycleResult:
        """Sync every active account once and wait for all of them to settle.

        Raises:
            StorageError: The account list could not be read.
        """
        result = CycleResult(started_at=datetime.now(UTC))
        start = time.monotonic()
        accounts = await self._repository.list_active_accounts(
            self._registry.implemented_providers()
        )
        result.outcomes = list(
            await asyncio.gather(*(self._guarded_sync(a, settings) for a in accounts))
        )
        result.finished_at = datetime.now(UTC)
        log.info(
            "sync_cycle_completed",
            accounts=len(accounts),
            succeeded=result.succeeded,
            failed=result.failed,
            duration_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return result

    async def sync_account(self, account_id: str, settings: RuntimeSettings) -> CacheEntry | None:
        """Sync a single account now.

        Returns the new cache entry (or the existing one when the cycle was
        already stored). Raises the underlying error on failure.
        """
        account = await self._repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"No account with id {account_id!r}")
        entry = await self._attempt(account, settings)
        return entry if entry is not None else self._cache.get(account_id)

    async def fetch_report(
        self, provider: Provider, credentials: Credentials
    ) -> tuple[UsageReport, datetime, datetime]:
        """Fetch the current reporting window for ``provider``.

        Returns:
            ``(report, window_start, window_end)``

        Raises:
            Unavailable: The adapter did not answer within the fetch timeout.
        """
        adapter = self._registry.get(provider)
        until = datetime.now(UTC)
        since = until - self._window
        try:
            report = await asyncio.wait_for(
                adapter.fetch_usage(credentials, since, until),
                timeout=self._fetch_timeout,
            )
        except TimeoutError:
            raise Unavailable(
                f"Usage fetch timed out after {self._fetch_timeout:g}s",
                provider=provider.value,
            ) from None
        return report, since, until

    async def seed_account(
        self,
        account: Account,
        report: UsageReport,
        settings: RuntimeSettings,
        *,
        since: datetime,
        until: datetime,
    ) -> CacheEntry | None:
        """Store a report fetched before ``account`` was persisted as its first cycle."""
        async with self._lock_for(account.id):
            entry = await self._store(account, report, settings, since=since, until=until)
            self._record_success(account)
        return entry

    @asynccontextmanager
    async def account_lock(self, account_id: str) -> AsyncIterator[None]:
        """Hold ``account_id``'s sync lock; no sync of that account runs meanwhile."""
        async with self._lock_for(account_id):
            yield

    def forget(self, account_id: str) -> None:
        """Drop in-memory bookkeeping for a removed account.

        Syncs of the account that were already queued are discarded.
        """
        self._removed.add(account_id)
        self._status.pop(account_id, None)
        self._account_locks.pop(account_id, None)

    def get_sync_status(self) -> dict[str, AccountSyncStatus]:
        return dict(self._status)

    # ------------------------------------------------------------------
    # Per-account work
    # ------------------------------------------------------------------

    async def _guarded_sync(self, account: Account, settings: RuntimeSettings) -> AccountOutcome:
        status = self._status.get(account.id)
        now = datetime.now(UTC)
        if status is not None and status.backoff_until is not None and status.backoff_until > now:
            log.info(
                "account_sync_backing_off",
                account_id=account.id,
                until=status.backoff_until.isoformat(),
            )
            return AccountOutcome(account_id=account.id, success=False, skipped=True)

        try:
            entry = await self._attempt(account, settings)
        except AccountNotFoundError:
            log.info("account_removed_during_cycle", account_id=account.id)
            return AccountOutcome(account_id=account.id, success=False, skipped=True)
        except Exception as exc:
            return AccountOutcome(
                account_id=account.id,
                success=False,
                error_kind=error_kind(exc),
                error=str(exc),
            )
        return AccountOutcome(account_id=account.id, success=True, duplicate=entry is None)

    async def _attempt(self, account: Account, settings: RuntimeSettings) -> CacheEntry | None:
        """Run one sync with bookkeeping; re-raises whatever the sync raised."""
        async with self._semaphore:
            try:
                entry = await self._sync(account, settings)
            except AccountNotFoundError:
                raise
            except QuonitorError as exc:
                await self._record_failure(account, exc, settings)
                raise
            except Exception as exc:
                log.exception("account_sync_crashed", account_id=account.id)
                await self._record_failure(account, exc, settings)
                raise
        self._record_success(account)
        return entry

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        return self._account_locks.setdefault(account_id, asyncio.Lock())

    async def _sync(self, account: Account, settings: RuntimeSettings) -> CacheEntry | None:
        async with self._lock_for(account.id):
            if account.id in self._removed:
                raise AccountNotFoundError(f"Account {account.id!r} was removed")
            credentials = self._vault.decrypt_credentials(account.credentials_encrypted)
            report, since, until = await self.fetch_report(account.provider, credentials)
            return await self._store(account, report, settings, since=since, until=until)

    async def _store(
        self,
        account: Account,
        report: UsageReport,
        settings: RuntimeSettings,
        *,
        since: datetime,
        until: datetime,
    ) -> CacheEntry | None:
        """Persist, cache and evaluate one report. Caller holds the account lock."""
        snapshot = QuotaSnapshot(
            account_id=account.id,
            timestamp=until,
            tokens_input=report.tokens_input,
            tokens_output=report.tokens_output,
            cost_usd=report.cost_usd,
            quota_limit=report.quota_limit,
            quota_remaining=report.quota_remaining,
            metadata=dict(report.metadata),
        )
        model_usage = [
            ModelUsage(
                account_id=account.id,
                model_name=m.model_name,
                timestamp=until,
                tokens_input=m.tokens_input,
                tokens_output=m.tokens_output,
                cost_usd=m.cost_usd,
                request_count=m.request_count,
            )
            for m in report.models
        ]
        if not await self._repository.record_cycle(snapshot, model_usage, until):
            return None

        previous = self._cache.get(account.id)
        entry = CacheEntry.from_records(account, snapshot, model_usage)
        await self._cache.set(account.id, entry)
        log.info(
            "account_synced",
            account_id=account.id,
            provider=account.provider.value,
            tokens_input=report.tokens_input,
            tokens_output=report.tokens_output,
            cost_usd=round(report.cost_usd, 6),
            models=len(model_usage),
        )

        try:
            await self._notifier.process(
                account, entry, previous, settings, window_start=since, now=until
            )
        except StorageError as exc:
            log.warning(
                "notification_state_unavailable",
                account_id=account.id,
                error=str(exc),
            )
        return entry

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record_success(self, account: Account) -> None:
        if account.id in self._removed:
            return
        now = datetime.now(UTC)
        self._status[account.id] = AccountSyncStatus(
            account_id=account.id,
            last_attempt=now,
            last_success=now,
        )

    async def _record_failure(
        self,
        account: Account,
        exc: BaseException,
        settings: RuntimeSettings,
    ) -> None:
        if account.id in self._removed:
            return
        now = datetime.now(UTC)
        status = self._status.setdefault(account.id, AccountSyncStatus(account_id=account.id))
        status.consecutive_failures += 1
        status.last_error_kind = error_kind(exc)
        status.last_error = str(exc)
        status.last_attempt = now

        retry_after = exc.retry_after if isinstance(exc, RateLimited) else None
        status.backoff_until = now + timedelta(seconds=retry_after) if retry_after else None

        log.warning(
            "account_sync_failed",
            account_id=account.id,
            provider=account.provider.value,
            error_kind=status.last_error_kind,
            error=status.last_error,
            consecutive_failures=status.consecutive_failures,
            retry_after=retry_after,
        )

        if isinstance(exc, REAUTH_ERRORS):
            if not status.needs_reauth:
                status.needs_reauth = True
                await self._notifier.notify_reauth_required(account, str(exc), settings, now=now)
        elif (
            isinstance(exc, TRANSIENT_ERRORS)
            and status.consecutive_failures == self._failure_alert_threshold
        ):
            await self._notifier.notify_sync_failing(
                account, status.consecutive_failures, str(exc), settings, now=now
            )
