"""In-process API consumed by user interfaces.

:class:`QuotaMonitor` wires the repository, vault, adapters, cache,
notifier, aggregator and scheduler together and exposes the operations a
UI needs. Reads are served from the cache or the repository; writes go
through validation first.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from quonitor.config import Settings, get_settings
from quonitor.errors import (
    AccountNotFoundError,
    ProviderNotImplementedError,
    QuonitorError,
    RateLimited,
    StorageError,
    Unavailable,
)
from quonitor.logging import get_logger
from quonitor.notifications.sinks import build_sinks
from quonitor.providers.base import Credentials, Provider
from quonitor.providers.registry import ProviderRegistry, build_default_registry
from quonitor.security.keys import MasterKeyStore
from quonitor.security.vault import CredentialVault
from quonitor.services.aggregator import Aggregator
from quonitor.services.cache import CacheEntry, QuotaCache
from quonitor.services.notifier import NotificationEngine
from quonitor.services.scheduler import Scheduler
from quonitor.settings_store import SettingsStore
from quonitor.storage.models import Account, AccountInfo, ModelUsage, QuotaSnapshot
from quonitor.storage.repository import QuotaRepository

log = get_logger("quonitor.service")


def _since(days: int) -> datetime:
    if days < 1:
        raise ValueError("days must be >= 1")
    return datetime.now(UTC) - timedelta(days=days)


class QuotaMonitor:
    """Facade over the quota aggregation engine."""

    def __init__(
        self,
        *,
        repository: QuotaRepository,
        vault: CredentialVault,
        registry: ProviderRegistry,
        cache: QuotaCache,
        aggregator: Aggregator,
        scheduler: Scheduler,
        settings_store: SettingsStore,
    ) -> None:
        self._repository = repository
        self._vault = vault
        self._registry = registry
        self._cache = cache
        self._aggregator = aggregator
        self._scheduler = scheduler
        self._settings_store = settings_store
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        key_store: MasterKeyStore | None = None,
    ) -> QuotaMonitor:
        """Build a monitor with the default components for ``settings``."""
        settings = settings or get_settings()
        repository = QuotaRepository(settings.postgres_dsn)
        vault = CredentialVault(
            key_store=key_store
            or MasterKeyStore(settings.keyring_service, settings.keyring_username),
            max_plaintext_bytes=settings.max_credential_bytes,
        )
        registry = build_default_registry(settings)
        cache = QuotaCache()
        notifier = NotificationEngine(repository, build_sinks(settings))
        aggregator = Aggregator(
            repository,
            vault,
            registry,
            cache,
            notifier,
            max_concurrency=settings.max_concurrent_fetches,
            fetch_timeout=settings.fetch_timeout_seconds,
            failure_alert_threshold=settings.failure_alert_threshold,
        )
        settings_store = SettingsStore(repository)
        scheduler = Scheduler(aggregator, settings_store, repository)
        return cls(
            repository=repository,
            vault=vault,
            registry=registry,
            cache=cache,
            aggregator=aggregator,
            scheduler=scheduler,
            settings_store=settings_store,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, run_immediately: bool = True) -> None:
        """Open storage, load the master key, warm the cache and start polling."""
        await self._repository.initialize()
        await asyncio.to_thread(self._vault.ensure_key)
        await self._cache.warm(self._repository)
        self._scheduler.start(run_immediately=run_immediately)
        log.info("quota_monitor_started", cached_accounts=len(self._cache))

    async def close(self) -> None:
        await self._scheduler.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._repository.close()
        log.info("quota_monitor_closed")

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def add_account(
        self,
        provider: Provider | str,
        name: str,
        credentials: Credentials | Mapping[str, Any],
    ) -> str:
        """Check, encrypt and store a new account.

        The credentials are tried against the provider before anything is
        stored, and a successful fetch is recorded as the account's first
        cycle. If the provider is temporarily unavailable the account is
        stored anyway and synced in the background.

        Returns:
            The new account id.

        Raises:
            ValueError: Unknown provider or blank name.
            ProviderNotImplementedError: The provider has no usage integration.
            AuthError: The provider rejected the credentials, or they lack
                the secret the provider needs.
            VaultError: The credentials could not be encrypted.
        """
        parsed = Provider.parse(provider)
        adapter = self._registry.get(parsed)
        if not adapter.implemented:
            raise ProviderNotImplementedError(
                f"{adapter.display_name} usage monitoring is not supported yet",
                provider=parsed.value,
            )
        display_name = name.strip()
        if not display_name:
            raise ValueError("Account name must not be empty")
        if not isinstance(credentials, Credentials):
            credentials = Credentials.from_dict(dict(credentials))
        adapter.validate_credentials(credentials)

        try:
            fetched = await self._aggregator.fetch_report(parsed, credentials)
        except (RateLimited, Unavailable) as exc:
            log.warning("initial_fetch_unavailable", provider=parsed.value, error=str(exc))
            fetched = None

        # First use may load the master key from the keyring
        encrypted = await asyncio.to_thread(self._vault.encrypt_credentials, credentials)
        account = Account(
            id=str(uuid.uuid4()),
            provider=parsed,
            name=display_name,
            credentials_encrypted=encrypted,
            created_at=datetime.now(UTC),
        )
        await self._repository.insert_account(account)
        log.info("account_added", account_id=account.id, provider=parsed.value)

        if fetched is not None:
            report, since, until = fetched
            try:
                settings = await self._settings_store.snapshot()
                await self._aggregator.seed_account(
                    account, report, settings, since=since, until=until
                )
            except StorageError as exc:
                log.warning("initial_cycle_not_stored", account_id=account.id, error=str(exc))
        else:
            task = asyncio.create_task(
                self._initial_sync(account.id), name=f"sync-{account.id}"
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return account.id

    async def _initial_sync(self, account_id: str) -> None:
        try:
            settings = await self._settings_store.snapshot()
            await self._aggregator.sync_account(account_id, settings)
        except QuonitorError as exc:
            log.info("initial_sync_failed", account_id=account_id, error=str(exc))

    async def remove_account(self, account_id: str) -> None:
        """Delete an account and everything recorded for it.

        Waits for an in-flight sync of the account to finish first.

        Raises:
            AccountNotFoundError: No such account.
        """
        async with self._aggregator.account_lock(account_id):
            if not await self._repository.delete_account(account_id):
                raise AccountNotFoundError(f"No account with id {account_id!r}")
            await self._cache.remove(account_id)
            self._aggregator.forget(account_id)

    async def get_all_accounts(self) -> list[AccountInfo]:
        return [a.to_info() for a in await self._repository.list_accounts()]

    # ------------------------------------------------------------------
    # Usage reads
    # ------------------------------------------------------------------

    def get_all_quotas(self) -> list[CacheEntry]:
        return self._cache.get_all()

    def get_quota(self, account_id: str) -> CacheEntry | None:
        return self._cache.get(account_id)

    async def get_historical_snapshots(self, account_id: str, days: int) -> list[QuotaSnapshot]:
        return await self._repository.get_historical_snapshots(account_id, _since(days))

    async def get_model_usage_history(self, account_id: str, days: int) -> list[ModelUsage]:
        return await self._repository.get_model_usage_history(account_id, _since(days))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> str:
        return await self._settings_store.get(key)

    async def set_setting(self, key: str, value: str) -> str:
        return await self._settings_store.set(key, value)

    async def get_settings(self) -> dict[str, str]:
        return await self._settings_store.all()

    # ------------------------------------------------------------------
    # Refresh and maintenance
    # ------------------------------------------------------------------

    def refresh_now(self) -> bool:
        """Start a cycle now; False if one is already running (or polling is stopped)."""
        return self._scheduler.run_now()

    async def refresh_account(self, account_id: str) -> CacheEntry | None:
        """Sync one account immediately and return its cache entry."""
        settings = await self._settings_store.snapshot()
        return await self._aggregator.sync_account(account_id, settings)

    async def cleanup_old_data(self, days: int) -> tuple[int, int]:
        """Delete history older than ``days``; returns (snapshots, model rows) deleted."""
        return await self._repository.prune_older_than(days)

    def get_sync_status(self) -> dict[str, dict[str, Any]]:
        return {
            account_id: status.to_dict()
            for account_id, status in self._aggregator.get_sync_status().items()
        }

    def health(self) -> dict[str, Any]:
        report = self._scheduler.health()
        report["cached_accounts"] = len(self._cache)
        report["accounts_needing_reauth"] = sorted(
            account_id
            for account_id, status in self._aggregator.get_sync_status().items()
            if status.needs_reauth
        )
        return report
