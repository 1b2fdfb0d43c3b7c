"""Shared fixtures: in-memory keyring, repository fake, scripted adapter, mock pool."""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError

from quonitor.constants import DEFAULT_RUNTIME_SETTINGS
from quonitor.errors import StorageError
from quonitor.providers.base import (
    Credentials,
    ModelUsageEntry,
    Provider,
    ProviderAdapter,
    UsageReport,
)
from quonitor.providers.registry import ProviderRegistry
from quonitor.security.vault import CredentialVault
from quonitor.settings_store import RuntimeSettings
from quonitor.storage.models import Account, ModelUsage, NotificationState, QuotaSnapshot

# ------------------------------------------------------------------
# Keyring
# ------------------------------------------------------------------


class InMemoryKeyring(KeyringBackend):
    """Keyring backend that keeps passwords in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.passwords: dict[tuple[str, str], str] = {}
        self.set_calls = 0

    def get_password(self, service: str, username: str) -> str | None:
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.set_calls += 1
        self.passwords[(service, username)] = password


class BrokenKeyring(KeyringBackend):
    """Keyring backend with no working secure storage behind it."""

    priority = 1  # type: ignore[assignment]

    def get_password(self, service: str, username: str) -> str | None:
        raise KeyringError("No recommended backend was available")

    def set_password(self, service: str, username: str, password: str) -> None:
        raise KeyringError("No recommended backend was available")


# ------------------------------------------------------------------
# Repository fake
# ------------------------------------------------------------------


class InMemoryRepository:
    """Dict-backed stand-in for QuotaRepository with the same async surface."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.snapshots: list[QuotaSnapshot] = []
        self.model_usage: list[ModelUsage] = []
        self.notification_states: dict[str, NotificationState] = {}
        self.settings: dict[str, str] = dict(DEFAULT_RUNTIME_SETTINGS)
        self.fail_record_cycle: set[str] = set()
        self.fail_list_accounts = False
        self.on_record: Callable[[QuotaSnapshot], None] | None = None
        self.initialized = False
        self.closed = False
        self.prune_calls: list[int] = []

    async def initialize(self, pool: Any = None) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.closed = True

    async def insert_account(self, account: Account) -> None:
        self.accounts[account.id] = account

    async def get_account(self, account_id: str) -> Account | None:
        return self.accounts.get(account_id)

    async def list_accounts(self) -> list[Account]:
        return sorted(self.accounts.values(), key=lambda a: (a.created_at, a.id))

    async def list_active_accounts(
        self, providers: Iterable[Provider] | None = None
    ) -> list[Account]:
        if self.fail_list_accounts:
            raise StorageError("list_active_accounts failed: connection refused")
        accounts = await self.list_accounts()
        if providers is None:
            return accounts
        wanted = set(providers)
        return [a for a in accounts if a.provider in wanted]

    async def delete_account(self, account_id: str) -> bool:
        if self.accounts.pop(account_id, None) is None:
            return False
        self.snapshots = [s for s in self.snapshots if s.account_id != account_id]
        self.model_usage = [m for m in self.model_usage if m.account_id != account_id]
        self.notification_states.pop(account_id, None)
        return True

    async def record_cycle(
        self,
        snapshot: QuotaSnapshot,
        model_usage: Sequence[ModelUsage],
        synced_at: datetime,
    ) -> bool:
        if snapshot.account_id in self.fail_record_cycle:
            raise StorageError("record_cycle failed: disk full")
        if any(
            s.account_id == snapshot.account_id and s.timestamp == snapshot.timestamp
            for s in self.snapshots
        ):
            return False
        self.snapshots.append(replace(snapshot, id=len(self.snapshots) + 1))
        self.model_usage.extend(model_usage)
        account = self.accounts[snapshot.account_id]
        self.accounts[account.id] = replace(account, last_synced=synced_at)
        if self.on_record is not None:
            self.on_record(snapshot)
        return True

    async def get_latest_snapshots_with_models(
        self,
    ) -> list[tuple[QuotaSnapshot, list[ModelUsage]]]:
        latest: dict[str, QuotaSnapshot] = {}
        for snapshot in self.snapshots:
            current = latest.get(snapshot.account_id)
            if current is None or snapshot.timestamp > current.timestamp:
                latest[snapshot.account_id] = snapshot
        return [
            (
                s,
                [
                    m
                    for m in self.model_usage
                    if m.account_id == s.account_id and m.timestamp == s.timestamp
                ],
            )
            for s in latest.values()
        ]

    async def get_historical_snapshots(
        self, account_id: str, since: datetime
    ) -> list[QuotaSnapshot]:
        return sorted(
            (s for s in self.snapshots if s.account_id == account_id and s.timestamp >= since),
            key=lambda s: s.timestamp,
        )

    async def get_model_usage_history(self, account_id: str, since: datetime) -> list[ModelUsage]:
        return sorted(
            (m for m in self.model_usage if m.account_id == account_id and m.timestamp >= since),
            key=lambda m: (m.timestamp, m.model_name),
        )

    async def prune_older_than(
        self, retention_days: int, *, now: datetime | None = None
    ) -> tuple[int, int]:
        self.prune_calls.append(retention_days)
        cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
        before = (len(self.snapshots), len(self.model_usage))
        self.snapshots = [s for s in self.snapshots if s.timestamp >= cutoff]
        self.model_usage = [m for m in self.model_usage if m.timestamp >= cutoff]
        return before[0] - len(self.snapshots), before[1] - len(self.model_usage)

    async def get_notification_state(self, account_id: str) -> NotificationState | None:
        return self.notification_states.get(account_id)

    async def update_notification_state(self, state: NotificationState) -> None:
        self.notification_states[state.account_id] = state

    async def get_setting(self, key: str) -> str | None:
        return self.settings.get(key)

    async def get_all_settings(self) -> dict[str, str]:
        return dict(self.settings)

    async def set_setting(self, key: str, value: str) -> None:
        self.settings[key] = value


# ------------------------------------------------------------------
# Adapter double
# ------------------------------------------------------------------

Behavior = UsageReport | BaseException | Callable[[], Awaitable[UsageReport]]


class ScriptedAdapter(ProviderAdapter):
    """OpenAI-shaped adapter whose result is chosen per API key."""

    provider = Provider.OPENAI
    display_name = "Scripted"

    def __init__(self, default: Behavior | None = None) -> None:
        super().__init__(base_url="https://usage.test")
        self.default: Behavior = default if default is not None else make_report()
        self.behaviors: dict[str, Behavior] = {}
        self.calls: list[str | None] = []

    async def fetch_usage(
        self, credentials: Credentials, since: datetime, until: datetime
    ) -> UsageReport:
        self.calls.append(credentials.api_key)
        behavior = self.behaviors.get(credentials.api_key or "", self.default)
        if isinstance(behavior, BaseException):
            raise behavior
        if callable(behavior):
            return await behavior()
        return behavior


def make_report(
    *,
    models: Sequence[tuple[str, int, int, float, int]] = (("gpt-4o", 1000, 500, 0.0075, 3),),
    quota_limit: int | None = None,
    quota_remaining: int | None = None,
) -> UsageReport:
    entries = tuple(
        ModelUsageEntry(
            model_name=name,
            tokens_input=tin,
            tokens_output=tout,
            cost_usd=cost,
            request_count=reqs,
        )
        for name, tin, tout, cost, reqs in models
    )
    return UsageReport(
        tokens_input=sum(e.tokens_input for e in entries),
        tokens_output=sum(e.tokens_output for e in entries),
        cost_usd=sum(e.cost_usd for e in entries),
        quota_limit=quota_limit,
        quota_remaining=quota_remaining,
        models=entries,
    )


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def memory_keyring() -> InMemoryKeyring:
    return InMemoryKeyring()


@pytest.fixture
def vault() -> CredentialVault:
    """A vault with a random in-memory key."""
    return CredentialVault(key=os.urandom(32))


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def runtime_settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def scripted_adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def registry(scripted_adapter: ScriptedAdapter) -> ProviderRegistry:
    return ProviderRegistry([scripted_adapter])


@pytest.fixture
def add_account(repository: InMemoryRepository, vault: CredentialVault):
    """Factory that stores an account with encrypted credentials."""
    counter = {"n": 0}

    async def _add(
        name: str = "Primary",
        *,
        api_key: str = "sk-test",
        provider: Provider = Provider.OPENAI,
    ) -> Account:
        counter["n"] += 1
        account = Account(
            id=f"acct-{counter['n']}",
            provider=provider,
            name=name,
            credentials_encrypted=vault.encrypt_credentials(Credentials(api_key=api_key)),
            created_at=datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=counter["n"]),
        )
        await repository.insert_account(account)
        return account

    return _add


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool that yields an async connection context."""
    pool = MagicMock()
    conn = AsyncMock()
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn)
    ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = ctx

    tx_ctx = MagicMock()
    tx_ctx.__aenter__ = AsyncMock(return_value=None)
    tx_ctx.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=tx_ctx)
    return pool, conn


@pytest.fixture
def scripted_adapter_cls() -> type[ScriptedAdapter]:
    return ScriptedAdapter


@pytest.fixture
def report_factory() -> Callable[..., UsageReport]:
    return make_report


@pytest.fixture
def broken_keyring() -> BrokenKeyring:
    return BrokenKeyring()
