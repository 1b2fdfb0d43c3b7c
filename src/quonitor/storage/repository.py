"""PostgreSQL storage for accounts, usage history and notification state.

Follows the asyncpg.Pool pattern: initialise with a DSN (or an existing
pool), then use async methods for reads and writes. All driver errors are
translated into :class:`~quonitor.errors.StorageError` at this boundary.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import asyncpg  # type: ignore[import-not-found]

from quonitor.constants import DEFAULT_RUNTIME_SETTINGS
from quonitor.errors import StorageError
from quonitor.logging import get_logger
from quonitor.providers.base import Provider
from quonitor.storage.models import (
    Account,
    ModelUsage,
    NotificationState,
    QuotaSnapshot,
)

log = get_logger("quonitor.storage.repository")

# ------------------------------------------------------------------
# DDL
# ------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS accounts (
    id                     TEXT         PRIMARY KEY,
    provider               TEXT         NOT NULL
                           CHECK (provider IN ('openai', 'anthropic', 'google', 'github')),
    name                   TEXT         NOT NULL,
    credentials_encrypted  BYTEA        NOT NULL,
    created_at             TIMESTAMPTZ  NOT NULL DEFAULT NOW(),
    last_synced            TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS quota_snapshots (
    id               BIGSERIAL         PRIMARY KEY,
    account_id       TEXT              NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    timestamp        TIMESTAMPTZ       NOT NULL,
    tokens_input     BIGINT,
    tokens_output    BIGINT,
    cost_usd         DOUBLE PRECISION,
    quota_limit      BIGINT,
    quota_remaining  BIGINT,
    metadata         JSONB             NOT NULL DEFAULT '{}'::jsonb,
    UNIQUE (account_id, timestamp)
);
CREATE INDEX IF NOT EXISTS idx_quota_snapshots_account_timestamp
    ON quota_snapshots (account_id, timestamp DESC);

CREATE TABLE IF NOT EXISTS model_usage (
    id             BIGSERIAL         PRIMARY KEY,
    account_id     TEXT              NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    model_name     TEXT              NOT NULL,
    timestamp      TIMESTAMPTZ       NOT NULL,
    tokens_input   BIGINT            NOT NULL DEFAULT 0,
    tokens_output  BIGINT            NOT NULL DEFAULT 0,
    cost_usd       DOUBLE PRECISION  NOT NULL DEFAULT 0,
    request_count  BIGINT            NOT NULL DEFAULT 0,
    UNIQUE (account_id, model_name, timestamp)
);
CREATE INDEX IF NOT EXISTS idx_model_usage_account_timestamp
    ON model_usage (account_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_model_usage_model_name
    ON model_usage (model_name);

CREATE TABLE IF NOT EXISTS notification_state (
    account_id        TEXT         PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
    last_75_notified  TIMESTAMPTZ,
    last_90_notified  TIMESTAMPTZ,
    last_95_notified  TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS settings (
    key         TEXT         PRIMARY KEY,
    value       TEXT         NOT NULL,
    updated_at  TIMESTAMPTZ  NOT NULL DEFAULT NOW()
);
"""

_ACCOUNT_COLUMNS = "id, provider, name, credentials_encrypted, created_at, last_synced"
_SNAPSHOT_COLUMNS = (
    "id, account_id, timestamp, tokens_input, tokens_output, cost_usd, "
    "quota_limit, quota_remaining, metadata"
)
_MODEL_USAGE_COLUMNS = (
    "id, account_id, model_name, timestamp, tokens_input, tokens_output, cost_usd, request_count"
)

_INSERT_SNAPSHOT_SQL = """
    INSERT INTO quota_snapshots
        (account_id, timestamp, tokens_input, tokens_output, cost_usd,
         quota_limit, quota_remaining, metadata)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
    ON CONFLICT (account_id, timestamp) DO NOTHING
    RETURNING id
"""

_INSERT_MODEL_USAGE_SQL = """
    INSERT INTO model_usage
        (account_id, model_name, timestamp, tokens_input, tokens_output,
         cost_usd, request_count)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    ON CONFLICT (account_id, model_name, timestamp) DO NOTHING
"""

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def _affected_rows(status: str) -> int:
    """Parse the row count out of a status string such as ``'DELETE 3'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _decode_metadata(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, str):
        decoded = json.loads(raw)
        return decoded if isinstance(decoded, dict) else {"value": decoded}
    return dict(raw)


def _account_from_row(row: Any) -> Account:
    return Account(
        id=row["id"],
        provider=Provider(row["provider"]),
        name=row["name"],
        credentials_encrypted=bytes(row["credentials_encrypted"]),
        created_at=row["created_at"],
        last_synced=row["last_synced"],
    )


def _snapshot_from_row(row: Any) -> QuotaSnapshot:
    return QuotaSnapshot(
        id=row["id"],
        account_id=row["account_id"],
        timestamp=row["timestamp"],
        tokens_input=row["tokens_input"],
        tokens_output=row["tokens_output"],
        cost_usd=row["cost_usd"],
        quota_limit=row["quota_limit"],
        quota_remaining=row["quota_remaining"],
        metadata=_decode_metadata(row["metadata"]),
    )


def _model_usage_from_row(row: Any) -> ModelUsage:
    return ModelUsage(
        id=row["id"],
        account_id=row["account_id"],
        model_name=row["model_name"],
        timestamp=row["timestamp"],
        tokens_input=row["tokens_input"],
        tokens_output=row["tokens_output"],
        cost_usd=row["cost_usd"],
        request_count=row["request_count"],
    )


class QuotaRepository:
    """Async repository over the quota monitoring tables."""

    def __init__(self, dsn: str | None = None) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None  # type: ignore[type-arg]
        self._owns_pool = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, pool: asyncpg.Pool | None = None) -> None:  # type: ignore[type-arg]
        """Create (or adopt) the connection pool, ensure the schema and seed settings."""
        if pool is not None:
            self._pool = pool
        else:
            if not self._dsn:
                raise StorageError("No DSN configured for the repository")
            try:
                self._pool = await asyncpg.create_pool(dsn=self._dsn)
            except _DRIVER_ERRORS as exc:
                log.error("postgres_pool_creation_failed", error=str(exc))
                raise StorageError(f"Cannot connect to PostgreSQL: {exc}") from exc
            self._owns_pool = True
            log.info("postgres_pool_created", dsn=self._dsn.split("@")[-1])

        async with self._connection("ensure_schema") as conn:
            await conn.execute(_SCHEMA_SQL)
            await conn.executemany(
                "INSERT INTO settings (key, value) VALUES ($1, $2) ON CONFLICT (key) DO NOTHING",
                list(DEFAULT_RUNTIME_SETTINGS.items()),
            )
        log.info("quota_repository_initialized")

    async def close(self) -> None:
        """Close the pool if this repository created it."""
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            log.info("postgres_pool_closed")
        self._pool = None

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Any]:
        if self._pool is None:
            raise StorageError("Repository is not initialized")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _DRIVER_ERRORS as exc:
            log.error("storage_operation_failed", operation=operation, error=str(exc))
            raise StorageError(f"{operation} failed: {exc}") from exc

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[Any]:
        async with self._connection(operation) as conn, conn.transaction():
            yield conn

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def insert_account(self, account: Account) -> None:
        async with self._connection("insert_account") as conn:
            await conn.execute(
                f"INSERT INTO accounts ({_ACCOUNT_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6)",
                account.id,
                account.provider.value,
                account.name,
                account.credentials_encrypted,
                account.created_at,
                account.last_synced,
            )
        log.info("account_inserted", account_id=account.id, provider=account.provider.value)

    async def get_account(self, account_id: str) -> Account | None:
        async with self._connection("get_account") as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = $1", account_id
            )
        return _account_from_row(row) if row is not None else None

    async def list_accounts(self) -> list[Account]:
        async with self._connection("list_accounts") as conn:
            rows = await conn.fetch(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts ORDER BY created_at, id"
            )
        return [_account_from_row(r) for r in rows]

    async def list_active_accounts(
        self, providers: Iterable[Provider] | None = None
    ) -> list[Account]:
        """Accounts to poll, optionally restricted to the given providers."""
        if providers is None:
            return await self.list_accounts()
        names = [Provider(p).value for p in providers]
        async with self._connection("list_active_accounts") as conn:
            rows = await conn.fetch(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts "
                "WHERE provider = ANY($1::text[]) ORDER BY created_at, id",
                names,
            )
        return [_account_from_row(r) for r in rows]

    async def delete_account(self, account_id: str) -> bool:
        """Delete an account; snapshots, model usage and notification state cascade."""
        async with self._connection("delete_account") as conn:
            status = await conn.execute("DELETE FROM accounts WHERE id = $1", account_id)
        deleted = _affected_rows(status) > 0
        if deleted:
            log.info("account_deleted", account_id=account_id)
        return deleted

    async def update_last_synced(
        self, account_id: str, synced_at: datetime, *, conn: Any = None
    ) -> None:
        query = "UPDATE accounts SET last_synced = $2 WHERE id = $1"
        if conn is not None:
            await conn.execute(query, account_id, synced_at)
            return
        async with self._connection("update_last_synced") as own:
            await own.execute(query, account_id, synced_at)

    # ------------------------------------------------------------------
    # Snapshots and model usage
    # ------------------------------------------------------------------

    async def insert_snapshot(self, snapshot: QuotaSnapshot, *, conn: Any = None) -> int | None:
        """Insert a snapshot; returns its id, or None if that cycle was already stored."""
        args = (
            snapshot.account_id,
            snapshot.timestamp,
            snapshot.tokens_input,
            snapshot.tokens_output,
            snapshot.cost_usd,
            snapshot.quota_limit,
            snapshot.quota_remaining,
            json.dumps(snapshot.metadata),
        )
        if conn is not None:
            snapshot_id: int | None = await conn.fetchval(_INSERT_SNAPSHOT_SQL, *args)
            return snapshot_id
        async with self._connection("insert_snapshot") as own:
            snapshot_id = await own.fetchval(_INSERT_SNAPSHOT_SQL, *args)
            return snapshot_id

    async def insert_model_usage(self, batch: Sequence[ModelUsage], *, conn: Any = None) -> None:
        if not batch:
            return
        rows = [
            (
                u.account_id,
                u.model_name,
                u.timestamp,
                u.tokens_input,
                u.tokens_output,
                u.cost_usd,
                u.request_count,
            )
            for u in batch
        ]
        if conn is not None:
            await conn.executemany(_INSERT_MODEL_USAGE_SQL, rows)
            return
        async with self._connection("insert_model_usage") as own:
            await own.executemany(_INSERT_MODEL_USAGE_SQL, rows)

    async def record_cycle(
        self,
        snapshot: QuotaSnapshot,
        model_usage: Sequence[ModelUsage],
        synced_at: datetime,
    ) -> bool:
        """Persist one account's poll result as a single transaction.

        Writes the snapshot, its model rows and ``last_synced`` together.
        Returns False (writing nothing) if a snapshot with the same
        ``(account_id, timestamp)`` already exists.
        """
        async with self._transaction("record_cycle") as conn:
            snapshot_id = await self.insert_snapshot(snapshot, conn=conn)
            if snapshot_id is None:
                log.warning(
                    "duplicate_snapshot_skipped",
                    account_id=snapshot.account_id,
                    timestamp=snapshot.timestamp.isoformat(),
                )
                return False
            await self.insert_model_usage(model_usage, conn=conn)
            await self.update_last_synced(snapshot.account_id, synced_at, conn=conn)
        return True

    async def get_latest_snapshot(self, account_id: str) -> QuotaSnapshot | None:
        async with self._connection("get_latest_snapshot") as conn:
            row = await conn.fetchrow(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM quota_snapshots "
                "WHERE account_id = $1 ORDER BY timestamp DESC LIMIT 1",
                account_id,
            )
        return _snapshot_from_row(row) if row is not None else None

    async def get_latest_snapshots_with_models(
        self,
    ) -> list[tuple[QuotaSnapshot, list[ModelUsage]]]:
        """The newest snapshot of every account with that cycle's model rows."""
        async with self._connection("get_latest_snapshots") as conn:
            snapshot_rows = await conn.fetch(
                f"SELECT DISTINCT ON (account_id) {_SNAPSHOT_COLUMNS} FROM quota_snapshots "
                "ORDER BY account_id, timestamp DESC"
            )
            model_rows = await conn.fetch(
                """
                WITH latest AS (
                    SELECT DISTINCT ON (account_id) account_id, timestamp
                    FROM quota_snapshots
                    ORDER BY account_id, timestamp DESC
                )
                SELECT m.id, m.account_id, m.model_name, m.timestamp, m.tokens_input,
                       m.tokens_output, m.cost_usd, m.request_count
                FROM model_usage m
                JOIN latest l ON m.account_id = l.account_id AND m.timestamp = l.timestamp
                ORDER BY m.account_id, m.model_name
                """
            )

        models_by_account: dict[str, list[ModelUsage]] = {}
        for row in model_rows:
            usage = _model_usage_from_row(row)
            models_by_account.setdefault(usage.account_id, []).append(usage)

        result = []
        for row in snapshot_rows:
            snapshot = _snapshot_from_row(row)
            result.append((snapshot, models_by_account.get(snapshot.account_id, [])))
        return result

    async def get_historical_snapshots(
        self, account_id: str, since: datetime
    ) -> list[QuotaSnapshot]:
        async with self._connection("get_historical_snapshots") as conn:
            rows = await conn.fetch(
                f"SELECT {_SNAPSHOT_COLUMNS} FROM quota_snapshots "
                "WHERE account_id = $1 AND timestamp >= $2 ORDER BY timestamp ASC",
                account_id,
                since,
            )
        return [_snapshot_from_row(r) for r in rows]

    async def get_model_usage_history(self, account_id: str, since: datetime) -> list[ModelUsage]:
        async with self._connection("get_model_usage_history") as conn:
            rows = await conn.fetch(
                f"SELECT {_MODEL_USAGE_COLUMNS} FROM model_usage "
                "WHERE account_id = $1 AND timestamp >= $2 ORDER BY timestamp ASC, model_name",
                account_id,
                since,
            )
        return [_model_usage_from_row(r) for r in rows]

    async def prune_older_than(
        self, retention_days: int, *, now: datetime | None = None
    ) -> tuple[int, int]:
        """Delete snapshots and model usage older than the retention window.

        Returns:
            ``(snapshots_deleted, model_rows_deleted)``
        """
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)
        async with self._transaction("prune_older_than") as conn:
            model_status = await conn.execute(
                "DELETE FROM model_usage WHERE timestamp < $1", cutoff
            )
            snapshot_status = await conn.execute(
                "DELETE FROM quota_snapshots WHERE timestamp < $1", cutoff
            )
        deleted = (_affected_rows(snapshot_status), _affected_rows(model_status))
        if any(deleted):
            log.info(
                "retention_pruned",
                cutoff=cutoff.isoformat(),
                snapshots=deleted[0],
                model_rows=deleted[1],
            )
        return deleted

    # ------------------------------------------------------------------
    # Notification state
    # ------------------------------------------------------------------

    async def get_notification_state(self, account_id: str) -> NotificationState | None:
        async with self._connection("get_notification_state") as conn:
            row = await conn.fetchrow(
                "SELECT account_id, last_75_notified, last_90_notified, last_95_notified "
                "FROM notification_state WHERE account_id = $1",
                account_id,
            )
        if row is None:
            return None
        return NotificationState(
            account_id=row["account_id"],
            last_75_notified=row["last_75_notified"],
            last_90_notified=row["last_90_notified"],
            last_95_notified=row["last_95_notified"],
        )

    async def update_notification_state(self, state: NotificationState) -> None:
        async with self._connection("update_notification_state") as conn:
            await conn.execute(
                """
                INSERT INTO notification_state
                    (account_id, last_75_notified, last_90_notified, last_95_notified)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (account_id) DO UPDATE SET
                    last_75_notified = EXCLUDED.last_75_notified,
                    last_90_notified = EXCLUDED.last_90_notified,
                    last_95_notified = EXCLUDED.last_95_notified
                """,
                state.account_id,
                state.last_75_notified,
                state.last_90_notified,
                state.last_95_notified,
            )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        async with self._connection("get_setting") as conn:
            value: str | None = await conn.fetchval(
                "SELECT value FROM settings WHERE key = $1", key
            )
        return value

    async def get_all_settings(self) -> dict[str, str]:
        async with self._connection("get_all_settings") as conn:
            rows = await conn.fetch("SELECT key, value FROM settings")
        return {row["key"]: row["value"] for row in rows}

    async def set_setting(self, key: str, value: str) -> None:
        async with self._connection("set_setting") as conn:
            await conn.execute(
                """
                INSERT INTO settings (key, value, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = NOW()
                """,
                key,
                value,
            )
