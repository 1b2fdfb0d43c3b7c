"""Background polling loop with a preemptible sleep.

The loop sleeps for the configured refresh interval, then runs one
aggregator cycle. :meth:`Scheduler.run_now` cuts the sleep short; a trigger
that arrives while a cycle is running is coalesced into that cycle.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from quonitor.errors import StorageError
from quonitor.logging import get_logger

if TYPE_CHECKING:
    from quonitor.services.aggregator import Aggregator, CycleResult
    from quonitor.settings_store import RuntimeSettings, SettingsStore
    from quonitor.storage.repository import QuotaRepository

log = get_logger("quonitor.services.scheduler")


class SchedulerState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class Scheduler:
    """Drives periodic and on-demand aggregator cycles."""

    def __init__(
        self,
        aggregator: Aggregator,
        settings_store: SettingsStore,
        repository: QuotaRepository,
    ) -> None:
        self._aggregator = aggregator
        self._settings_store = settings_store
        self._repository = repository
        self._state = SchedulerState.STOPPED
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._stopping = False
        self._cycles_completed = 0
        self.last_cycle: CycleResult | None = None
        self.last_error: str | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def cycles_completed(self) -> int:
        return self._cycles_completed

    @property
    def healthy(self) -> bool:
        return self.last_error is None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self, *, run_immediately: bool = False) -> None:
        """Start the loop. With ``run_immediately`` the first cycle skips the sleep."""
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self.last_error = None
        self._state = SchedulerState.IDLE
        if run_immediately:
            self._wake.set()
        else:
            self._wake.clear()
        self._task = asyncio.create_task(self._loop(), name="quonitor-scheduler")
        log.info("scheduler_started", run_immediately=run_immediately)

    def run_now(self) -> bool:
        """Preempt the current sleep.

        Returns False when the trigger was coalesced into a running cycle
        or the scheduler is stopped.
        """
        if self._state is SchedulerState.RUNNING:
            log.debug("refresh_coalesced")
            return False
        if self._state is SchedulerState.STOPPED:
            return False
        self._wake.set()
        return True

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight cycle finish first."""
        if self._task is None:
            self._state = SchedulerState.STOPPED
            return
        self._stopping = True
        self._wake.set()
        await self._task
        self._task = None
        log.info("scheduler_stopped", cycles_completed=self._cycles_completed)

    def health(self) -> dict[str, Any]:
        last = self.last_cycle
        return {
            "state": self._state.value,
            "healthy": self.healthy,
            "last_error": self.last_error,
            "cycles_completed": self._cycles_completed,
            "last_cycle_at": last.finished_at.isoformat() if last and last.finished_at else None,
            "last_cycle_succeeded": last.succeeded if last else None,
            "last_cycle_failed": last.failed if last else None,
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        try:
            while not self._stopping:
                settings = await self._settings_store.snapshot()
                try:
                    await asyncio.wait_for(
                        self._wake.wait(), timeout=settings.refresh_interval_seconds
                    )
                except TimeoutError:
                    pass
                self._wake.clear()
                if self._stopping:
                    break
                await self._run_cycle(settings)
        except StorageError as exc:
            self.last_error = str(exc)
            log.error("scheduler_storage_unreachable", error=str(exc))
        except Exception as exc:
            self.last_error = str(exc)
            log.exception("scheduler_crashed")
        finally:
            self._state = SchedulerState.STOPPED

    async def _run_cycle(self, settings: RuntimeSettings) -> None:
        self._state = SchedulerState.RUNNING
        try:
            self.last_cycle = await self._aggregator.run_cycle(settings)
            self._cycles_completed += 1
            try:
                await self._repository.prune_older_than(
                    settings.data_retention_days, now=datetime.now(UTC)
                )
            except StorageError as exc:
                log.warning("retention_prune_failed", error=str(exc))
        finally:
            if not self._stopping:
                self._state = SchedulerState.IDLE
