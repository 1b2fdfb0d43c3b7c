"""Quota aggregation services: cache, notifier, aggregator and scheduler."""

from quonitor.services.aggregator import AccountOutcome, AccountSyncStatus, Aggregator, CycleResult
from quonitor.services.cache import CacheEntry, QuotaCache
from quonitor.services.notifier import NotificationEngine
from quonitor.services.scheduler import Scheduler, SchedulerState

__all__ = [
    "AccountOutcome",
    "AccountSyncStatus",
    "Aggregator",
    "CacheEntry",
    "CycleResult",
    "NotificationEngine",
    "QuotaCache",
    "Scheduler",
    "SchedulerState",
]
