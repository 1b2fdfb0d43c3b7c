"""Runtime settings persisted in the ``settings`` table.

Unlike :mod:`quonitor.config` (process configuration from the environment),
these are user-facing knobs that can change while the process runs. Readers
take an immutable :class:`RuntimeSettings` snapshot at well-defined points
instead of reading individual keys mid-cycle.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import TYPE_CHECKING

from quonitor.constants import (
    DEFAULT_RUNTIME_SETTINGS,
    MAX_REFRESH_INTERVAL_SECONDS,
    MAX_RETENTION_DAYS,
    MIN_REFRESH_INTERVAL_SECONDS,
    MIN_RETENTION_DAYS,
    NOTIFICATION_THRESHOLDS,
)
from quonitor.errors import InvalidSettingError
from quonitor.logging import get_logger

if TYPE_CHECKING:
    from quonitor.storage.repository import QuotaRepository

log = get_logger("quonitor.settings_store")

_HHMM_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_BOOL_VALUES = {"true": True, "false": False}
_BOOL_KEYS = frozenset(
    {"notifications_enabled"} | {f"threshold_{t}_enabled" for t in NOTIFICATION_THRESHOLDS}
)


def _parse_bool(key: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized not in _BOOL_VALUES:
        raise InvalidSettingError(f"{key} must be 'true' or 'false', got {value!r}")
    return _BOOL_VALUES[normalized]


def _parse_int(key: str, value: str, low: int, high: int) -> int:
    try:
        parsed = int(value.strip())
    except ValueError:
        raise InvalidSettingError(f"{key} must be an integer, got {value!r}") from None
    if not low <= parsed <= high:
        raise InvalidSettingError(f"{key} must be between {low} and {high}, got {parsed}")
    return parsed


def _parse_clock(key: str, value: str) -> time | None:
    stripped = value.strip()
    if not stripped:
        return None
    match = _HHMM_PATTERN.match(stripped)
    if match is None:
        raise InvalidSettingError(f"{key} must be empty or HH:MM, got {value!r}")
    return time(int(match.group(1)), int(match.group(2)))


def validate_setting(key: str, value: str) -> str:
    """Validate one runtime setting and return its normalized string form.

    Raises:
        InvalidSettingError: Unknown key or a value outside the allowed range.
    """
    if key not in DEFAULT_RUNTIME_SETTINGS:
        known = ", ".join(sorted(DEFAULT_RUNTIME_SETTINGS))
        raise InvalidSettingError(f"Unknown setting {key!r}; known settings: {known}")
    if not isinstance(value, str):
        raise InvalidSettingError(f"{key} must be a string value")

    if key in _BOOL_KEYS:
        return "true" if _parse_bool(key, value) else "false"
    if key == "refresh_interval_seconds":
        return str(
            _parse_int(key, value, MIN_REFRESH_INTERVAL_SECONDS, MAX_REFRESH_INTERVAL_SECONDS)
        )
    if key == "data_retention_days":
        return str(_parse_int(key, value, MIN_RETENTION_DAYS, MAX_RETENTION_DAYS))
    # quiet_hours_start / quiet_hours_end
    parsed = _parse_clock(key, value)
    return parsed.strftime("%H:%M") if parsed is not None else ""


@dataclass(frozen=True)
class RuntimeSettings:
    """Immutable view of the runtime settings at one point in time."""

    refresh_interval_seconds: int = 300
    notifications_enabled: bool = True
    threshold_75_enabled: bool = True
    threshold_90_enabled: bool = True
    threshold_95_enabled: bool = True
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    data_retention_days: int = 90

    @classmethod
    def from_mapping(cls, values: dict[str, str]) -> RuntimeSettings:
        """Build a snapshot from stored strings, falling back to defaults.

        A stored value that no longer validates is logged and replaced by
        its default so one bad row cannot wedge the scheduler.
        """
        merged = dict(DEFAULT_RUNTIME_SETTINGS)
        for key, raw in values.items():
            if key not in DEFAULT_RUNTIME_SETTINGS:
                continue
            try:
                merged[key] = validate_setting(key, raw)
            except InvalidSettingError as exc:
                log.warning("stored_setting_invalid", key=key, error=str(exc))

        return cls(
            refresh_interval_seconds=int(merged["refresh_interval_seconds"]),
            notifications_enabled=merged["notifications_enabled"] == "true",
            threshold_75_enabled=merged["threshold_75_enabled"] == "true",
            threshold_90_enabled=merged["threshold_90_enabled"] == "true",
            threshold_95_enabled=merged["threshold_95_enabled"] == "true",
            quiet_hours_start=_parse_clock("quiet_hours_start", merged["quiet_hours_start"]),
            quiet_hours_end=_parse_clock("quiet_hours_end", merged["quiet_hours_end"]),
            data_retention_days=int(merged["data_retention_days"]),
        )

    def threshold_enabled(self, threshold: int) -> bool:
        enabled: bool = getattr(self, f"threshold_{threshold}_enabled")
        return enabled

    def in_quiet_hours(self, moment: datetime) -> bool:
        """Whether ``moment`` falls inside the quiet-hours window.

        Aware datetimes are converted to local time; naive ones are taken
        as local wall-clock time. The window is ``[start, end)`` and wraps
        midnight when start is after end.
        """
        if self.quiet_hours_start is None or self.quiet_hours_end is None:
            return False
        local = moment.astimezone() if moment.tzinfo is not None else moment
        minute = local.hour * 60 + local.minute
        start = self.quiet_hours_start.hour * 60 + self.quiet_hours_start.minute
        end = self.quiet_hours_end.hour * 60 + self.quiet_hours_end.minute
        if start == end:
            return False
        if start < end:
            return start <= minute < end
        return minute >= start or minute < end


class SettingsStore:
    """Validated access to the runtime settings stored by the repository."""

    def __init__(self, repository: QuotaRepository) -> None:
        self._repository = repository

    async def get(self, key: str) -> str:
        if key not in DEFAULT_RUNTIME_SETTINGS:
            raise InvalidSettingError(f"Unknown setting {key!r}")
        value = await self._repository.get_setting(key)
        return value if value is not None else DEFAULT_RUNTIME_SETTINGS[key]

    async def set(self, key: str, value: str) -> str:
        """Validate and persist a setting; returns the stored value."""
        normalized = validate_setting(key, value)
        await self._repository.set_setting(key, normalized)
        log.info("setting_updated", key=key, value=normalized)
        return normalized

    async def all(self) -> dict[str, str]:
        stored = await self._repository.get_all_settings()
        merged = dict(DEFAULT_RUNTIME_SETTINGS)
        merged.update({k: v for k, v in stored.items() if k in DEFAULT_RUNTIME_SETTINGS})
        return merged

    async def snapshot(self) -> RuntimeSettings:
        return RuntimeSettings.from_mapping(await self._repository.get_all_settings())
