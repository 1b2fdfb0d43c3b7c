"""Unit tests for runtime settings validation and snapshots."""

from datetime import UTC, datetime, time, timedelta, timezone

import pytest

from quonitor.errors import InvalidSettingError
from quonitor.settings_store import RuntimeSettings, SettingsStore, validate_setting


class TestValidateSetting:
    """Tests for validate_setting."""

    def test_unknown_key(self):
        with pytest.raises(InvalidSettingError, match="Unknown setting"):
            validate_setting("theme", "dark")

    @pytest.mark.parametrize(("value", "expected"), [("30", "30"), (" 86400 ", "86400")])
    def test_refresh_interval_bounds_accepted(self, value, expected):
        assert validate_setting("refresh_interval_seconds", value) == expected

    @pytest.mark.parametrize("value", ["29", "86401", "five", ""])
    def test_refresh_interval_rejected(self, value):
        with pytest.raises(InvalidSettingError):
            validate_setting("refresh_interval_seconds", value)

    @pytest.mark.parametrize(("value", "expected"), [("TRUE", "true"), ("false", "false")])
    def test_booleans_normalized(self, value, expected):
        assert validate_setting("threshold_90_enabled", value) == expected

    def test_boolean_rejected(self):
        with pytest.raises(InvalidSettingError):
            validate_setting("notifications_enabled", "yes")

    @pytest.mark.parametrize(("value", "expected"), [("", ""), ("22:00", "22:00"), ("07:05", "07:05")])
    def test_quiet_hours_accepted(self, value, expected):
        assert validate_setting("quiet_hours_start", value) == expected

    @pytest.mark.parametrize("value", ["24:00", "7:00", "22:60", "10pm"])
    def test_quiet_hours_rejected(self, value):
        with pytest.raises(InvalidSettingError, match="HH:MM"):
            validate_setting("quiet_hours_end", value)

    @pytest.mark.parametrize("value", ["0", "3651"])
    def test_retention_rejected(self, value):
        with pytest.raises(InvalidSettingError):
            validate_setting("data_retention_days", value)

    def test_invalid_setting_is_value_error(self):
        with pytest.raises(ValueError):
            validate_setting("data_retention_days", "-1")


class TestRuntimeSettings:
    """Tests for the immutable settings snapshot."""

    def test_defaults(self):
        settings = RuntimeSettings.from_mapping({})
        assert settings == RuntimeSettings()
        assert settings.refresh_interval_seconds == 300
        assert settings.data_retention_days == 90

    def test_parses_values(self):
        settings = RuntimeSettings.from_mapping(
            {
                "refresh_interval_seconds": "60",
                "threshold_75_enabled": "false",
                "quiet_hours_start": "22:00",
                "quiet_hours_end": "06:30",
                "unrelated": "ignored",
            }
        )
        assert settings.refresh_interval_seconds == 60
        assert settings.threshold_enabled(75) is False
        assert settings.threshold_enabled(90) is True
        assert settings.quiet_hours_start == time(22, 0)
        assert settings.quiet_hours_end == time(6, 30)

    def test_invalid_stored_value_falls_back_to_default(self):
        settings = RuntimeSettings.from_mapping({"refresh_interval_seconds": "1"})
        assert settings.refresh_interval_seconds == 300

    def test_snapshot_is_immutable(self):
        with pytest.raises(AttributeError):
            RuntimeSettings().refresh_interval_seconds = 10  # type: ignore[misc]


class TestQuietHours:
    """Tests for RuntimeSettings.in_quiet_hours."""

    def test_disabled_when_either_end_missing(self):
        settings = RuntimeSettings(quiet_hours_start=time(22, 0))
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 23, 0)) is False

    def test_same_day_window(self):
        settings = RuntimeSettings(quiet_hours_start=time(12, 0), quiet_hours_end=time(14, 0))
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 12, 0)) is True
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 13, 59)) is True
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 14, 0)) is False
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 11, 59)) is False

    def test_window_wrapping_midnight(self):
        settings = RuntimeSettings(quiet_hours_start=time(22, 0), quiet_hours_end=time(7, 0))
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 23, 30)) is True
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 3, 0)) is True
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 7, 0)) is False
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 12, 0)) is False

    def test_empty_window(self):
        settings = RuntimeSettings(quiet_hours_start=time(8, 0), quiet_hours_end=time(8, 0))
        assert settings.in_quiet_hours(datetime(2026, 3, 2, 8, 0)) is False

    def test_aware_datetime_uses_local_time(self):
        """An aware timestamp is compared in local wall-clock time."""
        moment = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        local = moment.astimezone()
        start = time(local.hour, 0)
        end = time((local.hour + 1) % 24, 0)
        settings = RuntimeSettings(quiet_hours_start=start, quiet_hours_end=end)
        assert settings.in_quiet_hours(moment) is True

        elsewhere = moment.astimezone(timezone(timedelta(hours=5)))
        assert settings.in_quiet_hours(elsewhere) is True


class TestSettingsStore:
    """Tests for SettingsStore over the repository."""

    async def test_set_persists_normalized_value(self, repository):
        store = SettingsStore(repository)

        stored = await store.set("notifications_enabled", "FALSE")

        assert stored == "false"
        assert repository.settings["notifications_enabled"] == "false"

    async def test_set_rejects_invalid_without_writing(self, repository):
        store = SettingsStore(repository)
        with pytest.raises(InvalidSettingError):
            await store.set("refresh_interval_seconds", "5")
        assert repository.settings["refresh_interval_seconds"] == "300"

    async def test_get_falls_back_to_default(self, repository):
        repository.settings.pop("data_retention_days")
        assert await SettingsStore(repository).get("data_retention_days") == "90"

    async def test_get_unknown_key(self, repository):
        with pytest.raises(InvalidSettingError):
            await SettingsStore(repository).get("nope")

    async def test_all_and_snapshot(self, repository):
        store = SettingsStore(repository)
        await store.set("refresh_interval_seconds", "45")

        everything = await store.all()
        snapshot = await store.snapshot()

        assert everything["refresh_interval_seconds"] == "45"
        assert snapshot.refresh_interval_seconds == 45
