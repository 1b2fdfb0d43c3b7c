"""Centralized constants for Quonitor."""

# Reporting window used for provider usage queries and notification de-duplication
REPORTING_WINDOW_HOURS = 24

# Usage thresholds (percent), ascending
NOTIFICATION_THRESHOLDS = (75, 90, 95)

# Runtime settings defaults, seeded into the settings table on first run
DEFAULT_RUNTIME_SETTINGS: dict[str, str] = {
    "refresh_interval_seconds": "300",
    "notifications_enabled": "true",
    "threshold_75_enabled": "true",
    "threshold_90_enabled": "true",
    "threshold_95_enabled": "true",
    "quiet_hours_start": "",
    "quiet_hours_end": "",
    "data_retention_days": "90",
}

# Bounds for validated runtime settings
MIN_REFRESH_INTERVAL_SECONDS = 30
MAX_REFRESH_INTERVAL_SECONDS = 86400
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 3650

# AES-256-GCM
MASTER_KEY_SIZE = 32
NONCE_SIZE = 12

# HTTP
PROVIDER_PAGE_LIMIT = 31
MAX_PAGES_PER_FETCH = 20
