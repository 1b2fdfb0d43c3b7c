"""Provider adapters that fetch and normalize usage data."""

from quonitor.providers.base import (
    Credentials,
    ModelUsageEntry,
    Provider,
    ProviderAdapter,
    UsageReport,
)
from quonitor.providers.registry import ProviderRegistry, build_default_registry

__all__ = [
    "Credentials",
    "ModelUsageEntry",
    "Provider",
    "ProviderAdapter",
    "ProviderRegistry",
    "UsageReport",
    "build_default_registry",
]
