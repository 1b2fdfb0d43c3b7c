"""Anthropic Admin API usage adapter."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from quonitor.constants import PROVIDER_PAGE_LIMIT
from quonitor.logging import get_logger
from quonitor.providers.base import (
    Credentials,
    ModelTotals,
    Provider,
    ProviderAdapter,
    UsageReport,
    as_int,
)
from quonitor.providers.pricing import ANTHROPIC_PRICES

log = get_logger("quonitor.providers.anthropic")

USAGE_PATH = "/v1/organizations/usage_report/messages"
ANTHROPIC_VERSION = "2023-06-01"


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _input_tokens(result: dict[str, Any]) -> int:
    """Uncached, cache-write and cache-read input tokens all count as input."""
    cache_creation = result.get("cache_creation") or {}
    return (
        as_int(result.get("uncached_input_tokens"))
        + sum(as_int(v) for v in cache_creation.values())
        + as_int(result.get("cache_read_input_tokens"))
    )


class AnthropicAdapter(ProviderAdapter):
    """Reads the daily messages usage report grouped by model.

    Requires an Admin API key. The report has no request counts, so every
    model entry records ``request_count=0``.
    """

    provider = Provider.ANTHROPIC
    display_name = "Anthropic"
    default_base_url = "https://api.anthropic.com"

    async def fetch_usage(
        self,
        credentials: Credentials,
        since: datetime,
        until: datetime,
    ) -> UsageReport:
        api_key = self.require_api_key(credentials)
        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        params: list[tuple[str, str | int]] = [
            ("starting_at", _rfc3339(since)),
            ("ending_at", _rfc3339(until)),
            ("bucket_width", "1d"),
            ("group_by[]", "model"),
            ("limit", PROVIDER_PAGE_LIMIT),
        ]

        totals = ModelTotals()
        buckets = 0
        async with self._client() as client:
            async for page in self._paginate(client, USAGE_PATH, headers=headers, params=params):
                for bucket in page.get("data") or []:
                    buckets += 1
                    for result in bucket.get("results") or []:
                        totals.add(
                            result.get("model") or "unknown",
                            _input_tokens(result),
                            as_int(result.get("output_tokens")),
                            0,
                        )

        report = totals.to_report(
            ANTHROPIC_PRICES,
            metadata={
                "window_start": since.isoformat(),
                "window_end": until.isoformat(),
                "buckets": buckets,
            },
        )
        log.debug("anthropic_usage_fetched", models=len(report.models), buckets=buckets)
        return report
