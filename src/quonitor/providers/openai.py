"""OpenAI organization usage adapter."""

from __future__ import annotations

from datetime import datetime

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
from quonitor.providers.pricing import OPENAI_PRICES

log = get_logger("quonitor.providers.openai")

USAGE_PATH = "/v1/organization/usage/completions"


class OpenAIAdapter(ProviderAdapter):
    """Reads daily completion usage grouped by model.

    Requires an organization admin key. OpenAI does not expose hard quota
    limits through this API, so ``quota_limit`` is always ``None``.
    """

    provider = Provider.OPENAI
    display_name = "OpenAI"
    default_base_url = "https://api.openai.com"

    async def fetch_usage(
        self,
        credentials: Credentials,
        since: datetime,
        until: datetime,
    ) -> UsageReport:
        api_key = self.require_api_key(credentials)
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        params: list[tuple[str, str | int]] = [
            ("start_time", int(since.timestamp())),
            ("end_time", int(until.timestamp())),
            ("bucket_width", "1d"),
            ("group_by", "model"),
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
                            as_int(result.get("input_tokens")),
                            as_int(result.get("output_tokens")),
                            as_int(result.get("num_model_requests")),
                        )

        report = totals.to_report(
            OPENAI_PRICES,
            metadata={
                "window_start": since.isoformat(),
                "window_end": until.isoformat(),
                "buckets": buckets,
            },
        )
        log.debug("openai_usage_fetched", models=len(report.models), buckets=buckets)
        return report
