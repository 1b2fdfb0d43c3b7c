"""Provider abstraction shared by every usage adapter.

An adapter turns one account's credentials and a reporting window into a
normalized :class:`UsageReport`. Adapters hold no per-account state, so a
single instance serves concurrent fetches for many accounts.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from quonitor.constants import MAX_PAGES_PER_FETCH
from quonitor.errors import AuthError, RateLimited, Unavailable
from quonitor.logging import get_logger

if TYPE_CHECKING:
    from quonitor.providers.pricing import PriceTable

log = get_logger("quonitor.providers.base")

DEFAULT_HTTP_TIMEOUT = 30.0


class Provider(StrEnum):
    """Supported usage providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GITHUB = "github"

    @classmethod
    def parse(cls, value: str | Provider) -> Provider:
        """Parse a provider name case-insensitively.

        Raises:
            ValueError: If the name is not a known provider.
        """
        if isinstance(value, Provider):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown provider {value!r}; expected one of: {valid}") from None


@dataclass(frozen=True)
class Credentials:
    """Secrets for one account. Only ever held in memory in plaintext."""

    api_key: str | None = None
    oauth_token: str | None = None
    oauth_refresh_token: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "api_key": self.api_key,
            "oauth_token": self.oauth_token,
            "oauth_refresh_token": self.oauth_refresh_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credentials:
        return cls(
            api_key=data.get("api_key") or None,
            oauth_token=data.get("oauth_token") or None,
            oauth_refresh_token=data.get("oauth_refresh_token") or None,
        )

    def __repr__(self) -> str:
        # Never leak secrets through logs or tracebacks
        present = [name for name, value in self.to_dict().items() if value]
        return f"Credentials(present={present})"


@dataclass(frozen=True)
class ModelUsageEntry:
    """Usage of a single model within a reporting window."""

    model_name: str
    tokens_input: int
    tokens_output: int
    cost_usd: float
    request_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_name": self.model_name,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "cost_usd": self.cost_usd,
            "request_count": self.request_count,
        }


@dataclass(frozen=True)
class UsageReport:
    """Normalized usage for one account and one reporting window."""

    tokens_input: int
    tokens_output: int
    cost_usd: float
    quota_limit: int | None = None
    quota_remaining: int | None = None
    models: tuple[ModelUsageEntry, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


class ModelTotals:
    """Accumulates per-model token counts across pages and buckets."""

    def __init__(self) -> None:
        self._totals: dict[str, list[int]] = {}

    def add(self, model: str, tokens_input: int, tokens_output: int, requests: int) -> None:
        entry = self._totals.setdefault(model, [0, 0, 0])
        entry[0] += tokens_input
        entry[1] += tokens_output
        entry[2] += requests

    def to_report(
        self,
        prices: PriceTable,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> UsageReport:
        """Price every model and roll the breakdown up into a report.

        The report's totals are sums of the breakdown, so the per-model
        costs always add up to ``cost_usd``.
        """
        models = tuple(
            ModelUsageEntry(
                model_name=name,
                tokens_input=tin,
                tokens_output=tout,
                cost_usd=prices.cost(name, tin, tout),
                request_count=reqs,
            )
            for name, (tin, tout, reqs) in sorted(self._totals.items())
        )
        return UsageReport(
            tokens_input=sum(m.tokens_input for m in models),
            tokens_output=sum(m.tokens_output for m in models),
            cost_usd=math.fsum(m.cost_usd for m in models),
            models=models,
            metadata=metadata or {},
        )


def as_int(value: Any) -> int:
    """Coerce a JSON number (or null) to a non-negative int."""
    if value is None:
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class ProviderAdapter(ABC):
    """One provider's usage integration."""

    provider: ClassVar[Provider]
    display_name: ClassVar[str]
    supports_oauth: ClassVar[bool] = False
    implemented: ClassVar[bool] = True
    default_base_url: ClassVar[str] = ""

    def __init__(self, *, base_url: str | None = None, timeout: float = DEFAULT_HTTP_TIMEOUT) -> None:
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout = timeout

    @abstractmethod
    async def fetch_usage(
        self,
        credentials: Credentials,
        since: datetime,
        until: datetime,
    ) -> UsageReport:
        """Fetch usage for the window ``[since, until)``.

        Raises:
            AuthError: Credentials were rejected.
            RateLimited: The provider throttled the request.
            Unavailable: Transient provider or network failure.
            ProviderNotImplementedError: The provider has no integration.
        """

    def validate_credentials(self, credentials: Credentials) -> None:
        """Check that the credentials carry what this provider needs.

        Raises:
            AuthError: If the required secret is missing.
        """
        self.require_api_key(credentials)

    def require_api_key(self, credentials: Credentials) -> str:
        if not credentials.api_key:
            raise AuthError(f"{self.display_name} requires an API key", provider=self.provider)
        return credentials.api_key

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        snippet = (response.text or "")[:200]
        if status in (401, 403):
            raise AuthError(
                f"{self.display_name} rejected credentials ({status}): {snippet}",
                provider=self.provider,
            )
        if status == 429:
            raise RateLimited(
                f"{self.display_name} rate limit hit",
                provider=self.provider,
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        raise Unavailable(
            f"{self.display_name} API error ({status}): {snippet}",
            provider=self.provider,
        )

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        path: str,
        *,
        headers: dict[str, str],
        params: list[tuple[str, str | int]],
    ) -> dict[str, Any]:
        """GET ``path`` and return the decoded JSON object."""
        try:
            response = await client.get(f"{self._base_url}{path}", headers=headers, params=params)
        except httpx.TimeoutException as exc:
            raise Unavailable(
                f"{self.display_name} request timed out", provider=self.provider
            ) from exc
        except httpx.RequestError as exc:
            raise Unavailable(
                f"{self.display_name} request failed: {exc}", provider=self.provider
            ) from exc

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise Unavailable(
                f"{self.display_name} returned invalid JSON", provider=self.provider
            ) from exc
        if not isinstance(data, dict):
            raise Unavailable(
                f"{self.display_name} returned an unexpected payload", provider=self.provider
            )
        return data

    async def _paginate(
        self,
        client: httpx.AsyncClient,
        path: str,
        *,
        headers: dict[str, str],
        params: list[tuple[str, str | int]],
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield pages following the ``has_more``/``next_page`` cursor.

        Raises:
            Unavailable: The cursor was still open after ``MAX_PAGES_PER_FETCH`` pages.
        """
        page_params = list(params)
        for _ in range(MAX_PAGES_PER_FETCH):
            page = await self._get_json(client, path, headers=headers, params=page_params)
            yield page
            next_page = page.get("next_page")
            if not page.get("has_more") or not next_page:
                return
            page_params = [*params, ("page", next_page)]
        log.warning("usage_pagination_truncated", provider=self.provider, pages=MAX_PAGES_PER_FETCH)
        # Partial totals would under-count the window
        raise Unavailable(
            f"{self.display_name} usage report exceeded {MAX_PAGES_PER_FETCH} pages",
            provider=self.provider,
        )
