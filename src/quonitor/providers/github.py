"""GitHub Copilot placeholder adapter."""

from __future__ import annotations

from datetime import datetime

from quonitor.errors import AuthError, ProviderNotImplementedError
from quonitor.providers.base import Credentials, Provider, ProviderAdapter, UsageReport


class GitHubAdapter(ProviderAdapter):
    """Copilot metrics need organization-level GraphQL access; not wired up."""

    provider = Provider.GITHUB
    display_name = "GitHub Copilot"
    supports_oauth = True
    implemented = False

    def validate_credentials(self, credentials: Credentials) -> None:
        if not (credentials.oauth_token or credentials.api_key):
            raise AuthError(
                "GitHub requires an OAuth token or personal access token",
                provider=self.provider,
            )

    async def fetch_usage(
        self,
        credentials: Credentials,
        since: datetime,
        until: datetime,
    ) -> UsageReport:
        raise ProviderNotImplementedError(
            "GitHub Copilot usage tracking is not implemented", provider=self.provider
        )
