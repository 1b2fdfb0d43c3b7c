"""Google Cloud placeholder adapter."""

from __future__ import annotations

from datetime import datetime

from quonitor.errors import AuthError, ProviderNotImplementedError
from quonitor.providers.base import Credentials, Provider, ProviderAdapter, UsageReport


class GoogleAdapter(ProviderAdapter):
    """No billing integration yet; every fetch fails."""

    provider = Provider.GOOGLE
    display_name = "Google"
    supports_oauth = True
    implemented = False

    def validate_credentials(self, credentials: Credentials) -> None:
        if not credentials.oauth_token:
            raise AuthError("Google requires an OAuth token", provider=self.provider)

    async def fetch_usage(
        self,
        credentials: Credentials,
        since: datetime,
        until: datetime,
    ) -> UsageReport:
        raise ProviderNotImplementedError(
            "Google usage tracking is not implemented", provider=self.provider
        )
