"""Exception hierarchy for Quonitor.

Every failure a sync can hit maps onto one of these types so the
aggregator can decide between "retry next cycle" and "ask the user to
re-enter credentials" without inspecting messages.
"""

from __future__ import annotations


class QuonitorError(Exception):
    """Base class for all Quonitor errors."""


class VaultError(QuonitorError):
    """Credential encryption, decryption or key storage failed."""


class ProviderError(QuonitorError):
    """A provider adapter failed to produce a usage report."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class AuthError(ProviderError):
    """The provider rejected the credentials (401/403)."""


class RateLimited(ProviderError):
    """The provider asked us to back off (429)."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class Unavailable(ProviderError):
    """Transient provider or network failure (5xx, transport error, timeout)."""


class ProviderNotImplementedError(ProviderError):
    """The provider has no working usage integration."""


class StorageError(QuonitorError):
    """The persistence layer failed."""


class InvalidSettingError(QuonitorError, ValueError):
    """A runtime setting key or value was rejected."""


class AccountNotFoundError(QuonitorError):
    """No account exists with the requested id."""


TRANSIENT_ERRORS: tuple[type[QuonitorError], ...] = (RateLimited, Unavailable)
REAUTH_ERRORS: tuple[type[QuonitorError], ...] = (AuthError, VaultError)


def error_kind(exc: BaseException) -> str:
    """Return a stable snake_case label for an error, used in logs and status."""
    labels: list[tuple[type[BaseException], str]] = [
        (VaultError, "vault_error"),
        (AuthError, "auth_error"),
        (RateLimited, "rate_limited"),
        (Unavailable, "unavailable"),
        (ProviderNotImplementedError, "not_implemented"),
        (StorageError, "storage_error"),
        (ProviderError, "provider_error"),
    ]
    for exc_type, label in labels:
        if isinstance(exc, exc_type):
            return label
    return "internal_error"
