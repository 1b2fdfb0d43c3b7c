"""Unit tests for the error taxonomy."""

import pytest

from quonitor.errors import (
    REAUTH_ERRORS,
    TRANSIENT_ERRORS,
    AccountNotFoundError,
    AuthError,
    InvalidSettingError,
    ProviderError,
    ProviderNotImplementedError,
    QuonitorError,
    RateLimited,
    StorageError,
    Unavailable,
    VaultError,
    error_kind,
)


class TestHierarchy:
    """Tests for exception relationships."""

    @pytest.mark.parametrize(
        "exc_type", [AuthError, RateLimited, Unavailable, ProviderNotImplementedError]
    )
    def test_provider_errors(self, exc_type):
        assert issubclass(exc_type, ProviderError)
        assert issubclass(exc_type, QuonitorError)

    def test_invalid_setting_is_value_error(self):
        assert issubclass(InvalidSettingError, ValueError)

    def test_rate_limited_carries_retry_after(self):
        exc = RateLimited("slow down", provider="openai", retry_after=12.5)
        assert exc.retry_after == 12.5
        assert exc.provider == "openai"

    def test_classification_groups(self):
        assert isinstance(RateLimited("x"), TRANSIENT_ERRORS)
        assert isinstance(Unavailable("x"), TRANSIENT_ERRORS)
        assert isinstance(AuthError("x"), REAUTH_ERRORS)
        assert isinstance(VaultError("x"), REAUTH_ERRORS)
        assert not isinstance(ProviderNotImplementedError("x"), TRANSIENT_ERRORS + REAUTH_ERRORS)


class TestErrorKind:
    """Tests for error_kind labels."""

    @pytest.mark.parametrize(
        ("exc", "label"),
        [
            (VaultError("x"), "vault_error"),
            (AuthError("x"), "auth_error"),
            (RateLimited("x"), "rate_limited"),
            (Unavailable("x"), "unavailable"),
            (ProviderNotImplementedError("x"), "not_implemented"),
            (StorageError("x"), "storage_error"),
            (ProviderError("x"), "provider_error"),
            (AccountNotFoundError("x"), "internal_error"),
            (RuntimeError("x"), "internal_error"),
        ],
    )
    def test_labels(self, exc, label):
        assert error_kind(exc) == label
