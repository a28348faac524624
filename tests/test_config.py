"""Tests for configuration loading."""

import os
from unittest.mock import patch

import pytest

from provisioner.config import (
    DEFAULT_MAX_WORKERS,
    DEFAULT_POLL_MAX_ATTEMPTS,
    MAX_POLL_ATTEMPTS,
    MAX_RETRY_ATTEMPTS,
    AzureSettings,
    EngineSettings,
    RetryPolicy,
)
from provisioner.errors import ConfigurationError, ConfigurationErrorKind, ErrorClass

SUBSCRIPTION_ID = "12345678-1234-1234-1234-123456789012"


class TestRetryPolicy:
    """Tests for RetryPolicy validation."""

    def test_defaults(self) -> None:
        """Test that the default policy retries transient and quota errors."""
        policy = RetryPolicy()

        assert policy.is_retryable(ErrorClass.TRANSIENT)
        assert policy.is_retryable(ErrorClass.QUOTA_EXCEEDED)
        assert not policy.is_retryable(ErrorClass.INVALID_ARGUMENT)

    @pytest.mark.parametrize(
        "error_class",
        [ErrorClass.INVALID_ARGUMENT, ErrorClass.PERMISSION_DENIED, ErrorClass.UNAUTHENTICATED],
    )
    def test_non_retryable_classes_rejected(self, error_class: ErrorClass) -> None:
        """Test that permanent error classes can never be configured as retryable."""
        with pytest.raises(ConfigurationError) as exc_info:
            RetryPolicy(retryable=frozenset({ErrorClass.TRANSIENT, error_class}))

        assert error_class.value in str(exc_info.value)
        assert exc_info.value.kind == ConfigurationErrorKind.INVALID_SETTING

    def test_attempts_out_of_range(self) -> None:
        """Test that max_attempts outside 1..MAX_RETRY_ATTEMPTS is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            RetryPolicy(max_attempts=MAX_RETRY_ATTEMPTS + 1)

        assert "RETRY_MAX_ATTEMPTS" in str(exc_info.value)

    def test_all_errors_reported_together(self) -> None:
        """Test that every invalid field is listed in one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            RetryPolicy(base_delay_seconds=-1, backoff_factor=0.5, max_attempts=0)

        message = str(exc_info.value)
        assert "RETRY_BASE_DELAY_SECONDS" in message
        assert "RETRY_BACKOFF_FACTOR" in message
        assert "RETRY_MAX_ATTEMPTS" in message


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_from_env_defaults(self) -> None:
        """Test loading with no environment overrides."""
        with patch.dict(os.environ, {}, clear=True):
            settings = EngineSettings.from_env()

        assert settings.max_workers == DEFAULT_MAX_WORKERS
        assert settings.retry == RetryPolicy()

    def test_from_env_overrides(self) -> None:
        """Test that environment variables override defaults."""
        env = {"MAX_WORKERS": "8", "POLL_MAX_ATTEMPTS": "12", "RETRY_MAX_ATTEMPTS": "2"}
        with patch.dict(os.environ, env, clear=True):
            settings = EngineSettings.from_env()

        assert settings.max_workers == 8
        assert settings.poll_max_attempts == 12
        assert settings.retry.max_attempts == 2

    def test_non_integer_env_value(self) -> None:
        """Test that a malformed integer is reported with its variable name."""
        with patch.dict(os.environ, {"MAX_WORKERS": "many"}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                EngineSettings.from_env()

        assert "MAX_WORKERS" in str(exc_info.value)

    def test_max_workers_bounds(self) -> None:
        """Test that a zero-sized pool is rejected."""
        with pytest.raises(ConfigurationError):
            EngineSettings(max_workers=0)

    def test_poll_policy_honours_poll_attempts(self) -> None:
        """Test that polling is not limited by the retry attempt bound."""
        settings = EngineSettings(poll_max_attempts=100, poll_base_delay_seconds=90)

        policy = settings.poll_policy

        assert policy.max_attempts == 100
        assert policy.base_delay_seconds == 90
        assert policy.max_delay_seconds == 90

    def test_default_poll_attempts(self) -> None:
        assert EngineSettings().poll_policy.max_attempts == DEFAULT_POLL_MAX_ATTEMPTS

    def test_poll_attempts_bounds(self) -> None:
        """Test that an out-of-range poll limit is reported, not clamped."""
        with pytest.raises(ConfigurationError) as exc_info:
            EngineSettings(poll_max_attempts=MAX_POLL_ATTEMPTS + 1)

        assert "POLL_MAX_ATTEMPTS" in str(exc_info.value)


class TestAzureSettings:
    """Tests for AzureSettings."""

    def test_valid_settings(self) -> None:
        """Test creating valid settings and the project scope."""
        settings = AzureSettings(
            subscription_id=SUBSCRIPTION_ID,
            resource_group_name="rg-shop",
            location="westeurope",
        )

        assert settings.project_scope == (
            f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-shop"
        )
        assert settings.client_id is None

    def test_invalid_subscription_id(self) -> None:
        """Test that a non-GUID subscription id is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            AzureSettings(
                subscription_id="not-a-guid",
                resource_group_name="rg-shop",
                location="westeurope",
            )

        assert "AZURE_SUBSCRIPTION_ID" in str(exc_info.value)

    def test_key_vault_settings_must_be_paired(self) -> None:
        """Test that the vault URL requires the vault resource id."""
        with pytest.raises(ConfigurationError) as exc_info:
            AzureSettings(
                subscription_id=SUBSCRIPTION_ID,
                resource_group_name="rg-shop",
                location="westeurope",
                key_vault_url="https://kv-shop.vault.azure.net",
            )

        assert "KEY_VAULT_RESOURCE_ID" in str(exc_info.value)

    def test_key_vault_url_must_be_https(self) -> None:
        """Test that a plain http vault URL is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            AzureSettings(
                subscription_id=SUBSCRIPTION_ID,
                resource_group_name="rg-shop",
                location="westeurope",
                key_vault_url="http://kv-shop.vault.azure.net",
                key_vault_resource_id="/subscriptions/x/vaults/kv-shop",
            )

        assert "https://" in str(exc_info.value)

    def test_from_env(self) -> None:
        """Test loading from environment variables."""
        env = {
            "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
            "RESOURCE_GROUP_NAME": "rg-shop",
            "AZURE_LOCATION": "westeurope",
            "AZURE_CLIENT_ID": "11111111-2222-3333-4444-555555555555",
            "AZURE_CALL_TIMEOUT": "30",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = AzureSettings.from_env()

        assert settings.client_id == "11111111-2222-3333-4444-555555555555"
        assert settings.call_timeout_seconds == 30
        assert settings.key_vault_url == ""

    def test_from_env_missing_values(self) -> None:
        """Test that every missing required variable is named."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                AzureSettings.from_env()

        message = str(exc_info.value)
        assert "AZURE_SUBSCRIPTION_ID" in message
        assert "RESOURCE_GROUP_NAME" in message
        assert "AZURE_LOCATION" in message
