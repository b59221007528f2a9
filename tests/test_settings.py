from unittest.mock import patch

import pytest

from guildpass.config.settings import AuthMode, Settings, get_settings


def test_default_settings():
    """Test default settings values."""
    settings = Settings()

    assert settings.app_name == "GuildPass"
    assert settings.version == "1.0.0"
    assert settings.environment == "development"
    assert settings.auth_mode == AuthMode.NONE
    assert settings.job_max_attempts == 8
    assert settings.job_backoff_base_ms == 5000
    assert settings.job_backoff_cap_ms == 900_000
    assert settings.job_lease_ttl_s == 0
    assert settings.enable_sweeper is False


def test_production_validation_blocks_none_auth():
    """Test that production environment blocks AUTH_MODE=none."""
    with pytest.raises(ValueError, match="AUTH_MODE=none is not allowed in production"):
        Settings(
            environment="production",
            auth_mode=AuthMode.NONE,
            worker_api_token="w",
        )


def test_production_validation_blocks_dev_auth():
    """Test that production environment blocks AUTH_MODE=dev."""
    with pytest.raises(ValueError, match="AUTH_MODE=dev is not allowed in production"):
        Settings(
            environment="production",
            auth_mode=AuthMode.DEV,
            worker_api_token="w",
        )


def test_production_requires_worker_token():
    with pytest.raises(ValueError, match="WORKER_API_TOKEN must be set"):
        Settings(environment="production", auth_mode=AuthMode.TOKEN)


def test_production_allows_token_auth():
    settings = Settings(
        environment="production",
        auth_mode=AuthMode.TOKEN,
        operator_token="op",
        worker_api_token="w",
    )
    assert settings.auth_mode == AuthMode.TOKEN


def test_snapshot_thresholds_must_be_ordered():
    with pytest.raises(ValueError, match="SEAT_SNAPSHOT_FRESH_MS"):
        Settings(seat_snapshot_fresh_ms=400_000, seat_snapshot_stale_ms=300_000)


def test_settings_dependency_injection():
    """Test the get_settings dependency function."""
    settings = get_settings()
    assert isinstance(settings, Settings)
    assert settings.app_name == "GuildPass"


@patch.dict(
    "os.environ",
    {"JOB_MAX_ATTEMPTS": "3", "JOB_LEASE_TTL_S": "120", "AUTH_MODE": "dev"},
)
def test_env_var_loading():
    """Test that environment variables are loaded correctly."""
    settings = Settings()
    assert settings.job_max_attempts == 3
    assert settings.job_lease_ttl_s == 120
    assert settings.auth_mode == AuthMode.DEV
