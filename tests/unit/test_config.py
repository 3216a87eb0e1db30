"""Unit tests for app.config module."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError


def test_provisioning_defaults():
    """Test provisioning config defaults."""
    from app.config import Settings

    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.job_retry_budget == 5
    assert settings.failure_retry_ceiling == 3
    assert settings.rollback_settle_timeout_s == 30.0
    assert settings.rate_limit_soft_threshold_pct == 80.0
    assert settings.rate_limit_hard_ceiling_pct == 100.0
    assert settings.queue_max_attempts == 3
    assert settings.queue_backoff_base_s == 900
    assert settings.queue_worker_enabled is True
    assert settings.credential_encryption_key is None


def test_platform_api_url():
    """Versioned API root joins base url and version."""
    from app.config import Settings

    settings = Settings(
        _env_file=None,
        platform_base_url="https://graph.example.com/",
        platform_api_version="v20.0",
    )

    assert settings.platform_api_url == "https://graph.example.com/v20.0"


def test_env_overrides():
    """Environment variables override defaults."""
    from app.config import get_settings

    with patch.dict(
        os.environ,
        {
            "JOB_RETRY_BUDGET": "2",
            "RATE_LIMIT_SOFT_THRESHOLD_PCT": "70",
            "QUEUE_WORKER_ENABLED": "false",
        },
    ):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.job_retry_budget == 2
        assert settings.rate_limit_soft_threshold_pct == 70.0
        assert settings.queue_worker_enabled is False
    get_settings.cache_clear()


def test_retry_budget_must_be_positive():
    """A job needs at least one pass."""
    from app.config import Settings

    with pytest.raises(ValidationError):
        Settings(_env_file=None, job_retry_budget=0)


def test_warning_ratio_bounds():
    from app.config import Settings

    with pytest.raises(ValidationError):
        Settings(_env_file=None, platform_entity_limit_warning_ratio=1.5)


def test_sentry_defaults():
    """Test sentry config defaults."""
    from app.config import Settings

    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.sentry_dsn is None
    assert settings.sentry_environment == "development"
    assert 0.0 <= settings.sentry_traces_sample_rate <= 1.0
