"""Unit tests for core/config.py -- Settings validation."""

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_production_requires_secret_key():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="")


def test_debug_generates_secret_key():
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_short_secret_key_rejected():
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(debug=True, secret_key="short")


@pytest.mark.parametrize(
    "field",
    ["access_token_ttl_seconds", "refresh_token_ttl_seconds", "session_inactivity_timeout_seconds"],
)
def test_non_positive_lifetimes_rejected(field):
    with pytest.raises(ValidationError, match="must be positive"):
        Settings(debug=True, **{field: 0})


def test_hierarchy_depth_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(debug=True, hierarchy_max_depth=0)


def test_defaults():
    settings = Settings(debug=True, secret_key="s" * 40)
    assert settings.access_token_ttl_seconds == 900
    assert settings.session_inactivity_timeout_seconds == 1800
    assert settings.permission_cache_ttl_seconds == 900
    assert settings.rotate_refresh_secrets is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("MAX_SESSIONS_PER_USER", "3")
    monkeypatch.setenv("ROTATE_REFRESH_SECRETS", "false")
    settings = Settings(debug=True, secret_key="s" * 40)
    assert settings.max_sessions_per_user == 3
    assert settings.rotate_refresh_secrets is False
