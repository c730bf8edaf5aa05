import os
import stat

import pytest
from pydantic import ValidationError

from gatehouse.config import Settings, get_settings, reset_settings_cache

ACCESS = "a" * 40
REFRESH = "r" * 40


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("RATE_LIMIT_AUTH_MAX", "7")
    settings = Settings.from_env()
    assert settings.access_token_ttl_minutes == 5
    assert settings.rate_limit_auth_max == 7
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60


def test_defaults_follow_policy_table():
    settings = Settings(access_token_secret=ACCESS, refresh_token_secret=REFRESH)
    assert settings.access_token_ttl_minutes == 15
    assert (settings.rate_limit_global_max, settings.rate_limit_global_window_seconds) == (100, 900)
    assert (settings.rate_limit_auth_max, settings.rate_limit_auth_window_seconds) == (5, 900)
    assert settings.rate_limit_password_reset_max == 3
    assert settings.rate_limit_search_window_seconds == 60
    assert settings.identity_cache_ttl_seconds == 300
    assert settings.token_leeway_seconds == 0


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret=ACCESS, refresh_token_secret=ACCESS)


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(access_token_secret="short", refresh_token_secret=REFRESH)


def test_refresh_must_outlive_access():
    with pytest.raises(ValidationError):
        Settings(
            access_token_secret=ACCESS,
            refresh_token_secret=REFRESH,
            access_token_ttl_minutes=60,
            refresh_token_ttl_minutes=30,
        )


def test_non_positive_ttl_rejected():
    with pytest.raises(ValidationError):
        Settings(
            access_token_secret=ACCESS,
            refresh_token_secret=REFRESH,
            identity_cache_ttl_seconds=0,
        )


def test_missing_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(refresh_token_secret=REFRESH)
    secret_path = tmp_path / ".access_token_secret"
    assert secret_path.exists()
    assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600
    assert len(first.access_token_secret) >= 32

    second = Settings(refresh_token_secret=REFRESH)
    assert second.access_token_secret == first.access_token_secret


def test_get_settings_is_cached_until_reset():
    first = get_settings()
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings() is not first
