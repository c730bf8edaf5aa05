from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from gatehouse.logging import get_logger

logger = get_logger(__name__)

# Minimum length accepted for a persisted or configured signing secret
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a signing secret persisted under ``SHARED_FS_ROOT``.

    The secret is generated on first use and written atomically with 0600
    permissions so tokens stay valid across restarts of a single node.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/gatehouse"))
    secret_path = fs_root / filename

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(fs_root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f"{filename}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {filename}; set the secret explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the access-control plane."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/gatehouse", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (sync Redis client, in-memory fallbacks)",
    )

    # Credential lifecycle
    access_token_secret: str | None = env_field(
        None, "ACCESS_TOKEN_SECRET", validate_default=True
    )
    refresh_token_secret: str | None = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("gatehouse", "JWT_ISSUER")
    jwt_audience: str = env_field("gatehouse-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    token_leeway_seconds: int = env_field(
        0,
        "TOKEN_LEEWAY_SECONDS",
        description="Allowance for clock skew across nodes when checking expiry",
    )

    cookie_secure: bool = env_field(
        True, "COOKIE_SECURE", description="Mark credential cookies Secure (HTTPS only)"
    )

    # I/O bounds; exceeding either denies the request
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    cache_timeout_seconds: float = env_field(2.0, "CACHE_TIMEOUT_SECONDS")

    # Identity read-through cache
    identity_cache_ttl_seconds: int = env_field(300, "IDENTITY_CACHE_TTL_SECONDS")
    cache_key_prefix: str = env_field("app:", "CACHE_KEY_PREFIX")
    memory_cache_max_entries: int = env_field(10000, "MEMORY_CACHE_MAX_ENTRIES")

    # Rate limits (requests per window); one policy per operation class
    rate_limit_global_max: int = env_field(100, "RATE_LIMIT_GLOBAL_MAX")
    rate_limit_global_window_seconds: int = env_field(
        15 * 60, "RATE_LIMIT_GLOBAL_WINDOW_SECONDS"
    )
    rate_limit_auth_max: int = env_field(5, "RATE_LIMIT_AUTH_MAX")
    rate_limit_auth_window_seconds: int = env_field(
        15 * 60, "RATE_LIMIT_AUTH_WINDOW_SECONDS"
    )
    rate_limit_password_reset_max: int = env_field(3, "RATE_LIMIT_PASSWORD_RESET_MAX")
    rate_limit_password_reset_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS"
    )
    rate_limit_heavy_max: int = env_field(10, "RATE_LIMIT_HEAVY_MAX")
    rate_limit_heavy_window_seconds: int = env_field(
        60 * 60, "RATE_LIMIT_HEAVY_WINDOW_SECONDS"
    )
    rate_limit_search_max: int = env_field(30, "RATE_LIMIT_SEARCH_MAX")
    rate_limit_search_window_seconds: int = env_field(
        60, "RATE_LIMIT_SEARCH_WINDOW_SECONDS"
    )
    rate_limit_purge_threshold: int = env_field(
        10000,
        "RATE_LIMIT_PURGE_THRESHOLD",
        description="Tracked keys above which aged-out keys are purged",
    )

    # Mutation event fan-out
    event_queue_size: int = env_field(1000, "EVENT_QUEUE_SIZE")
    event_history_size: int = env_field(1000, "EVENT_HISTORY_SIZE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("access_token_secret", "refresh_token_secret")
    @classmethod
    def _ensure_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        return _load_or_create_secret(f".{info.field_name}")

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "identity_cache_ttl_seconds",
        "event_queue_size",
    )
    @classmethod
    def _positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        if self.refresh_token_ttl_minutes <= self.access_token_ttl_minutes:
            raise ValueError("refresh tokens must outlive access tokens")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
