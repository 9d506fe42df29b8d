from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from watchlist.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(filename: str) -> str:
    """Return a persisted secret from SHARED_FS_ROOT, generating it on first use.

    Tokens and signed cookies must stay valid across restarts, so a generated
    secret is written once (atomically, mode 0600) and re-read afterwards.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/watchlist"))
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
            if persisted and len(persisted) >= 32:
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
    return generated


class Settings(BaseModel):
    """Typed runtime settings; the only source of behavioral switches."""

    database_url: str = env_field(
        "postgresql://localhost:5432/watchlist", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/watchlist", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests and use the synchronous Redis client.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("watchlist", "JWT_ISSUER")
    jwt_audience: str = env_field("watchlist-clients", "JWT_AUDIENCE")
    token_ttl_days: int = env_field(7, "TOKEN_TTL_DAYS", ge=1)

    session_secret: str = env_field(None, "SESSION_SECRET", validate_default=True)
    session_ttl_minutes: int = env_field(7 * 24 * 60, "SESSION_TTL_MINUTES", ge=1)
    session_freshness_seconds: int = env_field(
        300,
        "SESSION_FRESHNESS_SECONDS",
        description="A session checked longer ago than this is reported as needing a re-check.",
    )
    session_load_retries: int = env_field(2, "SESSION_LOAD_RETRIES", ge=0, le=2)
    session_retry_backoff_ms: int = env_field(50, "SESSION_RETRY_BACKOFF_MS", ge=0)
    session_cookie_name: str = env_field("watchlist_sid", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(5, "REGISTER_RATE_LIMIT_PER_MINUTE")
    recovery_rate_limit_per_minute: int = env_field(
        5,
        "RECOVERY_RATE_LIMIT_PER_MINUTE",
        description="Maximum recovered resolutions per session per minute.",
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    tmdb_api_key: str | None = env_field(None, "TMDB_API_KEY")
    tmdb_base_url: str = env_field("https://api.themoviedb.org/3", "TMDB_BASE_URL")
    tmdb_timeout_seconds: float = env_field(10.0, "TMDB_TIMEOUT_SECONDS")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".jwt_secret")

    @field_validator("session_secret", mode="before")
    @classmethod
    def _ensure_session_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(".session_secret")


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
