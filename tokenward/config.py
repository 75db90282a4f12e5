from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenward.logging import get_logger

logger = get_logger(__name__)


class StoreBackend(str, Enum):
    """Token store implementations the runtime can build."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, rotation and cleanup."""

    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tokenward", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenward-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    remember_me_refresh_ttl_days: int = env_field(
        30,
        "REMEMBER_ME_REFRESH_TTL_DAYS",
        description="Refresh token TTL used when the client asks to be remembered",
    )
    max_sessions_per_user: int = env_field(
        10,
        "MAX_SESSIONS_PER_USER",
        description="Active refresh lineages per user before the oldest are evicted",
    )
    clock_skew_leeway_seconds: int = env_field(30, "CLOCK_SKEW_LEEWAY_SECONDS")
    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "TOKEN_STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    store_shard_count: int = env_field(16, "TOKEN_STORE_SHARDS")
    store_timeout_ms: int = env_field(
        50,
        "TOKEN_STORE_TIMEOUT_MS",
        description="Upper bound on waiting for the token store before failing with unavailable",
    )
    identity_timeout_ms: int = env_field(50, "IDENTITY_TIMEOUT_MS")
    reaper_enabled: bool = env_field(True, "REAPER_ENABLED")
    reaper_interval_seconds: int = env_field(3600, "REAPER_INTERVAL_SECONDS")
    reaper_grace_seconds: int = env_field(
        300,
        "REAPER_GRACE_SECONDS",
        description="How long expired records are retained before the reaper deletes them",
    )
    shared_fs_root: str = env_field("/srv/tokenward", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallback when Redis is unreachable",
    )

    model_config = ConfigDict(extra="ignore", validate_default=True)

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

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "remember_me_refresh_ttl_days",
        "max_sessions_per_user",
        "store_shard_count",
        "store_timeout_ms",
        "identity_timeout_ms",
        "reaper_interval_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("clock_skew_leeway_seconds", "reaper_grace_seconds")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return load_or_create_secret(Path(os.getenv("SHARED_FS_ROOT", "/srv/tokenward")))


MIN_SECRET_LENGTH = 32


def load_or_create_secret(fs_root: Path) -> str:
    """Return the signing secret stored under ``fs_root``, creating it if needed.

    Every process sharing ``fs_root`` signs with the same key, so tokens stay
    valid across restarts. The file is written to a temp name and renamed into
    place so a concurrent reader never sees a partial secret.
    """
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup_failed", path=str(fs_root), error=str(exc))

    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            stored = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(secret_path), error=str(exc))
        else:
            if len(stored) >= MIN_SECRET_LENGTH:
                return stored
            logger.warning("jwt_secret_too_short", path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", dir=fs_root, prefix=".jwt_secret_", suffix=".tmp", delete=False
        ) as handle:
            tmp_name = handle.name
            os.chmod(tmp_name, 0o600)
            handle.write(generated)
        os.replace(tmp_name, secret_path)
    except OSError as exc:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error("jwt_secret_persist_failed", path=str(secret_path), error=str(exc))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


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
