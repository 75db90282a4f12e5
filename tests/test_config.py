import pytest
from pydantic import ValidationError

from tokenward.config import (
    Settings,
    StoreBackend,
    get_settings,
    reset_settings_cache,
)


def test_defaults():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_days == 7
    assert settings.remember_me_refresh_ttl_days == 30
    assert settings.max_sessions_per_user == 10
    assert settings.clock_skew_leeway_seconds == 30
    assert settings.store_backend == StoreBackend.MEMORY
    assert settings.store_timeout_ms == 50
    assert settings.identity_timeout_ms == 50
    assert settings.reaper_interval_seconds == 3600
    assert settings.reaper_grace_seconds == 300


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("MAX_SESSIONS_PER_USER", "2")
    monkeypatch.setenv("TOKEN_STORE_BACKEND", "redis")
    monkeypatch.setenv("REAPER_ENABLED", "false")

    settings = Settings.from_env()

    assert settings.access_token_ttl_minutes == 5
    assert settings.max_sessions_per_user == 2
    assert settings.store_backend == StoreBackend.REDIS
    assert settings.reaper_enabled is False


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("JWT_ISSUER", raising=False)
    (tmp_path / ".env").write_text("JWT_ISSUER=issuer-from-dotenv\n")

    settings = Settings.from_env()

    assert settings.jwt_issuer == "issuer-from-dotenv"


@pytest.mark.parametrize(
    "field",
    [
        "access_token_ttl_minutes",
        "refresh_token_ttl_days",
        "max_sessions_per_user",
        "store_shard_count",
        "identity_timeout_ms",
    ],
)
def test_non_positive_values_rejected(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_negative_grace_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, reaper_grace_seconds=-1)


def test_unknown_backend_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, store_backend="memcached")


def test_generated_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings()

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_settings_cache(monkeypatch):
    reset_settings_cache()
    first = get_settings()

    assert get_settings() is first

    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "9")
    reset_settings_cache()

    assert get_settings().access_token_ttl_minutes == 9
