import pytest
from pydantic import ValidationError

from quotaguard.core.config.rate_limiting import RateLimitSettings
from quotaguard.core.config.redis import RedisSettings
from quotaguard.core.config.settings import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("REDIS_URL", "REDIS_HOST", "REDIS_PORT", "REDIS_DB", "REDIS_PASSWORD", "REDIS_SSL"):
        monkeypatch.delenv(name, raising=False)


def test_redis_url_is_assembled_from_parts():
    settings = RedisSettings(_env_file=None, REDIS_HOST="cache", REDIS_PORT=6380, REDIS_DB=2)

    assert settings.REDIS_URL == "redis://cache:6380/2"


def test_redis_url_with_password_and_ssl():
    settings = RedisSettings(_env_file=None, REDIS_PASSWORD="s3cret", REDIS_SSL=True)

    assert settings.REDIS_URL == "rediss://:s3cret@localhost:6379/0"


def test_explicit_redis_url_wins(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://elsewhere:7000/1")

    settings = RedisSettings(_env_file=None, REDIS_HOST="ignored")

    assert settings.REDIS_URL == "redis://elsewhere:7000/1"


def test_rate_limit_defaults():
    settings = RateLimitSettings(_env_file=None)

    assert settings.RATE_LIMIT_KEY_PREFIX == "quotaguard:"
    assert settings.RATE_LIMIT_DEFAULT_FALLBACK == "fail_closed"
    assert settings.RATE_LIMIT_CAS_ATTEMPTS == 3
    assert settings.RATE_LIMIT_POLICY_CACHE_TTL == 5.0


def test_rate_limit_settings_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_DEFAULT_FALLBACK", "local")
    monkeypatch.setenv("RATE_LIMIT_BREAKER_FAILURE_THRESHOLD", "7")

    settings = Settings(_env_file=None)

    assert settings.RATE_LIMIT_DEFAULT_FALLBACK == "local"
    assert settings.RATE_LIMIT_BREAKER_FAILURE_THRESHOLD == 7


def test_invalid_fallback_is_rejected():
    with pytest.raises(ValidationError):
        RateLimitSettings(_env_file=None, RATE_LIMIT_DEFAULT_FALLBACK="sometimes")
