import json
from unittest.mock import MagicMock

import pytest
from redis import Redis

from quotaguard.core.config.settings import Settings
from quotaguard.core.exceptions import PolicyConfigurationError
from quotaguard.domain.rate_limiting.value_objects import FallbackMode
from quotaguard.infrastructure.dependency_injection.rate_limiting import build_admission_controller
from quotaguard.infrastructure.redis import create_redis_client
from quotaguard.infrastructure.repositories.redis_counter_store import RedisCounterStore


@pytest.fixture
def settings(monkeypatch):
    for name in ("REDIS_URL", "REDIS_HOST", "RATE_LIMIT_POLICY_FILE"):
        monkeypatch.delenv(name, raising=False)
    return Settings(
        _env_file=None,
        RATE_LIMIT_KEY_PREFIX="svc:",
        RATE_LIMIT_CAS_ATTEMPTS=5,
        RATE_LIMIT_BREAKER_FAILURE_THRESHOLD=4,
        RATE_LIMIT_DEFAULT_FALLBACK="fail_open",
    )


def test_wires_components_from_settings(settings, policy_set):
    redis_client = MagicMock()

    container = build_admission_controller(settings, policy_set=policy_set, redis_client=redis_client)
    controller = container.controller

    assert isinstance(controller.store, RedisCounterStore)
    assert controller.store.max_attempts == 5
    assert controller.breaker.failure_threshold == 4
    assert controller.key_prefix == "svc:"
    assert controller.policy_service.policy_set is policy_set


def test_caller_owned_client_is_not_closed(settings, policy_set):
    redis_client = MagicMock()

    with build_admission_controller(settings, policy_set=policy_set, redis_client=redis_client):
        pass

    redis_client.close.assert_not_called()


def test_owned_pool_is_closed(settings, policy_set, monkeypatch):
    redis_client = MagicMock()
    monkeypatch.setattr(
        "quotaguard.infrastructure.dependency_injection.rate_limiting.create_redis_client",
        lambda _settings: redis_client,
    )

    container = build_admission_controller(settings, policy_set=policy_set)
    container.close()
    container.close()

    redis_client.close.assert_called_once()


def test_policies_loaded_from_file_use_default_fallback(settings, tmp_path):
    path = tmp_path / "policies.json"
    path.write_text(
        json.dumps(
            {"default_policy": "free", "policies": {"free": {"limit": 10, "window_seconds": 60}}}
        ),
        encoding="utf-8",
    )
    settings.RATE_LIMIT_POLICY_FILE = str(path)

    container = build_admission_controller(settings, redis_client=MagicMock())

    policy = container.controller.policy_service.resolve("anyone")
    assert policy.fallback_mode is FallbackMode.FAIL_OPEN


def test_missing_policy_source(settings):
    with pytest.raises(PolicyConfigurationError):
        build_admission_controller(settings, redis_client=MagicMock())


def test_create_redis_client_uses_pool_settings(settings):
    client = create_redis_client(settings)
    try:
        assert isinstance(client, Redis)
        pool = client.connection_pool
        assert pool.max_connections == settings.REDIS_MAX_CONNECTIONS
        assert pool.connection_kwargs["socket_timeout"] == settings.REDIS_SOCKET_TIMEOUT
        assert pool.connection_kwargs["host"] == "localhost"
    finally:
        client.close()
