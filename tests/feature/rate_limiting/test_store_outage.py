"""Feature: the shared store goes down and comes back.

Walks one controller, backed by an in-process Redis, through an outage:
transport errors trip the breaker, checks short-circuit to the fallback
without touching Redis, and a successful trial call after the cooldown restores
normal operation.
"""

import json
from unittest.mock import patch

import pytest

from quotaguard.core.circuit_breaker import CircuitBreaker
from quotaguard.domain.rate_limiting.entities import PolicySet, RateLimitPolicy
from quotaguard.domain.rate_limiting.fallback import FallbackHandler
from quotaguard.domain.rate_limiting.services import AdmissionController, RateLimitPolicyService
from quotaguard.domain.rate_limiting.value_objects import Decision, FallbackMode, RateLimitAlgorithm, RateLimitKey
from quotaguard.infrastructure.repositories.memory_counter_store import InMemoryCounterStore
from quotaguard.infrastructure.repositories.redis_counter_store import RedisCounterStore


@pytest.fixture
def outage_controller(network_redis, clock):
    policies = PolicySet(
        policies={
            "strict": RateLimitPolicy(
                name="strict", algorithm=RateLimitAlgorithm.FIXED_WINDOW, limit=3, window_seconds=60
            ),
            "lenient": RateLimitPolicy(
                name="lenient",
                algorithm=RateLimitAlgorithm.FIXED_WINDOW,
                limit=3,
                window_seconds=60,
                fallback_mode=FallbackMode.LOCAL,
            ),
        },
        default_policy="strict",
        tiers={"partner:": "lenient"},
    )
    return AdmissionController(
        policy_service=RateLimitPolicyService(policies, clock=clock),
        store=RedisCounterStore(network_redis),
        breaker=CircuitBreaker(failure_threshold=2, reset_timeout=30, failure_window=10, clock=clock),
        fallback=FallbackHandler(InMemoryCounterStore(clock=clock), clock=clock),
        key_prefix="test:",
        clock=clock,
    )


@pytest.mark.feature
def test_outage_and_recovery(outage_controller, network_redis, clock):
    # Normal operation writes JSON state to Redis.
    assert outage_controller.try_acquire("user:1").decision is Decision.ALLOWED
    stored = network_redis.get(RateLimitKey("user:1", "strict").store_key("test:"))
    assert json.loads(stored)["count"] == 1

    # Redis goes away: two failures trip the breaker.
    network_redis.reachable = False
    for _ in range(2):
        assert outage_controller.try_acquire("user:1").decision is Decision.DEGRADED_DENIED
    assert outage_controller.breaker.is_open

    with patch.object(network_redis, "execute_command", wraps=network_redis.execute_command) as calls:
        partner = [outage_controller.try_acquire("partner:9") for _ in range(4)]
    assert [r.decision for r in partner] == [Decision.DEGRADED_ALLOWED] * 3 + [Decision.DEGRADED_DENIED]
    calls.assert_not_called()

    # Redis is back; the first check after the cooldown is the trial call.
    network_redis.reachable = True
    clock.advance(30)
    result = outage_controller.try_acquire("user:1")

    assert result.decision is Decision.ALLOWED
    assert result.remaining == 1
    assert outage_controller.breaker.is_closed
