"""Unit tests for the policy service and the admission controller."""

from unittest.mock import MagicMock

import pytest

from quotaguard.core.circuit_breaker import CircuitState
from quotaguard.core.exceptions import (
    InvalidCostError,
    RateLimitExceededError,
    StoreContentionError,
    StoreUnavailableError,
)
from quotaguard.domain.rate_limiting.entities import PolicySet, RateLimitPolicy, TierRule
from quotaguard.domain.rate_limiting.repositories import CounterStore
from quotaguard.domain.rate_limiting.services import RateLimitPolicyService, rate_limited
from quotaguard.domain.rate_limiting.value_objects import Decision, RateLimitAlgorithm, RateLimitKey


class TestRateLimitPolicyService:
    def test_resolves_override_tier_and_default(self, policy_set, clock):
        service = RateLimitPolicyService(policy_set, clock=clock)

        assert service.resolve("acct-42").name == "burst"
        assert service.resolve("public:1.2.3.4").name == "open"
        assert service.resolve("user:7").name == "free"

    def test_applies_policy_tier_rules(self, clock):
        policy = RateLimitPolicy(
            name="free",
            algorithm=RateLimitAlgorithm.FIXED_WINDOW,
            limit=100,
            window_seconds=60,
            tier_rules=(TierRule(prefix="trial-", limit=20),),
        )
        service = RateLimitPolicyService(PolicySet(policies={"free": policy}, default_policy="free"), clock=clock)

        assert service.resolve("trial-1").limit == 20
        assert service.resolve("paid-1").limit == 100

    def test_cache_expires_after_ttl(self, policy_set, clock):
        service = RateLimitPolicyService(policy_set, cache_ttl_seconds=5, clock=clock)
        assert service.resolve("user:7").name == "free"

        # Swap the set without clearing the cache to observe the cached entry.
        service._policy_set = PolicySet(policies=dict(policy_set.policies), default_policy="open")
        clock.advance(4)
        assert service.resolve("user:7").name == "free"
        clock.advance(1)
        assert service.resolve("user:7").name == "open"

    def test_reload_swaps_set_and_clears_cache(self, policy_set, clock):
        service = RateLimitPolicyService(policy_set, cache_ttl_seconds=60, clock=clock)
        assert service.resolve("user:7").limit == 5

        stricter = PolicySet(
            policies={
                "free": RateLimitPolicy(
                    name="free", algorithm=RateLimitAlgorithm.FIXED_WINDOW, limit=1, window_seconds=60
                )
            },
            default_policy="free",
        )
        service.reload(stricter)

        assert service.policy_set is stricter
        assert service.resolve("user:7").limit == 1
        assert service.resolve("acct-42").name == "free"

    def test_cache_size_is_bounded(self, policy_set, clock):
        service = RateLimitPolicyService(policy_set, cache_size=10, clock=clock)
        for i in range(25):
            clock.advance(0.01)
            service.resolve(f"user:{i}")

        assert len(service._policy_cache) <= 10


class TestAdmissionController:
    def test_admits_until_limit(self, controller):
        results = [controller.try_acquire("user:1") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0, 0]
        assert results[-1].decision is Decision.DENIED
        assert results[-1].retry_after is not None
        assert all(r.policy_name == "free" for r in results)

    def test_identities_are_counted_separately(self, controller):
        for _ in range(5):
            controller.try_acquire("user:1")

        assert controller.try_acquire("user:2").allowed

    def test_empty_identity_is_an_ordinary_caller(self, controller, memory_store):
        results = [controller.try_acquire("") for _ in range(6)]

        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[-1].decision is Decision.DENIED
        assert memory_store.get(RateLimitKey("", "free").store_key("test:"))["count"] == 5
        assert controller.try_acquire("user:1").allowed

    def test_state_is_stored_under_hashed_key(self, controller, memory_store, clock):
        controller.try_acquire("user:1", 2)

        key = RateLimitKey("user:1", "free").store_key("test:")
        assert memory_store.get(key) == {"window_start": clock.now, "count": 2}

    def test_peek_does_not_consume(self, controller):
        controller.try_acquire("user:1", 2)

        first = controller.peek("user:1")
        second = controller.peek("user:1")

        assert first.allowed
        assert first.remaining == second.remaining == 3

    @pytest.mark.parametrize("cost", [-1, 1.5, "1", True, None])
    def test_invalid_cost_fails_fast(self, controller, memory_store, cost):
        with pytest.raises(InvalidCostError):
            controller.try_acquire("user:1", cost)
        assert len(memory_store) == 0

    def test_cost_above_capacity_is_denied(self, controller):
        result = controller.try_acquire("user:1", 6)

        assert not result.allowed
        assert result.decision is Decision.DENIED

    def test_cost_multiplier_scales_charge(self, clock, breaker, memory_store):
        from quotaguard.domain.rate_limiting.fallback import FallbackHandler
        from quotaguard.domain.rate_limiting.services import AdmissionController

        policy = RateLimitPolicy(
            name="free",
            algorithm=RateLimitAlgorithm.FIXED_WINDOW,
            limit=10,
            window_seconds=60,
            tier_rules=(TierRule(prefix="batch-", cost_multiplier=5),),
        )
        controller = AdmissionController(
            RateLimitPolicyService(PolicySet(policies={"free": policy}, default_policy="free"), clock=clock),
            memory_store,
            breaker,
            FallbackHandler(MagicMock(spec=CounterStore), clock=clock),
            clock=clock,
        )

        assert controller.try_acquire("batch-1").remaining == 5
        assert controller.try_acquire("batch-1").remaining == 0
        assert not controller.try_acquire("batch-1").allowed

    def test_acquire_raises_on_denial(self, controller):
        for _ in range(5):
            controller.acquire("user:1")

        with pytest.raises(RateLimitExceededError) as exc_info:
            controller.acquire("user:1")

        assert exc_info.value.result.remaining == 0
        assert exc_info.value.code == "rate_limit_exceeded"

    def test_reset_forgets_counter(self, controller):
        for _ in range(5):
            controller.try_acquire("user:1")

        assert controller.reset("user:1") is True
        assert controller.try_acquire("user:1").allowed
        assert controller.reset("user:unknown") is False

    def test_disabled_controller_admits_without_store(self, controller, memory_store):
        controller.enabled = False

        results = [controller.try_acquire("user:1") for _ in range(10)]

        assert all(r.allowed for r in results)
        assert len(memory_store) == 0

    def test_health_check(self, controller):
        health = controller.health_check()

        assert health["store"]["status"] == "healthy"
        assert health["circuit_breaker"] == "closed"


class TestAdmissionControllerDegraded:
    @pytest.fixture
    def failing_store(self):
        store = MagicMock(spec=CounterStore)
        store.atomic_apply.side_effect = StoreUnavailableError()
        return store

    @pytest.fixture
    def degraded_controller(self, controller, failing_store):
        controller.store = failing_store
        return controller

    def test_store_failure_uses_fail_closed_by_default(self, degraded_controller):
        result = degraded_controller.try_acquire("user:1")

        assert not result.allowed
        assert result.decision is Decision.DEGRADED_DENIED
        assert result.degraded
        assert result.retry_after == 1.0

    def test_fail_open_policy_admits(self, degraded_controller):
        result = degraded_controller.try_acquire("public:1.2.3.4")

        assert result.allowed
        assert result.decision is Decision.DEGRADED_ALLOWED

    def test_local_policy_counts_in_memory(self, degraded_controller):
        results = [degraded_controller.try_acquire("acct-42") for _ in range(11)]

        assert [r.allowed for r in results] == [True] * 10 + [False]
        assert all(r.degraded for r in results)

    def test_contention_is_treated_as_unavailable(self, degraded_controller, failing_store):
        failing_store.atomic_apply.side_effect = StoreContentionError("k", 3)

        result = degraded_controller.try_acquire("public:1.2.3.4")

        assert result.decision is Decision.DEGRADED_ALLOWED
        assert degraded_controller.breaker.failures == 1

    def test_open_breaker_skips_store(self, degraded_controller, failing_store, breaker):
        for _ in range(3):
            degraded_controller.try_acquire("user:1")
        assert breaker.state is CircuitState.OPEN
        failing_store.atomic_apply.reset_mock()

        for _ in range(10):
            result = degraded_controller.try_acquire("user:1")
            assert result.decision is Decision.DEGRADED_DENIED

        failing_store.atomic_apply.assert_not_called()

    def test_probe_after_cooldown_closes_breaker(self, degraded_controller, failing_store, memory_store, breaker, clock):
        for _ in range(3):
            degraded_controller.try_acquire("user:1")
        assert breaker.is_open

        clock.advance(30)
        degraded_controller.store = memory_store
        result = degraded_controller.try_acquire("user:1")

        assert result.decision is Decision.ALLOWED
        assert breaker.is_closed

    def test_unexpected_errors_propagate(self, degraded_controller, failing_store, breaker):
        failing_store.atomic_apply.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            degraded_controller.try_acquire("user:1")
        assert breaker.failures == 1


def test_rate_limited_decorator(controller):
    calls = []

    @rate_limited(controller, lambda user_id: f"user:{user_id}", cost=2)
    def export(user_id):
        calls.append(user_id)
        return "ok"

    assert export(1) == "ok"
    assert export(1) == "ok"
    with pytest.raises(RateLimitExceededError):
        export(1)
    assert calls == [1, 1]
    assert export.__name__ == "export"
