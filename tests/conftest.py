"""Shared fixtures for the quotaguard test suite."""

import pytest

from quotaguard.core.circuit_breaker import CircuitBreaker
from quotaguard.domain.rate_limiting.entities import PolicySet, RateLimitPolicy
from quotaguard.domain.rate_limiting.fallback import FallbackHandler
from quotaguard.domain.rate_limiting.services import AdmissionController, RateLimitPolicyService
from quotaguard.domain.rate_limiting.value_objects import FallbackMode, RateLimitAlgorithm
from quotaguard.infrastructure.repositories.memory_counter_store import InMemoryCounterStore


class FakeClock:
    """Deterministic time source; advance it explicitly."""

    def __init__(self, start: float = 1_000_020.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, value: float) -> None:
        self.now = value


@pytest.fixture
def clock():
    # Aligned to a 60s boundary so window arithmetic is easy to follow.
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def policy_set():
    return PolicySet(
        policies={
            "free": RateLimitPolicy(
                name="free",
                algorithm=RateLimitAlgorithm.FIXED_WINDOW,
                limit=5,
                window_seconds=60,
            ),
            "burst": RateLimitPolicy(
                name="burst",
                algorithm=RateLimitAlgorithm.TOKEN_BUCKET,
                limit=10,
                refill_rate_per_second=1,
                fallback_mode=FallbackMode.LOCAL,
            ),
            "open": RateLimitPolicy(
                name="open",
                algorithm=RateLimitAlgorithm.FIXED_WINDOW,
                limit=5,
                window_seconds=60,
                fallback_mode=FallbackMode.FAIL_OPEN,
            ),
        },
        default_policy="free",
        overrides={"acct-42": "burst"},
        tiers={"public:": "open"},
    )


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, reset_timeout=30.0, failure_window=10.0, name="test", clock=clock)


@pytest.fixture
def controller(policy_set, memory_store, breaker, clock):
    return AdmissionController(
        policy_service=RateLimitPolicyService(policy_set, clock=clock),
        store=memory_store,
        breaker=breaker,
        fallback=FallbackHandler(InMemoryCounterStore(clock=clock), clock=clock),
        key_prefix="test:",
        clock=clock,
    )
