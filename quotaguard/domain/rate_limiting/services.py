"""
Rate Limiting Domain Services

Domain services that orchestrate admission decisions. They coordinate the
policy set, the algorithm engine, the counter store and the circuit breaker.

Services:
- RateLimitPolicyService: Policy resolution with a short per-identity cache
- AdmissionController: Main entry point answering "may this caller proceed?"

Design Principles:
- The controller holds no cross-call lock; per-key coordination lives in the
  store's `atomic_apply`
- Store failures never reach callers; they become degraded decisions
- Caller and configuration errors fail fast
"""

from __future__ import annotations

import threading
import time
from functools import wraps
from typing import Any, Callable, Dict, Tuple, TypeVar

from quotaguard.core.circuit_breaker import CircuitBreaker
from quotaguard.core.exceptions import InvalidCostError, RateLimitExceededError, StoreError
from quotaguard.core.logging import logger

from .algorithms import AlgorithmDecision, build_algorithm
from .entities import ConsumptionResult, PolicySet, RateLimitPolicy
from .fallback import FallbackHandler
from .repositories import CounterStore
from .value_objects import Decision, RateLimitKey

T = TypeVar("T")


class RateLimitPolicyService:
    """
    Domain service for policy resolution.

    Resolution order: exact override, then the longest matching tier prefix,
    then the default policy; the chosen policy's own tier rules are applied
    last. Results are cached per identity for `cache_ttl_seconds`. The cache
    is advisory: `reload` swaps the whole policy set and empties it.
    """

    def __init__(
        self,
        policy_set: PolicySet,
        cache_ttl_seconds: float = 5.0,
        cache_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._policy_set = policy_set
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cache_size = cache_size
        self._clock = clock
        self._lock = threading.Lock()
        # identity -> (policy, cached_at)
        self._policy_cache: Dict[str, Tuple[RateLimitPolicy, float]] = {}

    @property
    def policy_set(self) -> PolicySet:
        return self._policy_set

    def resolve(self, identity: str) -> RateLimitPolicy:
        """Return the effective policy of an identity."""
        with self._lock:
            now = self._clock()
            cached = self._policy_cache.get(identity)
            if cached is not None:
                policy, cached_at = cached
                if now - cached_at < self.cache_ttl_seconds:
                    return policy
                del self._policy_cache[identity]

            policy_set = self._policy_set
            policy = policy_set.policies[policy_set.policy_key_for(identity)].for_identity(identity)
            if self.cache_ttl_seconds > 0:
                self._cache_policy(identity, policy, now)
            return policy

    def _cache_policy(self, identity: str, policy: RateLimitPolicy, now: float) -> None:
        self._policy_cache[identity] = (policy, now)
        if len(self._policy_cache) > self.cache_size:
            # Drop the oldest half.
            sorted_items = sorted(self._policy_cache.items(), key=lambda item: item[1][1])
            for key, _ in sorted_items[: self.cache_size // 2]:
                del self._policy_cache[key]

    def reload(self, policy_set: PolicySet) -> None:
        """Atomically replace the policy set and clear the whole cache."""
        with self._lock:
            self._policy_set = policy_set
            self._policy_cache.clear()
        logger.info(
            "policy_config_reloaded",
            policies=sorted(policy_set.policies),
            default_policy=policy_set.default_policy,
        )


class AdmissionController:
    """
    Main domain service answering admission checks.

    For every call: validate the cost, resolve the policy, derive the store
    key, then either run the algorithm atomically in the shared store or, when
    the circuit breaker reports the store unhealthy, hand over to the fallback
    handler without touching the store.
    """

    def __init__(
        self,
        policy_service: RateLimitPolicyService,
        store: CounterStore,
        breaker: CircuitBreaker,
        fallback: FallbackHandler,
        key_prefix: str = "quotaguard:",
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        """
        Args:
            policy_service: Resolves identities to policies.
            store: Shared counter store.
            breaker: Tracks the health of `store`.
            fallback: Produces decisions while the store is unhealthy.
            key_prefix: Namespace prepended to every store key.
            clock: Wall-clock time source passed to the algorithms.
            enabled: When false every check is admitted without touching the store.
        """
        self.policy_service = policy_service
        self.store = store
        self.breaker = breaker
        self.fallback = fallback
        self.key_prefix = key_prefix
        self._clock = clock
        self.enabled = enabled

    @staticmethod
    def _validate_cost(cost: Any) -> int:
        # bool is an int subclass but never a meaningful cost.
        if isinstance(cost, bool) or not isinstance(cost, int) or cost < 0:
            raise InvalidCostError(cost)
        return cost

    def try_acquire(self, identity: str, cost: int = 1) -> ConsumptionResult:
        """
        Consume `cost` units of the identity's quota if available.

        Args:
            identity: Caller identity (user id, API key, client address...).
            cost: Units to consume. 0 reports the quota without consuming.

        Returns:
            ConsumptionResult: The decision. Never raises for store failures.

        Raises:
            InvalidCostError: If `cost` is negative or not an integer.
        """
        cost = self._validate_cost(cost)
        policy = self.policy_service.resolve(identity)
        charged = cost * policy.cost_multiplier

        if not self.enabled:
            return ConsumptionResult(
                allowed=True,
                remaining=policy.capacity,
                limit=policy.capacity,
                reset_at=self._clock(),
                decision=Decision.ALLOWED,
                policy_name=policy.name,
            )

        algorithm = build_algorithm(policy)
        store_key = RateLimitKey(identity, policy.name).store_key(self.key_prefix)

        if not self.breaker.allow_request():
            return self.fallback.decide(policy, algorithm, store_key, charged, reason="circuit_open")

        now = self._clock()
        try:
            decision: AlgorithmDecision = self.store.atomic_apply(
                store_key, algorithm.bind(now, charged), algorithm.ttl_seconds
            )
        except StoreError as e:
            self.breaker.record_failure()
            logger.warning("store_call_failed", key=store_key, policy=policy.name, error_code=e.code)
            return self.fallback.decide(policy, algorithm, store_key, charged, reason=e.code)
        except Exception:
            self.breaker.record_failure()
            raise
        self.breaker.record_success()

        result = ConsumptionResult(
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=decision.limit,
            reset_at=decision.reset_at,
            decision=Decision.of(decision.allowed),
            policy_name=policy.name,
            retry_after=decision.retry_after,
        )
        if not result.allowed:
            logger.debug("admission_denied", key=store_key, policy=policy.name, retry_after=result.retry_after)
        return result

    def peek(self, identity: str) -> ConsumptionResult:
        """Report the identity's remaining quota without consuming any."""
        return self.try_acquire(identity, 0)

    def acquire(self, identity: str, cost: int = 1) -> ConsumptionResult:
        """
        Like `try_acquire`, but a denial raises.

        Raises:
            RateLimitExceededError: Carrying the denying result.
        """
        result = self.try_acquire(identity, cost)
        if not result.allowed:
            raise RateLimitExceededError(result)
        return result

    def reset(self, identity: str) -> bool:
        """Operator action: forget the identity's counter in the shared store."""
        policy = self.policy_service.resolve(identity)
        store_key = RateLimitKey(identity, policy.name).store_key(self.key_prefix)
        removed = self.store.reset(store_key)
        logger.info("counter_reset", key=store_key, policy=policy.name, removed=removed)
        return removed

    def health_check(self) -> Dict[str, Any]:
        return {
            "store": self.store.health_check(),
            "circuit_breaker": self.breaker.state.value,
        }


def rate_limited(
    controller: AdmissionController,
    identity_func: Callable[..., str],
    cost: int = 1,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator guarding a plain callable with an admission check.

    `identity_func` receives the same arguments as the wrapped function and
    returns the identity to charge. A denial raises `RateLimitExceededError`
    before the wrapped function runs.

    Example:
        @rate_limited(controller, lambda user_id, **_: f"user:{user_id}")
        def export_report(user_id, fmt="csv"):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            controller.acquire(identity_func(*args, **kwargs), cost)
            return func(*args, **kwargs)

        return wrapper

    return decorator
