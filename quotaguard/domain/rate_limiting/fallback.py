"""
Degraded-mode decisions.

When the shared store is unavailable (circuit open, transport failure, or
exhausted compare-and-swap retries) the admission controller still owes every
caller a well-formed decision. The behaviour is chosen per policy:

- FAIL_OPEN: admit, reported as DEGRADED_ALLOWED
- FAIL_CLOSED: deny, reported as DEGRADED_DENIED
- LOCAL: run the policy's own algorithm against instance-local memory. Each
  instance then enforces the limit on its own, so the cluster-wide allowance
  is approximate (up to one limit per instance) until the store recovers.
"""

import time
from typing import Callable

from quotaguard.core.logging import logger

from .algorithms import AlgorithmDecision, LimitingAlgorithm
from .entities import ConsumptionResult, RateLimitPolicy
from .repositories import CounterStore
from .value_objects import Decision, FallbackMode


class FallbackHandler:
    """Produces degraded decisions according to each policy's fallback mode."""

    def __init__(
        self,
        local_store: CounterStore,
        clock: Callable[[], float] = time.time,
        retry_after_seconds: float = 1.0,
    ):
        """
        Args:
            local_store: Instance-local store used by the LOCAL mode.
            clock: Wall-clock time source.
            retry_after_seconds: Backoff advertised on FAIL_CLOSED denials.
        """
        self.local_store = local_store
        self._clock = clock
        self.retry_after_seconds = retry_after_seconds

    def decide(
        self,
        policy: RateLimitPolicy,
        algorithm: LimitingAlgorithm,
        store_key: str,
        cost: int,
        reason: str,
    ) -> ConsumptionResult:
        """Answer an admission check without the shared store."""
        now = self._clock()
        mode = policy.fallback_mode

        if mode is FallbackMode.LOCAL:
            decision: AlgorithmDecision = self.local_store.atomic_apply(
                store_key, algorithm.bind(now, cost), algorithm.ttl_seconds
            )
        elif mode is FallbackMode.FAIL_OPEN:
            decision = AlgorithmDecision(True, policy.capacity, policy.capacity, now)
        else:
            # A peek never consumes anything, so it is not refused.
            if cost == 0:
                decision = AlgorithmDecision(True, 0, policy.capacity, now + self.retry_after_seconds)
            else:
                decision = AlgorithmDecision(
                    False,
                    0,
                    policy.capacity,
                    now + self.retry_after_seconds,
                    retry_after=self.retry_after_seconds,
                )

        result = ConsumptionResult(
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=decision.limit,
            reset_at=decision.reset_at,
            decision=Decision.of(decision.allowed, degraded=True),
            policy_name=policy.name,
            retry_after=decision.retry_after,
        )
        logger.info(
            "fallback_decision",
            policy=policy.name,
            mode=mode.value,
            reason=reason,
            decision=result.decision.value,
        )
        return result
