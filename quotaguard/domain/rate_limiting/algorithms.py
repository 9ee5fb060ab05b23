"""
Rate Limiting Algorithms

Pure, stateless implementations of the supported limiting algorithms. Each
algorithm is a deterministic function

    apply(state, now, cost) -> (new_state, decision)

with no store or clock dependency, so every rule can be unit tested with plain
values. `new_state` is None when nothing must be written (peeks and denials);
the store client then leaves the key untouched.

Shared rules:
- A request that brings usage to exactly the limit is admitted (`<=`).
- Cost 0 is a peek: it reports the current remaining quota and never mutates.
- A cost larger than the capacity is denied, never raised.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, Tuple, Type, TypeVar

from quotaguard.core.logging import logger

from .entities import RateLimitPolicy
from .value_objects import (
    FixedWindowState,
    LeakyBucketState,
    RateLimitAlgorithm,
    SlidingWindowCounterState,
    SlidingWindowLogState,
    TokenBucketState,
)

# Absorbs floating-point drift in refill/leak arithmetic so that a counter
# landing on exactly the cost still admits.
EPSILON = 1e-9

S = TypeVar("S")


@dataclass(frozen=True, slots=True)
class AlgorithmDecision:
    """Outcome of one algorithm step, before it is turned into a result."""
    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: Optional[float] = None


def _clamp_remaining(value: float, limit: int) -> int:
    return max(0, min(limit, int(math.floor(value + EPSILON))))


class LimitingAlgorithm(ABC, Generic[S]):
    """Base class of the algorithm engine.

    Subclasses implement `apply` on typed state; `step` adds the dict codec
    used by the counter store so the store stays algorithm-agnostic.
    """

    algorithm: RateLimitAlgorithm
    state_type: Type[S]

    @property
    @abstractmethod
    def ttl_seconds(self) -> int:
        """Inactivity horizon after which the stored state is meaningless."""

    @abstractmethod
    def apply(self, state: Optional[S], now: float, cost: int) -> Tuple[Optional[S], AlgorithmDecision]:
        """Compute the next state and the decision for a request of `cost`."""

    def load_state(self, data: Optional[Dict[str, Any]]) -> Optional[S]:
        """Decode stored state, treating unreadable payloads as absent."""
        if data is None:
            return None
        try:
            return self.state_type.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("counter_state_discarded", algorithm=self.algorithm.value, error=str(e))
            return None

    def step(
        self, data: Optional[Dict[str, Any]], now: float, cost: int
    ) -> Tuple[Optional[Dict[str, Any]], AlgorithmDecision]:
        """Run `apply` on serialized state, returning serialized state."""
        new_state, decision = self.apply(self.load_state(data), now, cost)
        return (new_state.to_dict() if new_state is not None else None), decision

    def bind(self, now: float, cost: int) -> AlgorithmStep:
        """Bind `(now, cost)`, giving the transform handed to a counter store."""
        return AlgorithmStep(self, now, cost)

    @property
    @abstractmethod
    def parameters(self) -> Tuple[float, float]:
        """Numeric configuration, in the order server-side scripts expect it."""


@dataclass(frozen=True, slots=True)
class AlgorithmStep:
    """
    One algorithm step bound to a timestamp and a cost.

    Calling it runs `step` on the given state. Stores that can evaluate the
    algorithm next to the data (a Redis script) read `algorithm`, `now` and
    `cost` instead and never call it.
    """
    algorithm: LimitingAlgorithm
    now: float
    cost: int

    def __call__(
        self, data: Optional[Dict[str, Any]]
    ) -> Tuple[Optional[Dict[str, Any]], AlgorithmDecision]:
        return self.algorithm.step(data, self.now, self.cost)


class FixedWindowAlgorithm(LimitingAlgorithm[FixedWindowState]):
    """
    Counts requests in windows aligned to multiples of the window size.

    Up to 2x the limit can pass across a window boundary (the tail of one
    window plus the head of the next). That is the accepted trade-off of this
    algorithm and is kept as is.
    """

    algorithm = RateLimitAlgorithm.FIXED_WINDOW
    state_type = FixedWindowState

    def __init__(self, limit: int, window_seconds: float):
        self.limit = limit
        self.window_seconds = window_seconds

    @property
    def ttl_seconds(self) -> int:
        return max(1, int(math.ceil(self.window_seconds)))

    @property
    def parameters(self):
        return self.limit, self.window_seconds

    def apply(self, state, now, cost):
        window_start = math.floor(now / self.window_seconds) * self.window_seconds
        count = 0
        # A stored window ahead of the local one (clock skew) is kept, never rolled back.
        if state is not None and state.window_start >= window_start:
            window_start, count = state.window_start, state.count
        reset_at = window_start + self.window_seconds

        if cost == 0:
            return None, AlgorithmDecision(True, _clamp_remaining(self.limit - count, self.limit), self.limit, reset_at)

        if count + cost <= self.limit:
            count += cost
            return (
                FixedWindowState(window_start=window_start, count=count),
                AlgorithmDecision(True, _clamp_remaining(self.limit - count, self.limit), self.limit, reset_at),
            )

        return None, AlgorithmDecision(
            False,
            _clamp_remaining(self.limit - count, self.limit),
            self.limit,
            reset_at,
            retry_after=reset_at - now,
        )


class SlidingWindowLogAlgorithm(LimitingAlgorithm[SlidingWindowLogState]):
    """
    Exact trailing-window limiter keeping one weighted entry per admission.

    Store footprint grows with traffic; meant for low and medium volume keys.
    """

    algorithm = RateLimitAlgorithm.SLIDING_WINDOW_LOG
    state_type = SlidingWindowLogState

    def __init__(self, limit: int, window_seconds: float):
        self.limit = limit
        self.window_seconds = window_seconds

    @property
    def ttl_seconds(self) -> int:
        return max(1, int(math.ceil(self.window_seconds)))

    @property
    def parameters(self):
        return self.limit, self.window_seconds

    def apply(self, state, now, cost):
        cutoff = now - self.window_seconds
        entries = tuple(
            (ts, weight) for ts, weight in (state.entries if state is not None else ()) if ts > cutoff
        )
        used = sum(weight for _, weight in entries)

        if cost == 0:
            return None, AlgorithmDecision(
                True, _clamp_remaining(self.limit - used, self.limit), self.limit, self._reset_at(entries, now)
            )

        if used + cost <= self.limit:
            entries = entries + ((now, cost),)
            return (
                SlidingWindowLogState(entries=entries),
                AlgorithmDecision(
                    True,
                    _clamp_remaining(self.limit - used - cost, self.limit),
                    self.limit,
                    self._reset_at(entries, now),
                ),
            )

        return None, AlgorithmDecision(
            False,
            _clamp_remaining(self.limit - used, self.limit),
            self.limit,
            self._reset_at(entries, now),
            retry_after=self._retry_after(entries, used, now, cost),
        )

    def _reset_at(self, entries, now: float) -> float:
        if not entries:
            return now + self.window_seconds
        return entries[0][0] + self.window_seconds

    def _retry_after(self, entries, used: int, now: float, cost: int) -> float:
        if cost > self.limit:
            return self.window_seconds
        # Walk from the oldest entry until enough weight has aged out.
        needed = used + cost - self.limit
        freed = 0
        for ts, weight in entries:
            freed += weight
            if freed >= needed:
                return max(0.0, ts + self.window_seconds - now)
        return self.window_seconds


class SlidingWindowCounterAlgorithm(LimitingAlgorithm[SlidingWindowCounterState]):
    """
    Weighted two-window approximation with O(1) state. Recommended default.

    effective = prev_count * (window - elapsed_in_current) / window + curr_count

    Windows are aligned to multiples of the window size so every instance
    agrees on the boundaries. A stored window start ahead of the local
    aligned start (clock skew between instances) is kept, never rolled back.
    """

    algorithm = RateLimitAlgorithm.SLIDING_WINDOW_COUNTER
    state_type = SlidingWindowCounterState

    def __init__(self, limit: int, window_seconds: float):
        self.limit = limit
        self.window_seconds = window_seconds

    @property
    def ttl_seconds(self) -> int:
        # The current window is still read as "previous" during the next one.
        return max(1, int(math.ceil(2 * self.window_seconds)))

    @property
    def parameters(self):
        return self.limit, self.window_seconds

    def _roll(self, state: Optional[SlidingWindowCounterState], now: float) -> SlidingWindowCounterState:
        aligned = math.floor(now / self.window_seconds) * self.window_seconds
        if state is None:
            return SlidingWindowCounterState(prev_window_count=0, curr_window_start=aligned, curr_window_count=0)

        windows_elapsed = int(round((aligned - state.curr_window_start) / self.window_seconds))
        if windows_elapsed <= 0:
            return state
        if windows_elapsed == 1:
            return SlidingWindowCounterState(
                prev_window_count=state.curr_window_count, curr_window_start=aligned, curr_window_count=0
            )
        return SlidingWindowCounterState(prev_window_count=0, curr_window_start=aligned, curr_window_count=0)

    def apply(self, state, now, cost):
        state = self._roll(state, now)
        elapsed = min(self.window_seconds, max(0.0, now - state.curr_window_start))
        weight = (self.window_seconds - elapsed) / self.window_seconds
        effective = state.prev_window_count * weight + state.curr_window_count
        reset_at = state.curr_window_start + (
            2 * self.window_seconds if state.curr_window_count else self.window_seconds
        )

        if cost == 0:
            return None, AlgorithmDecision(True, _clamp_remaining(self.limit - effective, self.limit), self.limit, reset_at)

        if effective + cost <= self.limit + EPSILON:
            new_state = SlidingWindowCounterState(
                prev_window_count=state.prev_window_count,
                curr_window_start=state.curr_window_start,
                curr_window_count=state.curr_window_count + cost,
            )
            reset_at = new_state.curr_window_start + 2 * self.window_seconds
            return new_state, AlgorithmDecision(
                True, _clamp_remaining(self.limit - effective - cost, self.limit), self.limit, reset_at
            )

        return None, AlgorithmDecision(
            False,
            _clamp_remaining(self.limit - effective, self.limit),
            self.limit,
            reset_at,
            retry_after=self._retry_after(state, now, cost),
        )

    def _retry_after(self, state: SlidingWindowCounterState, now: float, cost: int) -> float:
        window = self.window_seconds
        start = state.curr_window_start
        if cost > self.limit:
            return max(0.0, start + 2 * window - now)

        # Still inside the current window: wait for the previous window's weight to decay.
        headroom = self.limit - state.curr_window_count - cost
        if headroom >= 0 and state.prev_window_count > 0:
            target_weight = headroom / state.prev_window_count
            return max(0.0, start + window * (1 - target_weight) - now)

        # Otherwise the current count becomes "previous" in the next window and decays there.
        if state.curr_window_count == 0:
            return max(0.0, start + window - now)
        target_weight = (self.limit - cost) / state.curr_window_count
        return max(0.0, start + window + window * (1 - min(1.0, target_weight)) - now)


class TokenBucketAlgorithm(LimitingAlgorithm[TokenBucketState]):
    """
    Bucket of `capacity` tokens refilled at `refill_rate` tokens per second.

    New keys start with a full bucket: bursts up to capacity are the point of
    this algorithm.
    """

    algorithm = RateLimitAlgorithm.TOKEN_BUCKET
    state_type = TokenBucketState

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate

    @property
    def ttl_seconds(self) -> int:
        # Once the bucket would be full again the state equals a fresh one.
        return max(1, int(math.ceil(self.capacity / self.refill_rate)) + 1)

    @property
    def parameters(self):
        return self.capacity, self.refill_rate

    def apply(self, state, now, cost):
        if state is None:
            tokens, last = float(self.capacity), now
        else:
            tokens, last = state.tokens, state.last_refill_at
        elapsed = max(0.0, now - last)
        tokens = min(float(self.capacity), tokens + elapsed * self.refill_rate)
        refill_at = max(now, last)

        if cost == 0:
            return None, self._decision(True, tokens, now)

        if tokens + EPSILON >= cost:
            tokens = max(0.0, tokens - cost)
            return TokenBucketState(tokens=tokens, last_refill_at=refill_at), self._decision(True, tokens, now)

        if cost > self.capacity:
            retry_after = (self.capacity - tokens) / self.refill_rate
        else:
            retry_after = (cost - tokens) / self.refill_rate
        return None, self._decision(False, tokens, now, retry_after)

    def _decision(self, allowed: bool, tokens: float, now: float, retry_after: Optional[float] = None):
        return AlgorithmDecision(
            allowed,
            _clamp_remaining(tokens, self.capacity),
            self.capacity,
            now + (self.capacity - tokens) / self.refill_rate,
            retry_after=retry_after,
        )


class LeakyBucketAlgorithm(LimitingAlgorithm[LeakyBucketState]):
    """
    Queue of `capacity` units draining at `leak_rate` units per second.

    Used when the downstream effect should be smoothing rather than bursting.
    """

    algorithm = RateLimitAlgorithm.LEAKY_BUCKET
    state_type = LeakyBucketState

    def __init__(self, capacity: int, leak_rate: float):
        self.capacity = capacity
        self.leak_rate = leak_rate

    @property
    def ttl_seconds(self) -> int:
        return max(1, int(math.ceil(self.capacity / self.leak_rate)) + 1)

    @property
    def parameters(self):
        return self.capacity, self.leak_rate

    def apply(self, state, now, cost):
        if state is None:
            level, last = 0.0, now
        else:
            level, last = state.queue_level, state.last_leak_at
        elapsed = max(0.0, now - last)
        level = max(0.0, level - elapsed * self.leak_rate)
        leak_at = max(now, last)

        if cost == 0:
            return None, self._decision(True, level, now)

        if level + cost <= self.capacity + EPSILON:
            level = min(float(self.capacity), level + cost)
            return LeakyBucketState(queue_level=level, last_leak_at=leak_at), self._decision(True, level, now)

        if cost > self.capacity:
            retry_after = level / self.leak_rate
        else:
            retry_after = (level + cost - self.capacity) / self.leak_rate
        return None, self._decision(False, level, now, retry_after)

    def _decision(self, allowed: bool, level: float, now: float, retry_after: Optional[float] = None):
        return AlgorithmDecision(
            allowed,
            _clamp_remaining(self.capacity - level, self.capacity),
            self.capacity,
            now + level / self.leak_rate,
            retry_after=retry_after,
        )


def build_algorithm(policy: RateLimitPolicy) -> LimitingAlgorithm:
    """Instantiate the algorithm engine configured by a policy."""
    if policy.algorithm is RateLimitAlgorithm.FIXED_WINDOW:
        return FixedWindowAlgorithm(policy.limit, policy.window_seconds)
    if policy.algorithm is RateLimitAlgorithm.SLIDING_WINDOW_LOG:
        return SlidingWindowLogAlgorithm(policy.limit, policy.window_seconds)
    if policy.algorithm is RateLimitAlgorithm.SLIDING_WINDOW_COUNTER:
        return SlidingWindowCounterAlgorithm(policy.limit, policy.window_seconds)
    if policy.algorithm is RateLimitAlgorithm.TOKEN_BUCKET:
        return TokenBucketAlgorithm(policy.capacity, policy.rate_per_second)
    if policy.algorithm is RateLimitAlgorithm.LEAKY_BUCKET:
        return LeakyBucketAlgorithm(policy.capacity, policy.rate_per_second)
    raise ValueError(f"Unsupported algorithm: {policy.algorithm}")
