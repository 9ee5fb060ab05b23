"""Rate Limiting Domain Entities

Entities of the admission control domain.

Entities:
- TierRule: Override applied to a policy for a class of identities
- RateLimitPolicy: Immutable snapshot of the limiting rules for a caller
- ConsumptionResult: Result of one admission check
- PolicySet: The whole loaded configuration, swapped atomically on reload

Policies are created by configuration load and replaced wholesale on reload;
they are never mutated in place. Results are produced fresh per call and
never persisted.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from quotaguard.core.exceptions import PolicyNotFoundError

from .value_objects import Decision, FallbackMode, RateLimitAlgorithm


@dataclass(frozen=True, slots=True)
class TierRule:
    """Override applied to identities starting with `prefix`.

    Unset fields inherit the value of the policy the rule belongs to.
    """
    prefix: str
    limit: Optional[int] = None
    burst_capacity: Optional[int] = None
    cost_multiplier: int = 1

    def __post_init__(self):
        if not self.prefix:
            raise ValueError("Tier rule prefix must not be empty")
        if self.limit is not None and self.limit <= 0:
            raise ValueError("Tier rule limit must be positive")
        if self.burst_capacity is not None and self.burst_capacity <= 0:
            raise ValueError("Tier rule burst_capacity must be positive")
        if self.cost_multiplier < 1:
            raise ValueError("cost_multiplier must be at least 1")

    def matches(self, identity: str) -> bool:
        return identity.startswith(self.prefix)


@dataclass(frozen=True, slots=True)
class RateLimitPolicy:
    """Entity representing a concrete limiting policy.

    Business Rules:
    - `limit` must be positive
    - Windowed algorithms need `window_seconds`
    - Bucket algorithms need either `refill_rate_per_second` or `window_seconds`
      (the rate then defaults to `limit / window_seconds`)
    - `burst_capacity`, when set, is the bucket size; otherwise `limit` is
    """

    name: str
    algorithm: RateLimitAlgorithm
    limit: int
    window_seconds: Optional[float] = None
    refill_rate_per_second: Optional[float] = None
    burst_capacity: Optional[int] = None
    fallback_mode: FallbackMode = FallbackMode.FAIL_CLOSED
    tier_rules: Tuple[TierRule, ...] = field(default_factory=tuple)
    cost_multiplier: int = 1

    def __post_init__(self):
        """Validate policy configuration at creation"""
        if not self.name:
            raise ValueError("Policy name must not be empty")
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.window_seconds is not None and self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.refill_rate_per_second is not None and self.refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be positive")
        if self.burst_capacity is not None and self.burst_capacity <= 0:
            raise ValueError("burst_capacity must be positive")
        if self.cost_multiplier < 1:
            raise ValueError("cost_multiplier must be at least 1")
        if self.algorithm.is_windowed and self.window_seconds is None:
            raise ValueError(f"{self.algorithm.value} requires window_seconds")
        if not self.algorithm.is_windowed and self.window_seconds is None and self.refill_rate_per_second is None:
            raise ValueError(f"{self.algorithm.value} requires refill_rate_per_second or window_seconds")

    @property
    def capacity(self) -> int:
        """Maximum usage the counter may hold."""
        if self.burst_capacity is not None and not self.algorithm.is_windowed:
            return self.burst_capacity
        return self.limit

    @property
    def rate_per_second(self) -> float:
        """Refill rate (token bucket) or leak rate (leaky bucket)."""
        if self.refill_rate_per_second is not None:
            return self.refill_rate_per_second
        return self.limit / self.window_seconds

    def for_identity(self, identity: str) -> RateLimitPolicy:
        """Return the policy with the first matching tier rule applied."""
        for rule in self.tier_rules:
            if rule.matches(identity):
                return replace(
                    self,
                    limit=rule.limit if rule.limit is not None else self.limit,
                    burst_capacity=rule.burst_capacity if rule.burst_capacity is not None else self.burst_capacity,
                    cost_multiplier=rule.cost_multiplier,
                    tier_rules=(),
                )
        return self


@dataclass(frozen=True, slots=True)
class ConsumptionResult:
    """Result of an admission check.

    `reset_at` is a unix timestamp in seconds; `retry_after` is a duration in
    seconds and is only set when the request was denied.
    """

    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    decision: Decision
    policy_name: str
    retry_after: Optional[float] = None

    @property
    def degraded(self) -> bool:
        """True when the decision was made without the shared store."""
        return self.decision.degraded

    @property
    def is_blocked(self) -> bool:
        return not self.allowed

    @property
    def retry_after_ms(self) -> Optional[int]:
        if self.retry_after is None:
            return None
        return int(math.ceil(self.retry_after * 1000))

    def to_http_headers(self) -> Dict[str, str]:
        """Convert result to HTTP headers following standard conventions.

        - X-RateLimit-Limit: The rate limit ceiling for the given request
        - X-RateLimit-Remaining: The number of requests left
        - X-RateLimit-Reset: Unix time at which the quota is fully available again
        - Retry-After: Whole seconds to wait (only when blocked)
        """
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if self.is_blocked and self.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(math.ceil(self.retry_after))))
        return headers


@dataclass(frozen=True)
class PolicySet:
    """Complete, validated policy configuration.

    Swapped as a whole on reload; a resolver never sees a half-applied set.

    Attributes:
        policies: Policy key -> policy.
        default_policy: Key of the policy used when nothing else matches.
        overrides: Exact identity -> policy key.
        tiers: Identity prefix -> policy key; the longest matching prefix wins.
    """

    policies: Mapping[str, RateLimitPolicy]
    default_policy: str
    overrides: Mapping[str, str] = field(default_factory=dict)
    tiers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.default_policy not in self.policies:
            raise PolicyNotFoundError(self.default_policy)
        for target in list(self.overrides.values()) + list(self.tiers.values()):
            if target not in self.policies:
                raise PolicyNotFoundError(target)
        # Read-only views so a loaded set cannot be edited behind the resolver's back.
        object.__setattr__(self, "policies", MappingProxyType(dict(self.policies)))
        object.__setattr__(self, "overrides", MappingProxyType(dict(self.overrides)))
        object.__setattr__(
            self,
            "tiers",
            MappingProxyType(dict(sorted(self.tiers.items(), key=lambda item: len(item[0]), reverse=True))),
        )

    def policy_key_for(self, identity: str) -> str:
        """Pick the policy key of an identity: override, then tier prefix, then default."""
        if identity in self.overrides:
            return self.overrides[identity]
        for prefix, policy_key in self.tiers.items():
            if identity.startswith(prefix):
                return policy_key
        return self.default_policy
