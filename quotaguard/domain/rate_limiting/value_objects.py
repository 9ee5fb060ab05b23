"""
Rate Limiting Value Objects

Immutable value objects representing core concepts in the admission control
domain. These objects encapsulate invariants while providing type safety.

Value Objects:
- RateLimitAlgorithm: Enumeration of supported algorithms
- FallbackMode: What to do while the shared store is unavailable
- Decision: The four observable outcomes of an admission check
- RateLimitKey: Identification of one counter in the shared store
- *State: Per-algorithm counter state persisted in the store
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple


class RateLimitAlgorithm(str, Enum):
    """
    Enumeration of supported rate limiting algorithms.

    - FIXED_WINDOW: Cheapest, allows up to 2x the limit across a boundary
    - SLIDING_WINDOW_LOG: Exact, state grows with traffic
    - SLIDING_WINDOW_COUNTER: Weighted approximation with O(1) state (recommended)
    - TOKEN_BUCKET: Steady rate with bursts up to capacity
    - LEAKY_BUCKET: Smooths traffic, no bursting beyond capacity
    """
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW_LOG = "sliding_window_log"
    SLIDING_WINDOW_COUNTER = "sliding_window_counter"
    TOKEN_BUCKET = "token_bucket"
    LEAKY_BUCKET = "leaky_bucket"

    @property
    def is_windowed(self) -> bool:
        """Whether the algorithm counts requests over a time window."""
        return self in (
            RateLimitAlgorithm.FIXED_WINDOW,
            RateLimitAlgorithm.SLIDING_WINDOW_LOG,
            RateLimitAlgorithm.SLIDING_WINDOW_COUNTER,
        )


class FallbackMode(str, Enum):
    """Behaviour of a policy while the shared store is unavailable."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"
    LOCAL = "local"


class Decision(str, Enum):
    """Outcome of an admission check.

    The degraded variants tell callers that the decision was made without the
    shared store, so "limited" can be told apart from "limiter unavailable".
    """
    ALLOWED = "allowed"
    DENIED = "denied"
    DEGRADED_ALLOWED = "degraded_allowed"
    DEGRADED_DENIED = "degraded_denied"

    @property
    def allowed(self) -> bool:
        return self in (Decision.ALLOWED, Decision.DEGRADED_ALLOWED)

    @property
    def degraded(self) -> bool:
        return self in (Decision.DEGRADED_ALLOWED, Decision.DEGRADED_DENIED)

    @classmethod
    def of(cls, allowed: bool, degraded: bool = False) -> Decision:
        if degraded:
            return cls.DEGRADED_ALLOWED if allowed else cls.DEGRADED_DENIED
        return cls.ALLOWED if allowed else cls.DENIED


@dataclass(frozen=True, slots=True)
class RateLimitKey:
    """
    Identifies one counter: the caller identity paired with the policy key.

    The store key is a SHA-256 digest of both components, so raw identities
    (API keys, account ids) never appear in the shared store or in logs, and
    crafted identities cannot collide with other callers' keys.
    """
    identity: str
    policy_name: str

    def __post_init__(self):
        # Identities are opaque: the empty string is hashed like any other.
        if not isinstance(self.identity, str):
            raise TypeError("identity must be a string")
        if not self.policy_name:
            raise ValueError("policy_name must be provided")

    @property
    def digest(self) -> str:
        return hashlib.sha256(f"{self.identity}\x1f{self.policy_name}".encode()).hexdigest()

    def store_key(self, prefix: str = "quotaguard:") -> str:
        """Full key used in the shared store."""
        return f"{prefix}{self.policy_name}:{self.digest}"


# ---------------------------------------------------------------------------
# Counter state, one shape per algorithm
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FixedWindowState:
    window_start: float
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FixedWindowState:
        return cls(window_start=float(data["window_start"]), count=int(data["count"]))


@dataclass(frozen=True, slots=True)
class SlidingWindowLogState:
    """Ordered `(timestamp, weight)` entries inside the trailing window."""
    entries: Tuple[Tuple[float, int], ...] = field(default_factory=tuple)

    @property
    def total(self) -> int:
        return sum(weight for _, weight in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {"entries": [[ts, weight] for ts, weight in self.entries]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SlidingWindowLogState:
        return cls(entries=tuple((float(ts), int(weight)) for ts, weight in data.get("entries", [])))


@dataclass(frozen=True, slots=True)
class SlidingWindowCounterState:
    prev_window_count: int
    curr_window_start: float
    curr_window_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SlidingWindowCounterState:
        return cls(
            prev_window_count=int(data["prev_window_count"]),
            curr_window_start=float(data["curr_window_start"]),
            curr_window_count=int(data["curr_window_count"]),
        )


@dataclass(frozen=True, slots=True)
class TokenBucketState:
    tokens: float
    last_refill_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TokenBucketState:
        return cls(tokens=float(data["tokens"]), last_refill_at=float(data["last_refill_at"]))


@dataclass(frozen=True, slots=True)
class LeakyBucketState:
    queue_level: float
    last_leak_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LeakyBucketState:
        return cls(queue_level=float(data["queue_level"]), last_leak_at=float(data["last_leak_at"]))
