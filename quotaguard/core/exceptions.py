from __future__ import annotations

"""Centralized, structured exception hierarchy for quotaguard.

Every error raised by the engine derives from `QuotaGuardError` and carries a
machine-readable `code` next to the human-readable `message`, so callers can
log and branch on failures without string matching.

The hierarchy separates three families:
- Store errors, which the admission controller absorbs and turns into a
  degraded decision. They never reach `try_acquire` callers.
- Programmer/configuration errors (`PolicyNotFoundError`, `InvalidCostError`,
  `PolicyConfigurationError`), surfaced immediately and never retried.
- `RateLimitExceededError`, raised only by the convenience helpers that turn
  a denial into control flow (`acquire`, the HTTP adapter).
"""

from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from quotaguard.domain.rate_limiting.entities import ConsumptionResult

__all__: Final = [
    "QuotaGuardError",
    "StoreError",
    "StoreUnavailableError",
    "StoreContentionError",
    "PolicyNotFoundError",
    "PolicyConfigurationError",
    "InvalidCostError",
    "RateLimitError",
    "RateLimitExceededError",
]


class QuotaGuardError(Exception):
    """Base exception class for all custom errors raised by quotaguard.

    Attributes:
        message (str): A human-readable error message, suitable for logging.
        code (str): A unique, machine-readable error code.
    """

    message: str
    code: str = "generic_error"

    def __init__(self, message: str, code: str = "generic_error"):
        self.message = message
        self.code = code
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Shared counter store errors
# ---------------------------------------------------------------------------


class StoreError(QuotaGuardError):
    """Base class for failures talking to the shared counter store."""

    def __init__(self, message: str, code: str = "store_error"):
        super().__init__(message, code)


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached or does not answer in time.

    Covers connection refusals, socket timeouts and any other transport-level
    failure. The admission controller records it on the circuit breaker and
    answers from the fallback path.
    """

    def __init__(self, message: str = "Shared counter store is unavailable", code: str = "store_unavailable"):
        super().__init__(message, code)


class StoreContentionError(StoreError):
    """Raised when an optimistic compare-and-swap exhausted its retry budget.

    Transient by nature. After the local retries are spent it is handled
    exactly like `StoreUnavailableError`.
    """

    def __init__(self, key: str, attempts: int, message: str | None = None, code: str = "store_contention"):
        self.key = key
        self.attempts = attempts
        if message is None:
            message = f"Compare-and-swap on {key} failed after {attempts} attempts"
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Configuration and caller errors (fail fast)
# ---------------------------------------------------------------------------


class PolicyNotFoundError(QuotaGuardError):
    """Raised when a policy key cannot be resolved.

    Only raised while loading configuration: a missing default policy or an
    override pointing to an unknown policy key is a startup defect.
    """

    def __init__(self, policy_key: str, message: str | None = None, code: str = "policy_not_found"):
        self.policy_key = policy_key
        if message is None:
            message = f"Rate limit policy '{policy_key}' is not defined"
        super().__init__(message, code)


class PolicyConfigurationError(QuotaGuardError):
    """Raised when the policy configuration document is malformed."""

    def __init__(self, message: str, code: str = "policy_configuration_error"):
        super().__init__(message, code)


class InvalidCostError(QuotaGuardError):
    """Raised when a caller passes a negative or non-integer cost."""

    def __init__(self, cost: object, message: str | None = None, code: str = "invalid_cost"):
        self.cost = cost
        if message is None:
            message = f"Cost must be a non-negative integer, got {cost!r}"
        super().__init__(message, code)


# ---------------------------------------------------------------------------
# Rate limit outcomes (map to 429 Too Many Requests)
# ---------------------------------------------------------------------------


class RateLimitError(QuotaGuardError):
    """Base class for rate limiting outcomes that are raised as exceptions."""

    def __init__(self, message: str | None = None, code: str = "rate_limit_exceeded"):
        if message is None:
            message = "Rate limit exceeded"
        super().__init__(message, code)


class RateLimitExceededError(RateLimitError):
    """Raised when a caller has exhausted its quota.

    Carries the `ConsumptionResult` that produced the denial so the HTTP layer
    can build `Retry-After` and `X-RateLimit-*` headers from it.
    """

    def __init__(
        self,
        result: ConsumptionResult,
        message: str | None = None,
        code: str = "rate_limit_exceeded",
    ):
        self.result = result
        if message is None:
            message = f"Rate limit exceeded for policy '{result.policy_name}'"
        super().__init__(message, code)
