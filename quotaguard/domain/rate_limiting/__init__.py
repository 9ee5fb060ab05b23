"""Rate Limiting Domain Module

This module contains the domain model of the admission control engine. It
follows Domain-Driven Design principles with:

- Value Objects: Immutable algorithm, decision and counter state types
- Entities: Policies, policy sets and consumption results
- Algorithms: Pure limiting rules, free of store and clock
- Domain Services: Policy resolution and the admission controller
- Repositories: Contract of the shared counter store
"""

from .algorithms import AlgorithmDecision, LimitingAlgorithm, build_algorithm
from .entities import ConsumptionResult, PolicySet, RateLimitPolicy, TierRule
from .fallback import FallbackHandler
from .repositories import CounterStore
from .services import AdmissionController, RateLimitPolicyService, rate_limited
from .value_objects import Decision, FallbackMode, RateLimitAlgorithm, RateLimitKey

__all__ = [
    "AlgorithmDecision",
    "LimitingAlgorithm",
    "build_algorithm",
    "ConsumptionResult",
    "PolicySet",
    "RateLimitPolicy",
    "TierRule",
    "FallbackHandler",
    "CounterStore",
    "AdmissionController",
    "RateLimitPolicyService",
    "rate_limited",
    "Decision",
    "FallbackMode",
    "RateLimitAlgorithm",
    "RateLimitKey",
]
