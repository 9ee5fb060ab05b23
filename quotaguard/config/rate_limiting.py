"""
Rate Limiting Policy Configuration

Parses the policy configuration document into a validated `PolicySet`:

    {
        "default_policy": "free",
        "policies": {
            "free": {"algorithm": "sliding_window_counter", "limit": 100, "window_seconds": 60},
            "burst": {"algorithm": "token_bucket", "limit": 10, "refillRatePerSecond": 1,
                      "burstCapacity": 20, "fallback_mode": "local"}
        },
        "overrides": {"acct-42": "burst"},
        "tiers": {"ip:": "free"}
    }

Field names are accepted in snake_case or camelCase. Malformed documents raise
`PolicyConfigurationError`; references to undefined policies raise
`PolicyNotFoundError`. Both are startup errors.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from quotaguard.core.exceptions import PolicyConfigurationError
from quotaguard.core.logging import logger
from quotaguard.domain.rate_limiting.entities import PolicySet, RateLimitPolicy, TierRule
from quotaguard.domain.rate_limiting.value_objects import FallbackMode, RateLimitAlgorithm


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)


class TierRuleConfig(_ConfigModel):
    prefix: str = Field(min_length=1)
    limit: Optional[int] = Field(default=None, gt=0)
    burst_capacity: Optional[int] = Field(default=None, gt=0)
    cost_multiplier: int = Field(default=1, ge=1)


class PolicyConfig(_ConfigModel):
    """Configuration of one policy key."""

    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.SLIDING_WINDOW_COUNTER
    limit: int = Field(gt=0)
    window_seconds: Optional[float] = Field(default=None, gt=0)
    refill_rate_per_second: Optional[float] = Field(default=None, gt=0)
    burst_capacity: Optional[int] = Field(default=None, gt=0)
    fallback_mode: Optional[FallbackMode] = None
    tier_rules: List[TierRuleConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_time_parameters(self) -> "PolicyConfig":
        if self.algorithm.is_windowed and self.window_seconds is None:
            raise ValueError(f"{self.algorithm.value} requires window_seconds")
        if not self.algorithm.is_windowed and self.window_seconds is None and self.refill_rate_per_second is None:
            raise ValueError(f"{self.algorithm.value} requires refill_rate_per_second or window_seconds")
        return self

    def to_policy(self, name: str, default_fallback: FallbackMode) -> RateLimitPolicy:
        return RateLimitPolicy(
            name=name,
            algorithm=self.algorithm,
            limit=self.limit,
            window_seconds=self.window_seconds,
            refill_rate_per_second=self.refill_rate_per_second,
            burst_capacity=self.burst_capacity,
            fallback_mode=self.fallback_mode or default_fallback,
            tier_rules=tuple(TierRule(**rule.model_dump()) for rule in self.tier_rules),
        )


class RateLimitConfig(_ConfigModel):
    """Top-level policy configuration document."""

    default_policy: str = Field(min_length=1)
    policies: Dict[str, PolicyConfig] = Field(min_length=1)
    overrides: Dict[str, str] = Field(default_factory=dict)
    tiers: Dict[str, str] = Field(default_factory=dict)

    def to_policy_set(self, default_fallback: FallbackMode = FallbackMode.FAIL_CLOSED) -> PolicySet:
        return PolicySet(
            policies={name: cfg.to_policy(name, default_fallback) for name, cfg in self.policies.items()},
            default_policy=self.default_policy,
            overrides=dict(self.overrides),
            tiers=dict(self.tiers),
        )


def parse_policy_config(
    data: Mapping[str, Any],
    default_fallback: Union[FallbackMode, str] = FallbackMode.FAIL_CLOSED,
) -> PolicySet:
    """
    Validate a configuration mapping and build the policy set.

    Args:
        data: Parsed configuration document.
        default_fallback: Fallback mode for policies that do not set one.

    Raises:
        PolicyConfigurationError: If the document is malformed.
        PolicyNotFoundError: If the default, an override or a tier points to an undefined policy.
    """
    try:
        config = RateLimitConfig.model_validate(data)
    except ValidationError as e:
        raise PolicyConfigurationError(f"Invalid rate limit policy configuration: {e}") from e

    policy_set = config.to_policy_set(FallbackMode(default_fallback))
    logger.info(
        "policy_config_parsed",
        policies=sorted(policy_set.policies),
        default_policy=policy_set.default_policy,
        overrides=len(policy_set.overrides),
        tiers=len(policy_set.tiers),
    )
    return policy_set


def load_policy_config(
    path: Union[str, Path],
    default_fallback: Union[FallbackMode, str] = FallbackMode.FAIL_CLOSED,
) -> PolicySet:
    """Read a JSON policy configuration file."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PolicyConfigurationError(f"Cannot read policy configuration from {path}: {e}") from e
    if not isinstance(data, dict):
        raise PolicyConfigurationError(f"Policy configuration in {path} must be a JSON object")
    return parse_policy_config(data, default_fallback)
