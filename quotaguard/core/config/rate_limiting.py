"""
Admission control engine settings.
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitSettings(BaseSettings):
    """
    Defines tunables of the admission controller, the counter store client
    and the circuit breaker guarding it.

    Fallback Note:
        - RATE_LIMIT_DEFAULT_FALLBACK applies to policies that do not pick a
          fallback mode themselves. It defaults to "fail_closed", the safer
          choice for abuse prevention; "fail_open" favours availability and
          "local" keeps approximate per-instance counting while the store is down.
    """
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_KEY_PREFIX: str = Field(default="quotaguard:", min_length=1)
    RATE_LIMIT_POLICY_FILE: str = ""
    RATE_LIMIT_POLICY_CACHE_TTL: float = Field(default=5.0, ge=0)
    RATE_LIMIT_DEFAULT_FALLBACK: str = Field(
        default="fail_closed",
        pattern="^(fail_open|fail_closed|local)$"
    )

    # Optimistic compare-and-swap retry budget
    RATE_LIMIT_CAS_ATTEMPTS: int = Field(default=3, ge=1)
    RATE_LIMIT_CAS_BACKOFF_BASE: float = Field(default=0.005, ge=0)
    RATE_LIMIT_CAS_BACKOFF_MAX: float = Field(default=0.05, ge=0)

    # Circuit breaker guarding the store
    RATE_LIMIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5, ge=1)
    RATE_LIMIT_BREAKER_FAILURE_WINDOW: float = Field(default=10.0, gt=0)
    RATE_LIMIT_BREAKER_RESET_TIMEOUT: float = Field(default=30.0, gt=0)

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )
