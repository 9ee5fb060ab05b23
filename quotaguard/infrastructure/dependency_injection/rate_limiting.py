"""Wiring of the admission controller.

This module builds a ready-to-use `AdmissionController` from settings:

1. configures structured logging from `LOG_LEVEL` / `LOG_JSON`;
2. loads the policy set (explicit argument, or `RATE_LIMIT_POLICY_FILE`);
3. creates the Redis connection pool unless a client is supplied;
4. assembles the counter store, the circuit breaker and the fallback handler.

The Redis pool is an explicit resource: it belongs to the returned
`RateLimitingContainer` and is released by `close()` or by leaving the
`with` block. A client passed in by the caller stays owned by the caller.
"""

from typing import Optional

from redis import Redis

from quotaguard.config.rate_limiting import load_policy_config
from quotaguard.core.circuit_breaker import CircuitBreaker
from quotaguard.core.config.settings import Settings
from quotaguard.core.exceptions import PolicyConfigurationError
from quotaguard.core.logging import configure_logging, logger
from quotaguard.domain.rate_limiting.entities import PolicySet
from quotaguard.domain.rate_limiting.fallback import FallbackHandler
from quotaguard.domain.rate_limiting.services import AdmissionController, RateLimitPolicyService
from quotaguard.infrastructure.redis import create_redis_client
from quotaguard.infrastructure.repositories.memory_counter_store import InMemoryCounterStore
from quotaguard.infrastructure.repositories.redis_counter_store import RedisCounterStore


class RateLimitingContainer:
    """Owns the controller together with the resources it was built on."""

    def __init__(self, controller: AdmissionController, owns_store: bool):
        self.controller = controller
        self._owns_store = owns_store
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_store:
            self.controller.store.close()
        logger.info("admission_controller_closed")

    def __enter__(self) -> AdmissionController:
        return self.controller

    def __exit__(self, exc_type, exc_val, traceback):
        self.close()
        return False


def build_admission_controller(
    settings: Settings,
    policy_set: Optional[PolicySet] = None,
    redis_client: Optional[Redis] = None,
) -> RateLimitingContainer:
    """
    Assemble an admission controller backed by Redis.

    Args:
        settings: Engine settings.
        policy_set: Policies to enforce. Loaded from `RATE_LIMIT_POLICY_FILE`
            when omitted.
        redis_client: Existing client to use instead of a new pool.

    Returns:
        RateLimitingContainer: Holder of the controller; close it on shutdown.

    Raises:
        PolicyConfigurationError: If no policy set is given and no policy file is configured.
    """
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    if policy_set is None:
        if not settings.RATE_LIMIT_POLICY_FILE:
            raise PolicyConfigurationError("RATE_LIMIT_POLICY_FILE is not set and no policy set was given")
        policy_set = load_policy_config(settings.RATE_LIMIT_POLICY_FILE, settings.RATE_LIMIT_DEFAULT_FALLBACK)

    owns_store = redis_client is None
    if redis_client is None:
        redis_client = create_redis_client(settings)

    store = RedisCounterStore(
        redis_client,
        max_attempts=settings.RATE_LIMIT_CAS_ATTEMPTS,
        backoff_base=settings.RATE_LIMIT_CAS_BACKOFF_BASE,
        backoff_max=settings.RATE_LIMIT_CAS_BACKOFF_MAX,
    )
    breaker = CircuitBreaker(
        failure_threshold=settings.RATE_LIMIT_BREAKER_FAILURE_THRESHOLD,
        reset_timeout=settings.RATE_LIMIT_BREAKER_RESET_TIMEOUT,
        failure_window=settings.RATE_LIMIT_BREAKER_FAILURE_WINDOW,
        name="counter_store",
    )
    controller = AdmissionController(
        policy_service=RateLimitPolicyService(policy_set, cache_ttl_seconds=settings.RATE_LIMIT_POLICY_CACHE_TTL),
        store=store,
        breaker=breaker,
        fallback=FallbackHandler(InMemoryCounterStore()),
        key_prefix=settings.RATE_LIMIT_KEY_PREFIX,
        enabled=settings.RATE_LIMIT_ENABLED,
    )
    logger.info(
        "admission_controller_ready",
        policies=sorted(policy_set.policies),
        enabled=settings.RATE_LIMIT_ENABLED,
    )
    return RateLimitingContainer(controller, owns_store)
