"""
Redis-backed shared counter store.

Algorithm steps run server side: every supported algorithm has a Lua twin
(see `lua_scripts`), registered with `register_script` and executed as one
EVALSHA. Redis runs a script to completion before serving any other client,
so concurrent callers on a hot key are serialized by the server and no
attempt is ever lost to contention.

Any other transform falls back to an optimistic compare-and-swap:

    WATCH key -> GET key -> transform -> MULTI / SET key EX ttl / EXEC

If another client writes the key between WATCH and EXEC, Redis aborts the
transaction with a `WatchError` and the read-transform-write is retried with
jittered exponential backoff, then fails with `StoreContentionError`.
Transport failures (connection refused, socket timeout) fail immediately with
`StoreUnavailableError` on both paths; the circuit breaker upstream decides
what happens next.
"""

import json
from datetime import datetime
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError, WatchError
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from quotaguard.core.exceptions import StoreContentionError, StoreUnavailableError
from quotaguard.core.logging import logger
from quotaguard.domain.rate_limiting.algorithms import AlgorithmDecision, AlgorithmStep
from quotaguard.domain.rate_limiting.repositories import CounterStore, StateTransform

from .lua_scripts import SCRIPTS


class RedisCounterStore(CounterStore):
    """
    A concrete implementation of CounterStore using Redis for persistence.
    State is stored as a compact JSON document per key, written either by a
    Lua algorithm step or by the compare-and-swap path.
    """

    def __init__(
        self,
        redis_client: Redis,
        max_attempts: int = 3,
        backoff_base: float = 0.005,
        backoff_max: float = 0.05,
    ):
        """
        Initialize the Redis-based counter store.

        Args:
            redis_client (Redis): The synchronous Redis client instance.
            max_attempts (int): Compare-and-swap attempts before giving up (script-less transforms only).
            backoff_base (float): Multiplier of the jittered exponential backoff, seconds.
            backoff_max (float): Upper bound of a single backoff sleep, seconds.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.redis = redis_client
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._scripts = {algorithm: redis_client.register_script(source) for algorithm, source in SCRIPTS.items()}

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(WatchError),
            reraise=False,
        )

    @staticmethod
    def _decode(raw: Any) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            state = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("counter_state_unreadable")
            return None
        return state if isinstance(state, dict) else None

    def _apply_once(self, key: str, transform: StateTransform, ttl_seconds: int):
        with self.redis.pipeline() as pipe:
            pipe.watch(key)
            current = self._decode(pipe.get(key))
            new_state, result = transform(current)
            if new_state is None:
                return result
            pipe.multi()
            pipe.set(key, json.dumps(new_state, separators=(",", ":")), ex=ttl_seconds)
            pipe.execute()
            return result

    @staticmethod
    def _text(value: Any) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def _run_script(self, key: str, step: AlgorithmStep, ttl_seconds: int) -> AlgorithmDecision:
        script = self._scripts[step.algorithm.algorithm]
        try:
            reply = script(keys=[key], args=[step.now, step.cost, ttl_seconds, *step.algorithm.parameters])
        except RedisError as e:
            logger.error("store_unavailable", key=key, error=str(e))
            raise StoreUnavailableError(f"Redis call failed: {e.__class__.__name__}") from e

        allowed, remaining, limit, reset_at, retry_after = (self._text(value) for value in reply)
        return AlgorithmDecision(
            allowed=allowed == "1",
            remaining=int(float(remaining)),
            limit=int(float(limit)),
            reset_at=float(reset_at),
            retry_after=float(retry_after) if retry_after else None,
        )

    def atomic_apply(self, key: str, transform: StateTransform, ttl_seconds: int):
        if isinstance(transform, AlgorithmStep) and transform.algorithm.algorithm in self._scripts:
            return self._run_script(key, transform, ttl_seconds)
        try:
            for attempt in self._retrying():
                with attempt:
                    result = self._apply_once(key, transform, ttl_seconds)
        except RetryError as e:
            logger.warning("store_contention", key=key, attempts=self.max_attempts)
            raise StoreContentionError(key, self.max_attempts) from e
        except RedisError as e:
            logger.error("store_unavailable", key=key, error=str(e))
            raise StoreUnavailableError(f"Redis call failed: {e.__class__.__name__}") from e
        return result

    def reset(self, key: str) -> bool:
        try:
            return bool(self.redis.delete(key))
        except RedisError as e:
            raise StoreUnavailableError(f"Redis call failed: {e.__class__.__name__}") from e

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the Redis connection.
        """
        try:
            start_time = datetime.now()
            self.redis.ping()
            latency = (datetime.now() - start_time).total_seconds() * 1000

            return {
                'status': 'healthy',
                'backend': 'redis',
                'latency_ms': latency,
                'connection': 'ok',
                'timestamp': datetime.now().isoformat()
            }
        except RedisError as e:
            return {
                'status': 'unhealthy',
                'backend': 'redis',
                'error': str(e),
                'connection': 'failed',
                'timestamp': datetime.now().isoformat()
            }

    def close(self) -> None:
        self.redis.close()
