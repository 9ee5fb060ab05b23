"""
Rate Limiting Domain Repositories

Repository interface for the shared counter store. The domain depends on this
abstraction only; concrete clients (Redis, in-process memory) live in the
infrastructure layer.

The store knows nothing about rate limiting. It offers one primitive,
`atomic_apply`, which runs a caller-supplied pure transform over the stored
state of a key as one indivisible read-modify-write, and refreshes the key's
expiry on every write so abandoned keys clean themselves up.

The admission controller passes an `AlgorithmStep` as the transform. A store
may evaluate such a step next to the data instead of calling it, as long as
the outcome is the one calling it would produce.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

R = TypeVar("R")

# transform(current_state) -> (state_to_write or None, result)
StateTransform = Callable[[Optional[Dict[str, Any]]], Tuple[Optional[Dict[str, Any]], R]]


class CounterStore(ABC):
    """
    Repository interface for per-key counter state.

    Implementations must guarantee that, for a given key, the read, the
    transform and the write happen atomically relative to every other client
    touching that key, so no two callers act on the same pre-state.
    """

    @abstractmethod
    def atomic_apply(self, key: str, transform: StateTransform, ttl_seconds: int) -> R:
        """
        Atomically apply `transform` to the state stored under `key`.

        Args:
            key: Store key of the counter.
            transform: Pure function receiving the current state (None when
                absent or expired) and returning the state to write (None to
                leave the key untouched) and a result passed back to the caller.
            ttl_seconds: Expiry set on the key whenever state is written.

        Returns:
            The result produced by `transform` for the committed state.

        Raises:
            StoreUnavailableError: When the store cannot be reached in time.
            StoreContentionError: When concurrent writers exhausted the retry budget.
        """

    @abstractmethod
    def reset(self, key: str) -> bool:
        """
        Delete the state of a key (operator action).

        Returns:
            True if a key was removed, False if there was nothing to remove.
        """

    @abstractmethod
    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the store.

        Returns:
            Health status information including latency and errors.
        """

    def close(self) -> None:
        """Release connections owned by the store."""
