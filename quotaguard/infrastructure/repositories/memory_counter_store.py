"""
In-process counter store.

Thread-safe implementation of `CounterStore` for single-process deployments,
tests, and the local-approximation fallback used while the shared store is
down. Atomicity comes from lock striping: every key hashes to one of a fixed
set of locks, so two threads touching the same key are serialized while
unrelated keys mostly proceed in parallel.
"""

import copy
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from quotaguard.domain.rate_limiting.repositories import CounterStore, StateTransform
from quotaguard.core.logging import logger


class InMemoryCounterStore(CounterStore):
    """Counter store keeping state in a process-local dictionary."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        stripes: int = 64,
        max_keys: int = 100_000,
    ):
        """
        Args:
            clock: Time source used for key expiry.
            stripes: Number of locks keys are spread over.
            max_keys: Size at which expired keys are swept on write.
        """
        self._clock = clock
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._data: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._max_keys = max_keys

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def _read(self, key: str, now: float) -> Optional[Dict[str, Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        state, expires_at = entry
        if expires_at <= now:
            self._data.pop(key, None)
            return None
        # Transforms must not be able to mutate the stored copy.
        return copy.deepcopy(state)

    def atomic_apply(self, key: str, transform: StateTransform, ttl_seconds: int):
        with self._lock_for(key):
            now = self._clock()
            new_state, result = transform(self._read(key, now))
            if new_state is not None:
                self._data[key] = (new_state, now + ttl_seconds)
        if new_state is not None and len(self._data) > self._max_keys:
            self.sweep()
        return result

    def sweep(self) -> int:
        """Drop expired keys. Returns the number of keys removed."""
        now = self._clock()
        removed = 0
        for key in list(self._data):
            with self._lock_for(key):
                entry = self._data.get(key)
                if entry is not None and entry[1] <= now:
                    del self._data[key]
                    removed += 1
        if removed:
            logger.debug("memory_store_swept", removed=removed)
        return removed

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the live state of a key, for inspection."""
        with self._lock_for(key):
            return self._read(key, self._clock())

    def reset(self, key: str) -> bool:
        with self._lock_for(key):
            return self._data.pop(key, None) is not None

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "backend": "memory",
            "keys": len(self._data),
            "timestamp": datetime.now().isoformat(),
        }

    def __len__(self) -> int:
        return len(self._data)
