"""Time-bound cache for remote query results.

The clock is injected so that expiry can be tested without sleeping.
"""
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """A thread-safe mapping whose entries expire ``ttl`` seconds after being set.

    Args:
        ttl: Lifetime of an entry in seconds.
        clock: Callable returning the current time in seconds. Defaults to :func:`time.monotonic`.
    """

    def __init__(self, ttl: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl <= 0:
            raise ValueError(f'ttl must be positive, got {ttl}')
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable, default: Optional[Any] = None) -> Any:
        """Return the cached value, or ``default`` if missing or expired."""
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return default
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._data[key]
                return default
            return value

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._data[key] = (self._clock() + self.ttl, value)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for expires_at, _ in self._data.values() if now < expires_at)


_MISSING = object()
