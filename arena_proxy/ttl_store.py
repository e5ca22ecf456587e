# arena_proxy/ttl_store.py
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLStore:
    """Key-value store where every entry carries its own expiry.

    Expiry is checked lazily: an entry is dropped on the first read after
    ``now > expires_at``. Nothing runs in the background, so the store only
    grows with the number of distinct keys written.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the store.

        Args:
            clock: Zero-arg callable returning the current time in seconds.
                Injected so tests can drive expiry deterministically.
        """
        self._clock = clock
        self._store: Dict[Hashable, Tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the value if still fresh; otherwise evict and return None."""
        item = self._store.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() > expires_at:
            self._store.pop(key, None)
            return None
        return value

    def set(self, key: Hashable, value: Any, ttl: float) -> float:
        """Insert or overwrite an entry; return its absolute expiry time."""
        expires_at = self._clock() + max(0.0, ttl)
        self._store[key] = (expires_at, value)
        return expires_at

    def expires_at(self, key: Hashable) -> Optional[float]:
        item = self._store.get(key)
        return item[0] if item else None

    def delete(self, key: Hashable) -> None:
        self._store.pop(key, None)

    def invalidate_all(self) -> None:
        """Clear every entry."""
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> Dict[str, int]:
        """Return simple stats for observability."""
        return {"size": len(self._store)}
