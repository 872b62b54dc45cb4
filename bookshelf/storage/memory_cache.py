from __future__ import annotations

import fnmatch
import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class MemoryCache:
    """In-process stand-in for Redis with TTLs and glob pattern deletes.

    Values are stored JSON-encoded so callers get the same copy semantics as
    with a network cache. ``clock`` is injectable for expiry tests.
    """

    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds else None

    async def get(self, key: str) -> Any:
        with self._lock:
            entry = self._live(key)
        if entry is None:
            return None
        try:
            return json.loads(entry[0])
        except (json.JSONDecodeError, TypeError):
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        encoded = json.dumps(value, default=str)
        with self._lock:
            self._entries[key] = (encoded, self._expiry(ttl_seconds))

    async def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        encoded = json.dumps(value, default=str)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (encoded, self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def delete_by_pattern(self, pattern: str) -> int:
        with self._lock:
            matched = [
                key
                for key in list(self._entries)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]
            for key in matched:
                self._entries.pop(key, None)
            return len(matched)

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def increment(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            current, expires_at = (int(entry[0]), entry[1]) if entry else (0, None)
            current += 1
            self._entries[key] = (str(current), expires_at)
            return current

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._entries[key] = (entry[0], self._expiry(ttl_seconds))
            return True

    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime in seconds, ``None`` when absent or persistent."""
        with self._lock:
            entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - self._clock()

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
