"""Short-lived, process-local cache of query results."""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Callable, Sequence

from .models import QueryResult


def fingerprint(sql: str, params: Sequence[Any] = ()) -> str:
    """Deterministic cache key for a statement and its parameters."""

    payload = json.dumps([sql, list(params)], default=_tagged)
    return hashlib.sha256(payload.encode()).hexdigest()


def _tagged(value: Any) -> dict[str, str]:
    # Non-JSON values keep their type so b"x" and "b'x'" get different keys.
    text = value.hex() if isinstance(value, (bytes, bytearray)) else str(value)
    return {"type": f"{type(value).__module__}.{type(value).__qualname__}", "value": text}


class QueryCache:
    """Maps fingerprints to results for ``ttl`` seconds.

    Writes do not invalidate entries unless the facade is configured to clear
    the cache on writes, so a read repeated within the TTL may not see a
    preceding write.
    """

    def __init__(self, ttl: float, *, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[QueryResult, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> QueryResult | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        result, stored_at = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        return result

    def set(self, key: str, result: QueryResult) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self._max_entries:
            self._prune()
        self._entries[key] = (result, self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def _prune(self) -> None:
        now = self._clock()
        expired = [key for key, (_, stored_at) in self._entries.items() if now - stored_at >= self._ttl]
        for key in expired:
            del self._entries[key]
        while len(self._entries) >= self._max_entries:
            # dicts keep insertion order: drop the oldest entry.
            del self._entries[next(iter(self._entries))]


__all__ = ["QueryCache", "fingerprint"]
