"""Small in-memory TTL cache for aggregate queries.

Entries are keyed by caller-supplied hashables (typically ``(tenant_id, name)``)
so one tenant's cached figures are never served to another.
"""

import time
from collections.abc import Hashable
from typing import Any

DEFAULT_TTL = 30.0


class TTLCache:
    def __init__(self, ttl: float = DEFAULT_TTL) -> None:
        self.ttl = ttl
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return value

    def put(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (time.monotonic(), value)

    def invalidate_prefix(self, prefix: Hashable) -> None:
        """Drop every tuple key whose first element is ``prefix``."""
        for key in [k for k in self._entries if isinstance(k, tuple) and k[:1] == (prefix,)]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()


usage_cache = TTLCache()
