"""
Small in-process TTL cache shared by the user context and analytics services.
"""

import time
from typing import Any, Dict, Optional, Tuple


class TTLCache:
    """Dict of key -> (expires_at, value). Expired entries are dropped on read."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[float, Any]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (time.monotonic() + self.ttl_seconds, value)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def delete_matching(self, substring: str) -> int:
        """Delete every key containing substring."""
        keys = [k for k in self._entries if substring in k]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def cleanup_expired(self) -> int:
        now = time.monotonic()
        expired = [k for k, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
