"""
In-memory cache of classifier output keyed by image key.
Entries expire after a TTL; the oldest entries are evicted past max_entries.
Owned by one orchestrator instance, not shared module state.
"""
from datetime import datetime, timedelta
from typing import Callable, Optional

from models.image_insight import ImageInsight

DEFAULT_TTL_SECONDS = 900
DEFAULT_MAX_ENTRIES = 5000


class InsightCache:
    """TTL cache so re-classifying an image within its lifetime is free."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._now = now
        self._entries: dict[str, tuple[datetime, ImageInsight]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[ImageInsight]:
        """Cached insight, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, insight = entry
        if self._now() > expires_at:
            del self._entries[key]
            return None
        return insight

    def put(self, insight: ImageInsight) -> None:
        self._entries.pop(insight.key, None)
        self._entries[insight.key] = (self._now() + self.ttl, insight)
        self._cleanup()

    def split(self, keys: list[str]) -> tuple[dict[str, ImageInsight], list[str]]:
        """Partition keys into (cached insights, keys still to classify)."""
        hits: dict[str, ImageInsight] = {}
        misses: list[str] = []
        for key in keys:
            insight = self.get(key)
            if insight is None:
                misses.append(key)
            else:
                hits[key] = insight
        return hits, misses

    def clear(self) -> None:
        self._entries.clear()

    def _cleanup(self) -> None:
        """Drop expired entries, then the oldest ones over the size bound."""
        now = self._now()
        expired = [k for k, (exp, _) in self._entries.items() if now > exp]
        for k in expired:
            del self._entries[k]
        # dicts keep insertion order and put() re-inserts, so the head is oldest
        while len(self._entries) > self.max_entries:
            del self._entries[next(iter(self._entries))]
