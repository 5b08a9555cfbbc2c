import time
import logging
from collections import OrderedDict

logger = logging.getLogger("Cache")


class TTLCache:
    """
    Single-value cache owning {value, fetched_at, ttl}.
    On refresh failure the last good value is served; with nothing cached the error propagates.
    """

    def __init__(self, ttl, name="cache", clock=time.monotonic):
        self.ttl = ttl
        self.name = name
        self.value = None
        self.fetched_at = None
        self._clock = clock

    def is_fresh(self):
        return self.fetched_at is not None and (self._clock() - self.fetched_at) < self.ttl

    def invalidate(self):
        self.fetched_at = None

    async def get_or_refresh(self, fetch):
        if self.is_fresh():
            return self.value
        try:
            value = await fetch()
        except Exception as e:
            if self.fetched_at is None:
                raise
            logger.warning(f"⚠️ {self.name} refresh failed, serving stale snapshot: {e}")
            return self.value
        self.value = value
        self.fetched_at = self._clock()
        return value


class KeyedTTLCache:
    """Per-key TTL entries, capped; the oldest `evict_batch` entries go once the cap is hit."""

    def __init__(self, ttl, max_entries=1000, evict_batch=100, clock=time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self.evict_batch = evict_batch
        self._entries = OrderedDict()
        self._clock = clock

    def __len__(self):
        return len(self._entries)

    def get(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return None
        return value

    def put(self, key, value):
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.max_entries:
            for _ in range(min(self.evict_batch, len(self._entries))):
                self._entries.popitem(last=False)
        self._entries[key] = (value, self._clock())

    async def get_or_refresh(self, key, fetch):
        value = self.get(key)
        if value is not None:
            return value
        value = await fetch()
        self.put(key, value)
        return value
