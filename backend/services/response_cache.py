"""In-process TTL cache for ledger read responses.

Read endpoints cache their serialized results per owner; a confirmed
statement import clears the whole cache so subsequent reads see the
written lots.
"""

import logging
import threading
import time
from typing import Any

from config import settings

logger = logging.getLogger(__name__)


class ResponseCache:
    """Thread-safe key/value cache whose entries expire after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float, maxsize: int = 256):
        self.ttl = ttl_seconds
        self.maxsize = maxsize
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Any | None:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug("Cache miss: %s", key)
                return None
            stored_at, value = entry
            if now - stored_at >= self.ttl:
                del self._entries[key]
                logger.debug("Cache expired: %s", key)
                return None
            logger.debug("Cache hit: %s", key)
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (time.monotonic(), value)
            if len(self._entries) > self.maxsize:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]

    def clear(self, key: str | None = None) -> None:
        """Drop one entry, or every entry when ``key`` is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


response_cache = ResponseCache(ttl_seconds=settings.RESPONSE_CACHE_TTL_SECONDS)


def clear_cache(key: str | None = None) -> None:
    """Invalidate the shared response cache."""
    response_cache.clear(key)
    logger.debug("Cleared response cache%s", f" entry {key}" if key else "")
