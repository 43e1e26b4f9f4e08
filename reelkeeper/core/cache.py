# Copyright (c) 2025 Trae AI. All rights reserved.

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """
    Thread-safe in-memory cache for provider responses.
    Entries expire `ttl` seconds after they were stored.
    """

    def __init__(self, ttl: float = 86400, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expiry = entry
            if self._clock() < expiry:
                logger.debug(f"Cache hit: {key}")
                return value
            del self._entries[key]
            logger.debug(f"Cache expired: {key}")
            return None

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None):
        with self._lock:
            self._entries[key] = (value, self._clock() + (self.ttl if ttl is None else ttl))

    def clear(self):
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expiry) in self._entries.items() if now >= expiry]
            for key in expired:
                del self._entries[key]
            if expired:
                logger.info(f"Cache cleanup: removed {len(expired)} expired entries")
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
