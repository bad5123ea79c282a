"""
Short-lived discovery result cache.

Repeated scans of the same range within the TTL reuse the last successful
result instead of probing again. Failed hosts are never cached, and a host
that fails a fresh probe loses its earlier entry, so a fixed credential or a
retired iDRAC takes effect on the next run.
"""

import logging
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from idrac_discovery.config import DISCOVERY_CACHE_TTL_SECONDS
from idrac_discovery.models import HostDiscoveryResult

logger = logging.getLogger(__name__)


class DiscoveryCache:
    def __init__(self, ttl_seconds: float = DISCOVERY_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, HostDiscoveryResult]] = {}
        self._lock = threading.Lock()

    def get(self, address: str) -> Optional[HostDiscoveryResult]:
        """Cached result for an address, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(address)
            if entry is None:
                return None
            expires_at, result = entry
            if self._clock() >= expires_at:
                del self._entries[address]
                return None
            return result.model_copy(deep=True)

    def put(self, result: HostDiscoveryResult) -> None:
        with self._lock:
            self._entries[result.address] = (self._clock() + self.ttl_seconds, result.model_copy(deep=True))

    def invalidate(self, address: str) -> None:
        with self._lock:
            self._entries.pop(address, None)

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [address for address, (expires_at, _) in self._entries.items() if now >= expires_at]
            for address in expired:
                del self._entries[address]
        if expired:
            logger.debug(f"Purged {len(expired)} expired discovery cache entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
