"""Short-lived registry of freshly written local image URIs.

A file saved locally is not visible to the orphan sweep through the job
store until its upload is enqueued. Tracking it here for a short TTL covers
that gap. In-memory only; a restart clears it.
"""

import time
from typing import Callable, Dict, Optional, Set

RECENT_URI_TTL_MS = 60_000


def _now_ms() -> int:
    return int(time.time() * 1000)


class RecentUriGuard:
    def __init__(self, ttl_ms: int = RECENT_URI_TTL_MS, clock: Optional[Callable[[], int]] = None):
        self._ttl_ms = ttl_ms
        self._clock = clock or _now_ms
        self._entries: Dict[str, int] = {}

    def track(self, uri: str) -> None:
        """Record ``uri`` as created now and prune anything past the TTL."""
        now = self._clock()
        self._entries[uri] = now
        self._prune(now - self._ttl_ms)

    def snapshot(self) -> Set[str]:
        """URIs still inside the TTL window. Expired entries are dropped."""
        cutoff = self._clock() - self._ttl_ms
        self._prune(cutoff)
        return set(self._entries)

    def _prune(self, cutoff: int) -> None:
        for uri, created_at in list(self._entries.items()):
            if created_at < cutoff:
                del self._entries[uri]

    def __len__(self) -> int:
        return len(self._entries)
