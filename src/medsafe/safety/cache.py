"""Time-to-live cache of interaction verdicts keyed by unordered name pairs."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from medsafe.models import CacheEntry, InteractionVerdict, normalized_pair, utcnow

logger = logging.getLogger(__name__)


def pair_key(name_a: str, name_b: str) -> tuple[str, str]:
    """Cache key for a medication pair; (A, B) and (B, A) give the same key."""
    return normalized_pair(name_a, name_b)


class InteractionCache:
    """In-process verdict cache.

    Keys are independent, so concurrent checks for different pairs need no
    coordination. Two writes to the same key resolve last-writer-wins, except
    that an entry is never replaced by one that expires earlier.
    """

    def __init__(
        self,
        ttl_seconds: float = 24 * 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name_a: str, name_b: str) -> Optional[InteractionVerdict]:
        """Cached verdict for the pair, or None on a miss or expiry."""
        key = pair_key(name_a, name_b)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            # Only drop the entry we looked at; a fresher one may have landed.
            if self._entries.get(key) is entry:
                del self._entries[key]
            return None
        return entry.verdict

    def put(self, name_a: str, name_b: str, verdict: InteractionVerdict) -> CacheEntry:
        """Store a verdict from a successful lookup."""
        key = pair_key(name_a, name_b)
        entry = CacheEntry(key=key, verdict=verdict, expires_at=self._clock() + self.ttl)
        current = self._entries.get(key)
        if current is not None and current.expires_at > entry.expires_at:
            return current
        self._entries[key] = entry
        return entry

    def invalidate(self, name_a: str, name_b: str) -> None:
        self._entries.pop(pair_key(name_a, name_b), None)

    def purge_expired(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged %d expired interaction cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
