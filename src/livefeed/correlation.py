"""
Correlation Cache

Maps feed source codes to directory enrichment records so that the refresh
loop only queries the directory on a miss. The whole cache, and the live
record store attached to it, is flushed whenever the directory's freshness
token changes: stop/line associations can be revised in bulk by a static
data reload, so entries are never invalidated one by one.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .locking import ReadWriteLock
from .models import EnrichmentRecord
from .store import LiveRecordStore, utcnow

logger = logging.getLogger(__name__)


class CorrelationCache:

    def __init__(self, store: LiveRecordStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock
        self._lock = ReadWriteLock()
        self._entries: Dict[str, EnrichmentRecord] = {}
        self._token: Optional[str] = None

    def lookup(self, natural_key: str) -> Optional[EnrichmentRecord]:
        with self._lock.read_locked():
            return self._entries.get(natural_key)

    def populate(self, natural_key: str, record: EnrichmentRecord):
        with self._lock.write_locked():
            self._entries[natural_key] = record

    def invalidate_if_directory_changed(self, new_token: str) -> bool:
        """
        Reset the cache and the live store when the directory token changes.

        Args:
            new_token: Freshness token just read from the directory.

        Returns:
            True if an invalidation occurred. Repeated calls with the same
            token return False.
        """
        with self._lock.write_locked():
            if new_token == self._token:
                return False

            previous = self._token
            dropped = len(self._entries)
            self._entries.clear()
            self._token = new_token
            # Lock order is always cache then store.
            self._store.clear()

        logger.info(
            f"Directory data reloaded ({previous!r} -> {new_token!r}), "
            f"dropped {dropped} cached enrichments"
        )
        return True

    def evict_older_than(self, max_age: timedelta) -> int:
        """Drop enrichment entries created before ``now - max_age``."""
        with self._lock.write_locked():
            threshold = self._clock() - max_age
            stale = [
                key for key, record in self._entries.items()
                if record.created_at is not None and record.created_at < threshold
            ]
            for key in stale:
                del self._entries[key]

        if stale:
            logger.info(f"Evicted {len(stale)} enrichments older than {max_age}")
        return len(stale)

    def clear(self):
        with self._lock.write_locked():
            self._entries.clear()

    @property
    def token(self) -> Optional[str]:
        with self._lock.read_locked():
            return self._token

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._entries)
