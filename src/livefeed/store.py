"""
Live Record Store

Thread-safe mapping from canonical key to the current MergedRecord, with
age-based eviction. The store is the only owner of its records: readers
always receive copies.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .errors import NoDataLoaded
from .locking import ReadWriteLock
from .models import MergedRecord

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LiveRecordStore:
    """In-memory store of merged records keyed by canonical key."""

    def __init__(self, name: str = "live_records", clock: Callable[[], datetime] = utcnow):
        self.name = name
        self._clock = clock
        self._lock = ReadWriteLock()
        self._records: Dict[str, MergedRecord] = {}
        self._by_source: Dict[str, str] = {}
        self._loaded = False
        self._last_update: Optional[datetime] = None

    def upsert(self, record: MergedRecord, supersedes: Optional[str] = None) -> MergedRecord:
        """
        Insert a record or update the existing one for its canonical key.

        An un-enriched record (keyed by its source key) whose source key is
        already tracked under a directory canonical key updates that entry
        instead, so an entity whose enrichment lapsed is never served twice.

        Args:
            record: Freshly merged record; only its canonical identity is kept
                when an entry already exists.
            supersedes: Key of a provisional entry (typically the un-enriched
                source key) to drop in the same critical section.

        Returns:
            A copy of the stored record.
        """
        with self._lock.write_locked():
            now = self._clock()
            key = record.canonical_key

            if supersedes and supersedes != key:
                if self._drop(supersedes) is not None:
                    logger.debug(f"[{self.name}] {supersedes} superseded by {key}")

            if record.enrichment is None:
                known = self._by_source.get(record.source_key)
                if known is not None and known != key and known in self._records:
                    logger.debug(f"[{self.name}] {record.source_key} resolved to tracked {known}")
                    key = known

            existing = self._records.get(key)
            if existing is None:
                stored = record.copy()
                stored.last_seen_at = now
                stored.distance = None
                self._records[key] = stored
            else:
                if existing.source_key != record.source_key and self._by_source.get(existing.source_key) == key:
                    del self._by_source[existing.source_key]
                existing.payload = record.payload
                existing.observed_at = record.observed_at
                existing.source_key = record.source_key
                existing.stop_or_line_key = record.stop_or_line_key
                if record.enrichment is not None:
                    existing.enrichment = record.enrichment
                if existing.last_seen_at is None or now > existing.last_seen_at:
                    existing.last_seen_at = now
                stored = existing

            self._by_source[record.source_key] = key
            self._loaded = True
            self._last_update = now
            return stored.copy()

    def _drop(self, key: str) -> Optional[MergedRecord]:
        # Caller holds the write lock.
        record = self._records.pop(key, None)
        if record is not None and self._by_source.get(record.source_key) == key:
            del self._by_source[record.source_key]
        return record

    def evict_older_than(self, max_age: timedelta) -> int:
        """Remove every record last seen before ``now - max_age``."""
        with self._lock.write_locked():
            threshold = self._clock() - max_age
            stale = [
                key for key, record in self._records.items()
                if record.last_seen_at is None or record.last_seen_at < threshold
            ]
            for key in stale:
                self._drop(key)
            remaining = len(self._records)

        logger.info(f"[{self.name}] Evicted {len(stale)} records older than {max_age}, {remaining} remaining")
        return len(stale)

    def query(self, record_filter=None) -> List[MergedRecord]:
        """
        Return copies of the records matching ``record_filter``.

        Raises:
            NoDataLoaded: the store has never been populated.
        """
        with self._lock.read_locked():
            if not self._loaded:
                raise NoDataLoaded(f"no {self.name} in the data")
            snapshot = [record.copy() for record in self._records.values()]

        if record_filter is None:
            return snapshot

        results = []
        for record in snapshot:
            selected = record_filter.apply(record)
            if selected is not None:
                results.append(selected)
        return results

    def clear(self) -> int:
        with self._lock.write_locked():
            count = len(self._records)
            self._records.clear()
            self._by_source.clear()
        logger.info(f"[{self.name}] Cleared {count} records")
        return count

    def mark_loaded(self):
        """Flag the store as loaded even if the last cycle merged nothing."""
        with self._lock.write_locked():
            self._loaded = True

    def get(self, canonical_key: str) -> Optional[MergedRecord]:
        with self._lock.read_locked():
            record = self._records.get(canonical_key)
            return record.copy() if record is not None else None

    @property
    def last_update(self) -> Optional[datetime]:
        with self._lock.read_locked():
            return self._last_update

    @property
    def is_loaded(self) -> bool:
        with self._lock.read_locked():
            return self._loaded

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._records)

    def __contains__(self, canonical_key: str) -> bool:
        with self._lock.read_locked():
            return canonical_key in self._records
