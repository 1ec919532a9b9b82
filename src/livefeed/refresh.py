"""
Refresh Loop

One background worker per feed. Each cycle pulls the feed, resolves every
record through the correlation cache (asking the directory on a miss),
merges the result into the live record store and periodically evicts stale
entries. Every failure is scoped to one record or one cycle; the loop only
stops on shutdown.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional

from .correlation import CorrelationCache
from .errors import DecodeError, TransportError
from .metrics import LOADING_ERRORS, RECORD_COUNT, REFRESH_DURATION, MetricsCollector
from .models import FeedRecord, MergedRecord
from .store import LiveRecordStore, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Outcome of a single refresh cycle."""

    ran: bool = False
    decoded: int = 0
    merged: int = 0
    skipped_no_fix: int = 0
    not_found: int = 0
    enrichment_failures: int = 0
    invalidated: bool = False
    evicted: int = 0
    error: Optional[str] = None
    duration: float = 0.0


class RefreshLoop:
    """Background worker keeping a LiveRecordStore in sync with one feed."""

    def __init__(
        self,
        name: str,
        transport,
        decoder,
        feed_uri: str,
        store: LiveRecordStore,
        cache: CorrelationCache,
        metrics: MetricsCollector,
        enrichment_client=None,
        token: str = "",
        last_update_uri: str = "",
        refresh_interval: timedelta = timedelta(minutes=5),
        startup_delay: timedelta = timedelta(seconds=10),
        max_age: timedelta = timedelta(hours=2),
        enrichment_max_age: timedelta = timedelta(hours=24),
        connection_timeout: timedelta = timedelta(seconds=10),
        location: tzinfo = timezone.utc,
        enabled: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.transport = transport
        self.decoder = decoder
        self.feed_uri = feed_uri
        self.token = token
        self.last_update_uri = last_update_uri
        self.store = store
        self.cache = cache
        self.metrics = metrics
        self.enrichment_client = enrichment_client
        self.refresh_interval = refresh_interval
        self.startup_delay = startup_delay
        self.max_age = max_age
        self.enrichment_max_age = enrichment_max_age
        self.connection_timeout = connection_timeout
        self.location = location
        self._clock = clock

        self._state_lock = threading.Lock()
        self._enabled = enabled
        self._status = "not started"
        self._last_status_update: Optional[datetime] = None
        self._last_eviction: Optional[datetime] = None

        self._shutdown = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def set_enabled(self, enabled: bool):
        with self._state_lock:
            if self._enabled != enabled:
                logger.info(f"[{self.name}] Refresh {'activated' if enabled else 'deactivated'}")
            self._enabled = enabled
            self._last_status_update = self._clock()

    @property
    def enabled(self) -> bool:
        with self._state_lock:
            return self._enabled

    @property
    def status(self) -> str:
        with self._state_lock:
            return self._status

    @property
    def last_status_update(self) -> Optional[datetime]:
        with self._state_lock:
            return self._last_status_update

    def _set_status(self, status: str):
        with self._state_lock:
            self._status = status

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the background thread (no-op while a previous one is still alive)."""
        if self._thread is not None and self._thread.is_alive():
            return
        # Each worker owns its shutdown event; a straggler keeps its own signal.
        self._shutdown = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._shutdown,), name=f"refresh-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(
            f"[{self.name}] Refresh loop started (interval: {self.refresh_interval}, "
            f"startup delay: {self.startup_delay})"
        )

    def stop(self, timeout: Optional[float] = None):
        """Signal shutdown and wait for the current cycle to finish."""
        logger.info(f"[{self.name}] Refresh loop stopping")
        self._shutdown.set()
        if self._thread is None:
            return
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"[{self.name}] Refresh thread still busy after {timeout}s, it will exit after its cycle")
        else:
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self, shutdown: threading.Event):
        if shutdown.wait(self.startup_delay.total_seconds()):
            return
        while not shutdown.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"[{self.name}] Refresh cycle failed: {e}", exc_info=True)
                self.metrics.increment(LOADING_ERRORS, feed=self.name)
                self._set_status(f"error: {e}")
            if shutdown.wait(self.refresh_interval.total_seconds()):
                break
        logger.info(f"[{self.name}] Refresh loop terminated")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        """Execute one refresh cycle synchronously."""
        report = CycleReport()
        if not self.enabled:
            logger.debug(f"[{self.name}] Refresh disabled, skipping cycle")
            return report

        report.ran = True
        begin = time.perf_counter()

        if self.enrichment_client is not None:
            report.invalidated = self._check_directory()

        try:
            records = self._load_feed()
        except (TransportError, DecodeError) as e:
            self._fail_cycle(report, f"loading external source: {e}")
            return report

        if not records:
            self._fail_cycle(report, "no data to load from feed")
            return report

        report.decoded = len(records)
        for record in records:
            if record.has_no_fix():
                report.skipped_no_fix += 1
                continue
            merged = self._correlate(record, report)
            if merged is None:
                continue
            merged_record, supersedes = merged
            self.store.upsert(merged_record, supersedes=supersedes)
            report.merged += 1

        self.store.mark_loaded()
        report.evicted = self._evict_if_due()

        report.duration = time.perf_counter() - begin
        self.metrics.observe(REFRESH_DURATION, report.duration, feed=self.name)
        self.metrics.set_gauge(RECORD_COUNT, len(self.store), feed=self.name)
        self._set_status("ok")

        if report.skipped_no_fix:
            logger.info(f"[{self.name}] Skipped {report.skipped_no_fix} records without position fix")
        logger.info(
            f"[{self.name}] Refresh complete: {report.merged} merged, {report.not_found} un-enriched, "
            f"{report.enrichment_failures} enrichment failures, {report.evicted} evicted, "
            f"{len(self.store)} records ({report.duration:.2f}s)"
        )
        return report

    def _fail_cycle(self, report: CycleReport, message: str):
        report.error = message
        self.metrics.increment(LOADING_ERRORS, feed=self.name)
        self._set_status(f"error: {message}")
        logger.error(f"[{self.name}] Error while loading data: {message}")

    def _check_directory(self) -> bool:
        try:
            token = self.enrichment_client.get_freshness_token()
        except (TransportError, DecodeError) as e:
            logger.warning(f"[{self.name}] Error while loading directory publication date: {e}")
            return False

        return self.cache.invalidate_if_directory_changed(token)

    def _load_feed(self):
        timeout = self.connection_timeout.total_seconds()
        data = self.transport.fetch(self.feed_uri, self.token, timeout)
        records = self.decoder.decode(data)

        if records and any(r.observed_at is None for r in records):
            fallback = self._clock()
            if self.last_update_uri:
                try:
                    fallback = self.transport.fetch_timestamp(self.last_update_uri, self.token, timeout)
                except TransportError as e:
                    logger.warning(f"[{self.name}] Unable to read last-update marker: {e}")
            records = [
                r if r.observed_at is not None else _with_observed_at(r, fallback)
                for r in records
            ]
        return records

    def _correlate(self, record: FeedRecord, report: CycleReport):
        enrichment = None
        if self.enrichment_client is not None:
            enrichment = self.cache.lookup(record.source_key)
            if enrichment is None:
                try:
                    enrichment = self.enrichment_client.lookup_by_source_code(record.source_key)
                except (TransportError, DecodeError) as e:
                    report.enrichment_failures += 1
                    logger.debug(f"[{self.name}] Enrichment failed for {record.source_key}: {e}")
                    return None
                if enrichment is None:
                    report.not_found += 1
                else:
                    self.cache.populate(record.source_key, enrichment)

        canonical_key = enrichment.canonical_key if enrichment is not None else record.source_key
        supersedes = record.source_key if canonical_key != record.source_key else None

        merged = MergedRecord(
            canonical_key=canonical_key,
            source_key=record.source_key,
            payload=record.payload,
            observed_at=record.observed_at.astimezone(self.location),
            enrichment=enrichment,
            stop_or_line_key=record.stop_or_line_key,
        )
        return merged, supersedes

    def _evict_if_due(self) -> int:
        now = self._clock()
        if self._last_eviction is None:
            self._last_eviction = now
            return 0
        if now - self._last_eviction < self.max_age:
            return 0

        self._last_eviction = now
        evicted = self.store.evict_older_than(self.max_age)
        if self.enrichment_client is not None:
            self.cache.evict_older_than(self.enrichment_max_age)
        return evicted


def _with_observed_at(record: FeedRecord, observed_at: datetime) -> FeedRecord:
    return FeedRecord(
        source_key=record.source_key,
        observed_at=observed_at,
        payload=record.payload,
        stop_or_line_key=record.stop_or_line_key,
        vehicle_id=record.vehicle_id,
        route_id=record.route_id,
    )
