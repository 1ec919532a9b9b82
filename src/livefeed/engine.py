"""
Live-Feed Engine

Facade tying one feed's store, correlation cache and refresh loop together,
and the factory building it from configuration.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.data.directory.directory_client import DirectoryClient
from src.data.feed.feed_client import FeedClient
from src.data.feed.gtfs_rt_decoder import GtfsRtDecoder
from src.data.feed.vendor_json_decoder import VendorJsonDecoder

from .correlation import CorrelationCache
from .errors import ConfigurationError
from .filters import RecordFilter
from .metrics import MetricsCollector
from .models import MergedRecord
from .refresh import CycleReport, RefreshLoop
from .store import LiveRecordStore, utcnow

logger = logging.getLogger(__name__)

CONNECTORS = {
    "gtfsrt": GtfsRtDecoder,
    "json": VendorJsonDecoder,
}


class LiveFeedEngine:
    """Query and control surface of one live feed."""

    def __init__(self, name: str, connector: str, store: LiveRecordStore,
                 cache: CorrelationCache, loop: RefreshLoop, metrics: MetricsCollector):
        self.name = name
        self.connector = connector
        self.store = store
        self.cache = cache
        self.loop = loop
        self.metrics = metrics

    def get_current(self, record_filter: Optional[RecordFilter] = None) -> List[MergedRecord]:
        """
        Current records matching ``record_filter``.

        Raises:
            NoDataLoaded: no refresh cycle has populated the store yet.
        """
        return self.store.query(record_filter)

    def force_status(self, enabled: bool):
        self.loop.set_enabled(enabled)

    def get_last_update_timestamp(self) -> Optional[datetime]:
        return self.store.last_update

    def get_refresh_interval(self) -> timedelta:
        return self.loop.refresh_interval

    @property
    def location(self):
        return self.loop.location

    def status(self) -> dict:
        last_update = self.get_last_update_timestamp()
        last_status_update = self.loop.last_status_update
        return {
            "connector": self.connector,
            "status": self.loop.status,
            "active": self.loop.enabled,
            "refresh_interval": int(self.get_refresh_interval().total_seconds()),
            "last_update": last_update.isoformat() if last_update else None,
            "last_status_update": last_status_update.isoformat() if last_status_update else None,
            "records": len(self.store),
            "cached_enrichments": len(self.cache),
            "directory_token": self.cache.token,
        }

    def start(self):
        self.loop.start()

    def stop(self, timeout: Optional[float] = None):
        self.loop.stop(timeout)

    def run_once(self) -> CycleReport:
        """Run a single refresh cycle in the calling thread."""
        return self.loop.run_cycle()


def load_location(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown time zone {name!r}") from e


def build_engine(name: str, feed_config, directory_config=None,
                 metrics: Optional[MetricsCollector] = None, transport: Optional[FeedClient] = None,
                 clock: Callable[[], datetime] = utcnow) -> LiveFeedEngine:
    """
    Build a LiveFeedEngine from a FeedConfig.

    Args:
        name: Feed name, used for logging, metrics and the HTTP route
        feed_config: FeedConfig of the feed
        directory_config: DirectoryConfig; enrichment is enabled when it has a URL
        metrics: Shared collector (a private one is created if omitted)
        transport: Feed transport shared by the feed and the directory

    Raises:
        ConfigurationError: unknown connector type, payload kind or time zone
    """
    decoder_class = CONNECTORS.get(feed_config.connector_type)
    if decoder_class is None:
        raise ConfigurationError("Wrong connector type passed")

    decoder = decoder_class(feed_config.payload_kind)
    location = load_location(feed_config.timezone_location)
    transport = transport or FeedClient()
    metrics = metrics or MetricsCollector()

    enrichment_client = None
    if directory_config is not None and directory_config.enabled:
        enrichment_client = DirectoryClient(
            directory_config.base_url,
            directory_config.token,
            transport=transport,
            timeout=feed_config.connection_timeout.total_seconds(),
            clock=clock,
        )

    store = LiveRecordStore(name, clock=clock)
    cache = CorrelationCache(store, clock=clock)
    loop = RefreshLoop(
        name,
        transport,
        decoder,
        feed_config.service_uri,
        store,
        cache,
        metrics,
        enrichment_client=enrichment_client,
        token=feed_config.service_token,
        last_update_uri=feed_config.last_update_uri,
        refresh_interval=feed_config.refresh,
        startup_delay=feed_config.startup_delay,
        max_age=feed_config.clean_max_age,
        enrichment_max_age=feed_config.clean_enrichment_max_age,
        connection_timeout=feed_config.connection_timeout,
        location=location,
        enabled=feed_config.refresh_active,
        clock=clock,
    )

    logger.info(
        f"[{name}] Engine configured: connector={feed_config.connector_type}, "
        f"enrichment={'on' if enrichment_client else 'off'}, active={feed_config.refresh_active}"
    )
    return LiveFeedEngine(name, feed_config.connector_type, store, cache, loop, metrics)
