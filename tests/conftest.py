"""
Shared fixtures for the live-feed tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
from google.transit import gtfs_realtime_pb2

from src.livefeed.correlation import CorrelationCache
from src.livefeed.models import EnrichmentRecord, FeedRecord, MergedRecord, PositionPayload
from src.livefeed.store import LiveRecordStore

T0 = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


def make_merged(key, lat=48.85, lon=2.35, observed_at=T0, source_key=None, **kwargs):
    return MergedRecord(
        canonical_key=key,
        source_key=source_key or key,
        payload=PositionPayload(latitude=lat, longitude=lon),
        observed_at=observed_at,
        **kwargs
    )


def make_feed_record(key, lat=48.85, lon=2.35, observed_at=T0, **kwargs):
    return FeedRecord(
        source_key=key,
        observed_at=observed_at,
        payload=PositionPayload(latitude=lat, longitude=lon),
        **kwargs
    )


def make_enrichment(canonical_key, natural_key, stops=(), created_at=T0):
    return EnrichmentRecord(
        canonical_key=canonical_key,
        natural_key=natural_key,
        associated_stops=tuple(stops),
        created_at=created_at,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return LiveRecordStore("vehicle_positions", clock=clock)


@pytest.fixture
def cache(store, clock):
    return CorrelationCache(store, clock=clock)


def gtfs_rt_feed(*vehicles, timestamp=1714550400):
    """Serialized FeedMessage with one vehicle entity per (trip_id, lat, lon)."""
    message = gtfs_realtime_pb2.FeedMessage()
    message.header.gtfs_realtime_version = "2.0"
    message.header.timestamp = timestamp
    for trip_id, lat, lon in vehicles:
        entity = message.entity.add()
        entity.id = trip_id
        entity.vehicle.trip.trip_id = trip_id
        entity.vehicle.position.latitude = lat
        entity.vehicle.position.longitude = lon
    return message.SerializeToString()
