"""
Live-Feed Synchronization Cache

Keeps an in-memory, queryable view of a periodically refreshed real-time
transit feed, optionally enriched through a static-data directory.

Entry Point:
    python -m src.livefeed --feeds vehicle_positions --activate

Components:
    - models: FeedRecord, payload variants, EnrichmentRecord, MergedRecord
    - store: Live record store with age-based eviction
    - correlation: Source code to directory enrichment cache
    - filters: Query strategies and HTTP argument parsing
    - refresh: Background refresh loop
    - engine: Per-feed facade and connector factory (import from .engine)
    - orchestrator: CLI entry point
"""

from .errors import ConfigurationError, DecodeError, LiveFeedError, NoDataLoaded, TransportError
from .filters import ProximityFilter, RecordFilter, StopFilter, parse_request_filter
from .models import (
    EnrichmentRecord, FeedRecord, MergedRecord, OccupancyPayload, PositionPayload, StatusPayload
)
from .store import LiveRecordStore

__all__ = [
    'ConfigurationError', 'DecodeError', 'LiveFeedError', 'NoDataLoaded', 'TransportError',
    'ProximityFilter', 'RecordFilter', 'StopFilter', 'parse_request_filter',
    'EnrichmentRecord', 'FeedRecord', 'MergedRecord', 'OccupancyPayload', 'PositionPayload',
    'StatusPayload', 'LiveRecordStore',
]
