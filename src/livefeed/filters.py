"""
Query filters for the live record store.

A filter is a strategy object: ``apply(record)`` returns the record (possibly
annotated) when it matches, ``None`` otherwise. ``parse_request_filter``
turns HTTP query arguments into the right strategy.
"""

import math
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import FrozenSet, Iterable, Optional

from .errors import ConfigurationError
from .models import MergedRecord, PositionPayload

EARTH_RADIUS_METERS = 6378100
DEFAULT_DISTANCE_METERS = 500
DATE_FORMATS = ("%Y%m%d", "%Y-%m-%d")


def coord_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres (haversine)."""
    la1, lo1, la2, lo2 = (math.radians(v) for v in (lat1, lon1, lat2, lon2))
    h = math.sin((la2 - la1) / 2) ** 2 + math.cos(la1) * math.cos(la2) * math.sin((lo2 - lo1) / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


@dataclass(frozen=True)
class Coord:
    lat: float
    lon: float


class RecordFilter:
    """Match by canonical key set and minimum observation time."""

    def __init__(self, canonical_keys: Iterable[str] = (), min_timestamp: Optional[datetime] = None):
        self.canonical_keys: FrozenSet[str] = frozenset(canonical_keys)
        self.min_timestamp = min_timestamp

    def matches(self, record: MergedRecord) -> bool:
        if self.canonical_keys and record.canonical_key not in self.canonical_keys:
            return False
        if self.min_timestamp is not None and record.observed_at < self.min_timestamp:
            return False
        return True

    def apply(self, record: MergedRecord) -> Optional[MergedRecord]:
        return record if self.matches(record) else None

    def __repr__(self):
        return (
            f"<{type(self).__name__}(keys={sorted(self.canonical_keys)}, "
            f"min_timestamp={self.min_timestamp})>"
        )


class ProximityFilter(RecordFilter):
    """Keep positions within ``distance`` metres of ``coord``."""

    def __init__(self, coord: Coord, distance: int = DEFAULT_DISTANCE_METERS,
                 canonical_keys: Iterable[str] = (), min_timestamp: Optional[datetime] = None):
        super().__init__(canonical_keys, min_timestamp)
        self.coord = coord
        self.distance = distance

    def apply(self, record: MergedRecord) -> Optional[MergedRecord]:
        if not self.matches(record):
            return None
        # Explicit keys take precedence over the proximity search.
        if self.canonical_keys or self.distance <= 0:
            return record
        if not isinstance(record.payload, PositionPayload):
            return None

        distance = coord_distance(
            self.coord.lat, self.coord.lon,
            record.payload.latitude, record.payload.longitude,
        )
        if int(distance) > self.distance:
            return None
        record.distance = round(distance)
        return record


class StopFilter(RecordFilter):
    """Keep records attached to one of the requested stop codes."""

    def __init__(self, stop_codes: Iterable[str], canonical_keys: Iterable[str] = (),
                 min_timestamp: Optional[datetime] = None):
        super().__init__(canonical_keys, min_timestamp)
        self.stop_codes: FrozenSet[str] = frozenset(stop_codes)

    def matches(self, record: MergedRecord) -> bool:
        if not super().matches(record):
            return False
        if not self.stop_codes:
            return True
        if record.stop_or_line_key in self.stop_codes:
            return True
        if record.enrichment is not None:
            return not self.stop_codes.isdisjoint(record.enrichment.associated_stops)
        return False


def _get_list(args, name: str) -> list:
    if hasattr(args, "getlist"):
        values = args.getlist(name)
    else:
        values = args.get(name, [])
        if isinstance(values, str):
            values = [values]
    return [v for v in values if v]


def parse_date(value: Optional[str], tz: tzinfo, now: Optional[datetime] = None) -> datetime:
    """Parse a ``date`` argument; default to today's midnight in ``tz``."""
    if value:
        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(value, fmt).replace(tzinfo=tz)
            except ValueError:
                continue
    now = (now or datetime.now(tz)).astimezone(tz)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_coord(value: str) -> Coord:
    """Parse ``lon;lat``."""
    parts = value.split(";")
    if len(parts) != 2:
        raise ConfigurationError("Bad request: error on coord value")
    try:
        lon = float(parts[0])
    except ValueError as e:
        raise ConfigurationError("Bad request: error on coord longitude value") from e
    try:
        lat = float(parts[1])
    except ValueError as e:
        raise ConfigurationError("Bad request: error on coord latitude value") from e
    return Coord(lat=lat, lon=lon)


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_request_filter(args, tz: tzinfo, now: Optional[datetime] = None) -> RecordFilter:
    """
    Build a filter from HTTP query arguments.

    Args:
        args: Mapping of query arguments (a werkzeug MultiDict or a dict).
        tz: Time zone used to interpret ``date``.
        now: Reference time for the default date.

    Returns:
        A RecordFilter, ProximityFilter or StopFilter.

    Raises:
        ConfigurationError: malformed coordinates, or distance without coord.
    """
    min_timestamp = parse_date(args.get("date"), tz, now)
    keys = _get_list(args, "vehicle_journey_code[]")
    stop_codes = _get_list(args, "stop_point_code[]")

    if stop_codes:
        return StopFilter(stop_codes, canonical_keys=keys, min_timestamp=min_timestamp)
    if keys:
        return RecordFilter(keys, min_timestamp)

    coord_value = args.get("coord")
    distance_value = args.get("distance")
    if coord_value:
        coord = parse_coord(coord_value)
        distance = _parse_int(distance_value, DEFAULT_DISTANCE_METERS)
        return ProximityFilter(coord, distance, min_timestamp=min_timestamp)
    if _parse_int(distance_value, 0) > 0:
        raise ConfigurationError("Bad request: coord is mandatory when distance is present")

    return RecordFilter(min_timestamp=min_timestamp)
