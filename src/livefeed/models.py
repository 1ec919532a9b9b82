"""
Data model for the live-feed engine.

FeedRecord: one decoded upstream observation, discarded after merge.
EnrichmentRecord: a directory lookup result, owned by the correlation cache.
MergedRecord: the unit served to readers, owned by the live record store.

Payloads are a tagged union of frozen dataclasses, so merged records can be
copied shallowly and handed to readers without sharing mutable state.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional, Tuple, Union


@dataclass(frozen=True)
class PositionPayload:
    kind: ClassVar[str] = "position"

    latitude: float
    longitude: float
    bearing: float = 0.0
    speed: float = 0.0
    occupancy: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "bearing": self.bearing,
            "speed": self.speed,
        }
        if self.occupancy:
            data["occupancy"] = self.occupancy
        return data


@dataclass(frozen=True)
class OccupancyPayload:
    kind: ClassVar[str] = "occupancy"

    status: str

    def to_dict(self) -> dict:
        return {"occupancy": self.status}


@dataclass(frozen=True)
class StatusPayload:
    kind: ClassVar[str] = "status"

    code: int

    def to_dict(self) -> dict:
        return {"status_code": self.code}


Payload = Union[PositionPayload, OccupancyPayload, StatusPayload]


@dataclass(frozen=True)
class FeedRecord:
    """One upstream observation as decoded from the feed."""

    source_key: str
    observed_at: Optional[datetime]
    payload: Payload
    stop_or_line_key: Optional[str] = None
    vehicle_id: Optional[str] = None
    route_id: Optional[str] = None

    def has_no_fix(self) -> bool:
        """True for the upstream "no fix" sentinel: a position at exactly 0/0."""
        if not isinstance(self.payload, PositionPayload):
            return False
        return self.payload.latitude == 0 and self.payload.longitude == 0


@dataclass(frozen=True)
class EnrichmentRecord:
    """Directory entry resolved from a feed source code."""

    canonical_key: str
    natural_key: str
    associated_stops: Tuple[str, ...] = ()
    line_key: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "canonical_key": self.canonical_key,
            "natural_key": self.natural_key,
            "associated_stops": list(self.associated_stops),
            "line_key": self.line_key,
        }


@dataclass
class MergedRecord:
    """Current merged view of one tracked entity."""

    canonical_key: str
    source_key: str
    payload: Payload
    observed_at: datetime
    last_seen_at: Optional[datetime] = None
    enrichment: Optional[EnrichmentRecord] = None
    stop_or_line_key: Optional[str] = None
    distance: Optional[float] = field(default=None, compare=False)

    def copy(self) -> "MergedRecord":
        # Every field is immutable or frozen, a shallow copy is a full snapshot.
        return copy.copy(self)

    def to_dict(self) -> dict:
        data = {
            "vehicle_journey_code": self.canonical_key,
            "source_code": self.source_key,
            "date_time": self.observed_at.isoformat() if self.observed_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }
        data.update(self.payload.to_dict())
        if self.stop_or_line_key:
            data["stop_point_code"] = self.stop_or_line_key
        if self.enrichment is not None:
            data["enrichment"] = self.enrichment.to_dict()
        if self.distance is not None:
            data["distance"] = self.distance
        return data
