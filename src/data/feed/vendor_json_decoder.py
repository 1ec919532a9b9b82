"""
Vendor JSON vehicle feed decoder.

Expected shape::

    {
        "timestamp": "2024-05-01T08:00:00Z",
        "vehicles": [
            {"trip_id": "1234", "vehicle_id": "bus-12", "stop_id": "SP1",
             "latitude": 48.85, "longitude": 2.35, "bearing": 90, "speed": 7.5,
             "occupancy": "MANY_SEATS_AVAILABLE", "status": 2,
             "timestamp": 1714550400}
        ]
    }

Timestamps are epoch seconds or ISO-8601 strings. Vehicle timestamps fall
back to the document timestamp; both may be absent, in which case the
refresh loop supplies the last-update marker time.
"""

import json
import logging
from datetime import datetime, timezone
from typing import List, Optional

from src.livefeed.errors import ConfigurationError, DecodeError
from src.livefeed.models import FeedRecord, OccupancyPayload, PositionPayload, StatusPayload

logger = logging.getLogger(__name__)

PAYLOAD_KINDS = ("position", "occupancy", "status")


def parse_timestamp(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise DecodeError(f"Invalid timestamp {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class VendorJsonDecoder:

    def __init__(self, payload_kind: str = "position"):
        if payload_kind not in PAYLOAD_KINDS:
            raise ConfigurationError(f"Unknown payload kind {payload_kind!r}")
        self.payload_kind = payload_kind

    def decode(self, data: bytes) -> List[FeedRecord]:
        try:
            document = json.loads(data)
        except ValueError as e:
            raise DecodeError(f"Invalid JSON feed: {e}") from e

        if not isinstance(document, dict) or not isinstance(document.get("vehicles"), list):
            raise DecodeError("JSON feed has no 'vehicles' list")

        default_time = parse_timestamp(document.get("timestamp"))
        records = []
        for vehicle in document["vehicles"]:
            if not isinstance(vehicle, dict):
                raise DecodeError(f"Unexpected vehicle entry: {vehicle!r}")

            source_key = vehicle.get("trip_id") or vehicle.get("vehicle_journey_code") or vehicle.get("vehicle_id")
            if not source_key:
                logger.debug("Skipping JSON vehicle without identifier")
                continue

            records.append(FeedRecord(
                source_key=str(source_key),
                observed_at=parse_timestamp(vehicle.get("timestamp")) or default_time,
                payload=self._payload(vehicle),
                stop_or_line_key=vehicle.get("stop_id"),
                vehicle_id=vehicle.get("vehicle_id"),
                route_id=vehicle.get("route_id"),
            ))

        return records

    def _payload(self, vehicle: dict):
        try:
            if self.payload_kind == "occupancy":
                return OccupancyPayload(status=str(vehicle.get("occupancy") or "NO_DATA_AVAILABLE"))
            if self.payload_kind == "status":
                return StatusPayload(code=int(vehicle.get("status", 0)))
            return PositionPayload(
                latitude=float(vehicle.get("latitude") or 0),
                longitude=float(vehicle.get("longitude") or 0),
                bearing=float(vehicle.get("bearing") or 0),
                speed=float(vehicle.get("speed") or 0),
                occupancy=vehicle.get("occupancy"),
            )
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Invalid vehicle values {vehicle!r}: {e}") from e
