"""
GTFS-RT vehicle feed decoder.

Turns a serialized ``FeedMessage`` into FeedRecords. Entities without a
``vehicle`` block (trip updates, alerts) are ignored.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.transit import gtfs_realtime_pb2

from src.livefeed.errors import ConfigurationError, DecodeError
from src.livefeed.models import FeedRecord, OccupancyPayload, PositionPayload, StatusPayload

logger = logging.getLogger(__name__)

PAYLOAD_KINDS = ("position", "occupancy", "status")


def occupancy_name(value: int) -> str:
    try:
        return gtfs_realtime_pb2.VehiclePosition.OccupancyStatus.Name(value)
    except ValueError:
        return str(value)


def _to_datetime(epoch_seconds: int) -> Optional[datetime]:
    if not epoch_seconds:
        return None
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


class GtfsRtDecoder:

    def __init__(self, payload_kind: str = "position"):
        if payload_kind not in PAYLOAD_KINDS:
            raise ConfigurationError(f"Unknown payload kind {payload_kind!r}")
        self.payload_kind = payload_kind

    def decode(self, data: bytes) -> List[FeedRecord]:
        """
        Decode a GTFS-RT FeedMessage.

        Args:
            data: Serialized protobuf message

        Returns:
            FeedRecords in feed order

        Raises:
            DecodeError: the bytes are not a valid FeedMessage
        """
        message = gtfs_realtime_pb2.FeedMessage()
        try:
            message.ParseFromString(data)
        except ProtobufDecodeError as e:
            raise DecodeError(f"Invalid GTFS-RT payload: {e}") from e

        header_time = _to_datetime(message.header.timestamp)
        records = []
        for entity in message.entity:
            if not entity.HasField("vehicle"):
                continue
            vehicle = entity.vehicle
            source_key = vehicle.trip.trip_id or vehicle.vehicle.id or entity.id
            if not source_key:
                logger.debug("Skipping GTFS-RT vehicle entity without any identifier")
                continue

            records.append(FeedRecord(
                source_key=source_key,
                observed_at=_to_datetime(vehicle.timestamp) or header_time,
                payload=self._payload(vehicle),
                stop_or_line_key=vehicle.stop_id or None,
                vehicle_id=vehicle.vehicle.id or None,
                route_id=vehicle.trip.route_id or None,
            ))

        logger.debug(f"Decoded {len(records)} vehicles from {len(message.entity)} GTFS-RT entities")
        return records

    def _payload(self, vehicle):
        if self.payload_kind == "occupancy":
            return OccupancyPayload(status=occupancy_name(vehicle.occupancy_status))
        if self.payload_kind == "status":
            return StatusPayload(code=int(vehicle.current_status))

        position = vehicle.position
        return PositionPayload(
            latitude=position.latitude,
            longitude=position.longitude,
            bearing=position.bearing,
            speed=position.speed,
            occupancy=occupancy_name(vehicle.occupancy_status) if vehicle.HasField("occupancy_status") else None,
        )
