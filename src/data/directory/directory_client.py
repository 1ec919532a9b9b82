import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import quote

from src.data.feed.feed_client import FeedClient
from src.livefeed.errors import DecodeError, TransportError
from src.livefeed.models import EnrichmentRecord

logger = logging.getLogger(__name__)

SOURCE_CODE_TYPE = "source"


class DirectoryClient:
    """
    Client for the static-data directory (a Navitia-style coverage API).

    Resolves feed source codes into vehicle journeys and exposes the
    directory's publication date as a freshness token.
    """

    def __init__(self, base_url: str, token: str = "", transport: Optional[FeedClient] = None,
                 timeout: float = 10.0, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        if not base_url:
            raise ValueError("A directory base URL must be provided in the configuration.")

        self.base_url = base_url.rstrip("/")
        self.token = token
        self.transport = transport or FeedClient()
        self.timeout = timeout
        self._clock = clock

    def get_freshness_token(self) -> str:
        """
        Get the directory's last static-data publication date.

        Returns:
            The ``status.publication_date`` value

        Raises:
            TransportError: directory unreachable
            DecodeError: malformed status payload
        """
        payload = self._execute_request("status")
        try:
            publication_date = payload["status"]["publication_date"]
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Missing publication_date in directory status: {e}") from e
        return str(publication_date)

    def lookup_by_source_code(self, code: str) -> Optional[EnrichmentRecord]:
        """
        Find the vehicle journey carrying ``code`` as its source code.

        Returns:
            EnrichmentRecord, or None when the directory has no such journey

        Raises:
            TransportError: directory unreachable
            DecodeError: malformed payload or more than one matching journey
        """
        endpoint = (
            f"vehicle_journeys?filter=vehicle_journey.has_code({SOURCE_CODE_TYPE},{quote(code, safe='')})"
            f"&depth=2"
        )
        try:
            payload = self._execute_request(endpoint)
        except TransportError as e:
            if e.status_code == 404:
                logger.debug(f"No vehicle journey found for source code {code}")
                return None
            raise

        if not isinstance(payload, dict):
            raise DecodeError("Unexpected directory payload for vehicle_journeys")
        journeys = payload.get("vehicle_journeys") or []
        if not journeys:
            return None
        if len(journeys) > 1:
            raise DecodeError(f"at most 1 vehicle journey is expected for {code}, got {len(journeys)}")

        return self._to_enrichment(code, journeys[0])

    def _to_enrichment(self, code: str, journey: dict) -> EnrichmentRecord:
        journey_id = journey.get("id")
        if not journey_id:
            raise DecodeError(f"Vehicle journey without id for source code {code}")

        stops = []
        for stop_time in journey.get("stop_times", []):
            stop_point = stop_time.get("stop_point") or {}
            if stop_point.get("id"):
                stops.append(stop_point["id"])

        route = (journey.get("journey_pattern") or {}).get("route") or {}
        line_key = (route.get("line") or {}).get("id")

        return EnrichmentRecord(
            canonical_key=journey_id,
            natural_key=code,
            associated_stops=tuple(stops),
            line_key=line_key,
            created_at=self._clock(),
        )

    def _execute_request(self, endpoint: str):
        url = f"{self.base_url}/{endpoint}"
        body = self.transport.fetch(url, self.token, self.timeout)
        try:
            return json.loads(body)
        except ValueError as e:
            raise DecodeError(f"Invalid JSON from directory at {endpoint}: {e}") from e
