import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse, unquote

import requests

from src.livefeed.errors import TransportError

logger = logging.getLogger(__name__)


class FeedClient:
    """
    Fetches raw feed payloads over HTTP(S) or from local ``file://`` snapshots.

    Every call carries the caller's timeout. Failures are retried a bounded
    number of times with exponential backoff, then surface as TransportError.
    """

    def __init__(self, max_retries: int = 2, backoff_base: float = 1.0, token_header: str = "Authorization"):
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.token_header = token_header

    def fetch(self, uri: str, token: Optional[str] = None, timeout: float = 10.0) -> bytes:
        """
        Fetch the raw bytes behind ``uri``.

        Args:
            uri: http(s) or file URI
            token: Optional token sent in the ``Authorization`` header
            timeout: Connection/read timeout in seconds

        Returns:
            Response body

        Raises:
            TransportError: network failure, timeout, non-200 status or
                unreadable file
        """
        scheme = urlparse(uri).scheme
        if scheme == "file":
            return self._read_file(uri)
        if scheme not in ("http", "https"):
            raise TransportError(f"Unsupported protocol {scheme!r} for {uri}")

        headers = {}
        if token:
            headers[self.token_header] = token

        return self._execute_request(uri, headers, timeout)

    def fetch_timestamp(self, uri: str, token: Optional[str] = None, timeout: float = 10.0) -> datetime:
        """
        Read a companion last-update marker.

        The marker is ISO-8601 text, epoch seconds, or a JSON object with a
        ``last_update`` field holding either of those.
        """
        body = self.fetch(uri, token, timeout).decode("utf-8", errors="replace").strip()
        value = body
        if body.startswith("{"):
            try:
                value = str(json.loads(body).get("last_update", ""))
            except (ValueError, AttributeError) as e:
                raise TransportError(f"Invalid last-update marker at {uri}: {e}") from e
        return self._parse_timestamp(value, uri)

    def _parse_timestamp(self, value: str, uri: str) -> datetime:
        value = value.strip()
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise TransportError(f"Invalid last-update marker at {uri}: {value!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    def _read_file(self, uri: str) -> bytes:
        path = Path(unquote(urlparse(uri).path))
        try:
            return path.read_bytes()
        except OSError as e:
            raise TransportError(f"Unable to read {path}: {e}") from e

    def _execute_request(self, url: str, headers: dict, timeout: float) -> bytes:
        for attempt in range(self.max_retries):
            try:
                response = requests.get(url, headers=headers, timeout=timeout)
                response.raise_for_status()
                return response.content
            except requests.exceptions.HTTPError as e:
                status_code = e.response.status_code if e.response is not None else None
                # Only gateway errors are worth another attempt within the cycle.
                if status_code in (502, 503, 504) and attempt < self.max_retries - 1:
                    self._backoff(attempt, f"HTTP {status_code}")
                    continue
                raise TransportError(f"ERROR {status_code}: {url}", status_code=status_code) from e
            except requests.exceptions.Timeout as e:
                if attempt < self.max_retries - 1:
                    self._backoff(attempt, "Request timeout")
                    continue
                raise TransportError(f"Timeout after {timeout}s: {url}") from e
            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    self._backoff(attempt, f"Request failed: {e}")
                    continue
                raise TransportError(f"Request failed: {e}") from e

        raise TransportError(f"No attempt made for {url}")

    def _backoff(self, attempt: int, reason: str):
        wait_time = self.backoff_base * 2 ** attempt
        logger.warning(f"{reason}, retrying in {wait_time}s... (attempt {attempt + 1}/{self.max_retries})")
        time.sleep(wait_time)
