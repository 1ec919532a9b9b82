"""
Exception taxonomy for the live-feed engine.

Errors raised inside the refresh loop (transport, decode) are logged and
counted there; errors raised on the query path (bad filter input, no data
loaded yet) reach the caller.
"""

from typing import Optional


class LiveFeedError(Exception):
    """Base class for all live-feed errors."""


class TransportError(LiveFeedError):
    """Network, timeout or filesystem failure talking to the feed or the directory."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(LiveFeedError):
    """Upstream payload could not be turned into typed records."""


class ConfigurationError(LiveFeedError):
    """Invalid configuration or query parameters supplied by the caller."""


class NoDataLoaded(LiveFeedError):
    """The store has never been populated."""

    def __init__(self, message: str = "No data loaded"):
        super().__init__(message)
