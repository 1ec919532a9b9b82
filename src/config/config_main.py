from dotenv import load_dotenv
from datetime import timedelta
import os

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_seconds(name: str, default: int) -> timedelta:
    return timedelta(seconds=float(os.getenv(name, default)))


class SharedConfig():
    connection_timeout: timedelta = _env_seconds("CONNECTION_TIMEOUT", 10)
    timezone_location: str = os.getenv("TIMEZONE_LOCATION", "Europe/Paris")

shared_config = SharedConfig()


class FeedConfig():
    """
    Settings of one live feed, read from ``<PREFIX>_*`` environment variables.

    A feed whose service URI is empty is declared but never started.
    """

    def __init__(self, prefix: str, payload_kind: str):
        self.prefix = prefix
        self.payload_kind = payload_kind
        self.service_uri: str = os.getenv(f"{prefix}_SERVICE_URI", "")
        self.service_token: str = os.getenv(f"{prefix}_SERVICE_TOKEN", "")
        self.last_update_uri: str = os.getenv(f"{prefix}_LAST_UPDATE_URI", "")
        self.connector_type: str = os.getenv(f"{prefix}_CONNECTOR_TYPE", "gtfsrt")
        self.refresh: timedelta = _env_seconds(f"{prefix}_REFRESH", 300)
        self.clean_max_age: timedelta = _env_seconds(f"{prefix}_CLEAN_MAX_AGE", 7200)
        self.clean_enrichment_max_age: timedelta = _env_seconds(f"{prefix}_CLEAN_VJ_MAX_AGE", 86400)
        self.refresh_active: bool = _env_bool(f"{prefix}_REFRESH_ACTIVE")
        self.startup_delay: timedelta = _env_seconds(f"{prefix}_STARTUP_DELAY", 10)
        self.connection_timeout: timedelta = shared_config.connection_timeout
        self.timezone_location: str = shared_config.timezone_location

    @property
    def enabled(self) -> bool:
        return bool(self.service_uri)


class DirectoryConfig():
    """Static-data directory used to enrich a feed; disabled when the URI is empty."""

    def __init__(self, prefix: str):
        self.base_url: str = os.getenv(f"{prefix}_NAVITIA_URI", "")
        self.token: str = os.getenv(f"{prefix}_NAVITIA_TOKEN", "")

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


class ApiConfig():
    host: str = os.getenv("API_HOST", "0.0.0.0")
    port: int = int(os.getenv("API_PORT", 8080))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

api_config = ApiConfig()


feed_configs = {
    "vehicle_positions": FeedConfig("POSITIONS", "position"),
    "vehicle_occupancies": FeedConfig("OCCUPANCY", "occupancy"),
}

directory_configs = {
    "vehicle_positions": DirectoryConfig("POSITIONS"),
    "vehicle_occupancies": DirectoryConfig("OCCUPANCY"),
}
