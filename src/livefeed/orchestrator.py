"""
Live-Feed Service Orchestrator

Builds one engine per configured feed, starts the refresh loops and serves
the HTTP API.

Usage:
    python -m src.livefeed
    python -m src.livefeed --feeds vehicle_positions --port 8080 --activate
"""

import argparse
import logging
import signal
import sys
from typing import Dict, List, Optional

from src.api.app import create_app
from src.config.config_main import api_config, directory_configs, feed_configs

from .engine import LiveFeedEngine, build_engine
from .errors import ConfigurationError
from .metrics import MetricsCollector

logger = logging.getLogger(__name__)


def build_engines(feed_names: Optional[List[str]] = None, activate: bool = False,
                  metrics: Optional[MetricsCollector] = None) -> Dict[str, LiveFeedEngine]:
    """
    Build engines for the requested feeds.

    Args:
        feed_names: Feeds to build (default: every feed with a service URI)
        activate: Force every refresh loop active regardless of configuration
        metrics: Collector shared by all engines

    Returns:
        Feed name to engine
    """
    metrics = metrics or MetricsCollector()
    if feed_names is None:
        feed_names = list(feed_configs)

    engines = {}
    for name in feed_names:
        feed_config = feed_configs.get(name)
        if feed_config is None:
            raise ConfigurationError(f"Unknown feed {name!r}, expected one of {sorted(feed_configs)}")
        if not feed_config.enabled:
            logger.info(f"[{name}] No service URI configured, feed not started")
            continue

        engine = build_engine(name, feed_config, directory_configs.get(name), metrics)
        if activate:
            engine.force_status(True)
        engines[name] = engine

    return engines


class LiveFeedService:
    """Runs the refresh loops and stops them on SIGINT/SIGTERM."""

    def __init__(self, engines: Dict[str, LiveFeedEngine]):
        self.engines = engines

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown")
        self.stop()
        sys.exit(0)

    def start(self):
        for engine in self.engines.values():
            engine.start()

    def stop(self):
        for engine in self.engines.values():
            engine.stop(timeout=5)


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Transit live-feed synchronization service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve every feed with a configured service URI
  python -m src.livefeed

  # Only vehicle positions, refresh active from startup
  python -m src.livefeed --feeds vehicle_positions --activate
        """
    )

    parser.add_argument(
        '--feeds',
        type=str,
        default=None,
        help=f"Comma-separated feeds to serve (default: all of {', '.join(feed_configs)})"
    )

    parser.add_argument(
        '--host',
        type=str,
        default=api_config.host,
        help='HTTP listen address (default: API_HOST env var)'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=api_config.port,
        help='HTTP listen port (default: API_PORT env var)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=api_config.log_level,
        help='Logging level (default: LOG_LEVEL env var)'
    )

    parser.add_argument(
        '--activate',
        action='store_true',
        help='Activate every refresh loop regardless of *_REFRESH_ACTIVE'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    feed_names = [f.strip() for f in args.feeds.split(',') if f.strip()] if args.feeds else None
    try:
        engines = build_engines(feed_names, activate=args.activate)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    if not engines:
        logger.error("No feed configured, set <PREFIX>_SERVICE_URI for at least one feed")
        sys.exit(2)

    service = LiveFeedService(engines)
    service.install_signal_handlers()
    service.start()

    app = create_app(engines)
    logger.info(f"Serving {', '.join(engines)} on {args.host}:{args.port}")
    try:
        app.run(host=args.host, port=args.port)
    finally:
        service.stop()
