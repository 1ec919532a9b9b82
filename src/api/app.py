"""
Live-feed HTTP API
A lightweight Flask app serving the merged records of each configured feed
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from src.livefeed.engine import LiveFeedEngine
from src.livefeed.errors import ConfigurationError, NoDataLoaded
from src.livefeed.filters import parse_request_filter

logger = logging.getLogger(__name__)

BOOLEAN_VALUES = {"true": True, "false": False}


def create_app(engines: Dict[str, LiveFeedEngine],
               clock: Optional[Callable[[], datetime]] = None) -> Flask:
    """
    Build the Flask application.

    Args:
        engines: Feed name to engine; each feed is served at ``/<feed name>``
        clock: Reference clock for the default ``date`` filter
    """
    app = Flask(__name__)
    CORS(app)

    @app.route('/status')
    def get_status():
        """Per-feed diagnostics; ``?<feed>=true|false`` toggles a refresh loop"""
        toggles = {}
        for name in engines:
            value = request.args.get(name)
            if value is None:
                continue
            enabled = BOOLEAN_VALUES.get(value.lower())
            if enabled is None:
                return jsonify({
                    'success': False,
                    'error': f"Bad request: invalid value {value!r} for {name}"
                }), 400
            toggles[name] = enabled

        for name, enabled in toggles.items():
            engines[name].force_status(enabled)

        return jsonify({
            'success': True,
            'feeds': {name: engine.status() for name, engine in engines.items()},
            'last_updated': datetime.now(timezone.utc).isoformat()
        })

    @app.route('/metrics')
    def get_metrics():
        """Export counters, histograms and gauges of all feeds"""
        metrics = {id(engine.metrics): engine.metrics for engine in engines.values()}
        counters, histograms, gauges = [], [], []
        for collector in metrics.values():
            counters.extend(vars(sample) for sample in collector.export_counters())
            histograms.extend(vars(sample) for sample in collector.export_histograms())
            gauges.extend(vars(sample) for sample in collector.export_gauges())

        return jsonify({
            'counters': counters,
            'histograms': histograms,
            'gauges': gauges
        })

    @app.route('/<feed_name>')
    def get_feed(feed_name):
        """Current records of a feed, filtered by the query arguments"""
        engine = engines.get(feed_name)
        if engine is None:
            return jsonify({
                'success': False,
                'error': f"Unknown feed {feed_name}"
            }), 404

        try:
            now = clock() if clock else None
            record_filter = parse_request_filter(request.args, engine.location, now)
            records = engine.get_current(record_filter)
        except ConfigurationError as e:
            return jsonify({
                'success': False,
                'error': str(e)
            }), 400
        except NoDataLoaded:
            return jsonify({
                'success': False,
                'error': "No data loaded"
            }), 503

        return jsonify({
            feed_name: [record.to_dict() for record in records]
        })

    return app
