"""
Tests for the directory enrichment client.
"""

import json
from unittest.mock import Mock

import pytest

from src.data.directory.directory_client import DirectoryClient
from src.livefeed.errors import DecodeError, TransportError

from conftest import FakeClock, T0

BASE_URL = "http://directory.example/v1/coverage/fr-idf/"


def journey(journey_id, stops=("SP1", "SP2"), line="line:A"):
    return {
        "id": journey_id,
        "stop_times": [{"stop_point": {"id": s}} for s in stops],
        "journey_pattern": {"route": {"line": {"id": line}}},
    }


@pytest.fixture
def transport():
    return Mock()


@pytest.fixture
def client(transport):
    return DirectoryClient(BASE_URL, "token", transport=transport, timeout=5, clock=FakeClock())


def respond(transport, payload):
    transport.fetch.return_value = json.dumps(payload).encode("utf-8")


class TestDirectoryClient:

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            DirectoryClient("")

    def test_freshness_token(self, client, transport):
        respond(transport, {"status": {"publication_date": "20240501T031500.000000"}})

        assert client.get_freshness_token() == "20240501T031500.000000"
        transport.fetch.assert_called_once_with(
            "http://directory.example/v1/coverage/fr-idf/status", "token", 5
        )

    def test_freshness_token_missing(self, client, transport):
        respond(transport, {"status": {}})
        with pytest.raises(DecodeError):
            client.get_freshness_token()

    def test_lookup_by_source_code(self, client, transport):
        respond(transport, {"vehicle_journeys": [journey("vj:1")]})

        record = client.lookup_by_source_code("trip 1")

        assert record.canonical_key == "vj:1"
        assert record.natural_key == "trip 1"
        assert record.associated_stops == ("SP1", "SP2")
        assert record.line_key == "line:A"
        assert record.created_at == T0
        url = transport.fetch.call_args.args[0]
        assert "vehicle_journey.has_code(source,trip%201)" in url
        assert url.endswith("&depth=2")

    def test_lookup_not_found_on_404(self, client, transport):
        transport.fetch.side_effect = TransportError("ERROR 404", status_code=404)
        assert client.lookup_by_source_code("trip-1") is None

    def test_lookup_empty_result(self, client, transport):
        respond(transport, {"vehicle_journeys": []})
        assert client.lookup_by_source_code("trip-1") is None

    def test_lookup_propagates_other_errors(self, client, transport):
        transport.fetch.side_effect = TransportError("ERROR 500", status_code=500)
        with pytest.raises(TransportError):
            client.lookup_by_source_code("trip-1")

    def test_lookup_ambiguous_result(self, client, transport):
        respond(transport, {"vehicle_journeys": [journey("vj:1"), journey("vj:2")]})
        with pytest.raises(DecodeError):
            client.lookup_by_source_code("trip-1")

    def test_lookup_invalid_json(self, client, transport):
        transport.fetch.return_value = b"<html>"
        with pytest.raises(DecodeError):
            client.lookup_by_source_code("trip-1")
