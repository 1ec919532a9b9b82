"""
Tests for the refresh loop.

Transport, decoder and directory are mocks; the loop's clock is a FakeClock,
so no test waits on the network or on real time.
"""

import threading
from datetime import timedelta, timezone
from unittest.mock import Mock

import pytest

from src.livefeed.errors import DecodeError, NoDataLoaded, TransportError
from src.livefeed.metrics import LOADING_ERRORS, RECORD_COUNT, REFRESH_DURATION, MetricsCollector
from src.livefeed.refresh import RefreshLoop

from conftest import T0, make_enrichment, make_feed_record


class TestRefreshLoop:
    """Single-cycle behaviour of the refresh loop."""

    @pytest.fixture
    def transport(self):
        transport = Mock()
        transport.fetch.return_value = b"payload"
        return transport

    @pytest.fixture
    def decoder(self):
        decoder = Mock()
        decoder.decode.return_value = [make_feed_record("src-1"), make_feed_record("src-2")]
        return decoder

    @pytest.fixture
    def directory(self):
        directory = Mock()
        directory.get_freshness_token.return_value = "t1"
        directory.lookup_by_source_code.side_effect = (
            lambda code: make_enrichment(f"vj:{code}", code, stops=["SP1"])
        )
        return directory

    @pytest.fixture
    def metrics(self):
        return MetricsCollector()

    @pytest.fixture
    def make_loop(self, transport, decoder, store, cache, metrics, clock):
        def _make(**kwargs):
            options = dict(
                name="vehicle_positions",
                transport=transport,
                decoder=decoder,
                feed_uri="http://feed.example/vp.pb",
                store=store,
                cache=cache,
                metrics=metrics,
                enabled=True,
                clock=clock,
            )
            options.update(kwargs)
            return RefreshLoop(**options)
        return _make

    def test_disabled_loop_does_no_io(self, make_loop, transport, directory, store):
        loop = make_loop(enabled=False, enrichment_client=directory)
        report = loop.run_cycle()

        assert report.ran is False
        transport.fetch.assert_not_called()
        directory.get_freshness_token.assert_not_called()
        with pytest.raises(NoDataLoaded):
            store.query()

    def test_cycle_without_enrichment_keys_by_source(self, make_loop, store, metrics):
        report = make_loop().run_cycle()

        assert report.merged == 2
        assert report.error is None
        assert sorted(r.canonical_key for r in store.query()) == ["src-1", "src-2"]
        assert metrics.histogram_count(REFRESH_DURATION, feed="vehicle_positions") == 1
        assert metrics.gauge(RECORD_COUNT, feed="vehicle_positions") == 2

    def test_cycle_with_enrichment_uses_canonical_keys(self, make_loop, directory, store, cache):
        report = make_loop(enrichment_client=directory).run_cycle()

        assert report.merged == 2
        assert report.invalidated is True
        assert sorted(r.canonical_key for r in store.query()) == ["vj:src-1", "vj:src-2"]
        assert cache.lookup("src-1").canonical_key == "vj:src-1"

    def test_cache_hit_skips_directory(self, make_loop, directory, cache):
        loop = make_loop(enrichment_client=directory)
        loop.run_cycle()
        loop.run_cycle()

        assert directory.lookup_by_source_code.call_count == 2

    def test_no_fix_records_are_skipped(self, make_loop, decoder, store):
        decoder.decode.return_value = [make_feed_record("src-1"), make_feed_record("src-0", lat=0, lon=0)]
        report = make_loop().run_cycle()

        assert report.skipped_no_fix == 1
        assert [r.canonical_key for r in store.query()] == ["src-1"]

    def test_transport_error_leaves_store_untouched(self, make_loop, transport, store, metrics):
        loop = make_loop()
        loop.run_cycle()
        before = store.query()

        transport.fetch.side_effect = TransportError("ERROR 500: http://feed.example/vp.pb", status_code=500)
        report = loop.run_cycle()

        assert report.error is not None
        assert store.query() == before
        assert metrics.counter(LOADING_ERRORS, feed="vehicle_positions") == 1
        assert loop.status.startswith("error")

    def test_decode_error_aborts_cycle(self, make_loop, decoder, store, metrics):
        decoder.decode.side_effect = DecodeError("bad protobuf")
        report = make_loop().run_cycle()

        assert report.error is not None
        assert report.merged == 0
        assert metrics.counter(LOADING_ERRORS, feed="vehicle_positions") == 1
        with pytest.raises(NoDataLoaded):
            store.query()

    def test_empty_feed_counts_as_error(self, make_loop, decoder, metrics):
        decoder.decode.return_value = []
        report = make_loop().run_cycle()

        assert report.error == "no data to load from feed"
        assert metrics.counter(LOADING_ERRORS, feed="vehicle_positions") == 1

    def test_enrichment_failure_skips_only_that_record(self, make_loop, directory, store):
        def lookup(code):
            if code == "src-2":
                raise TransportError("timeout")
            return make_enrichment(f"vj:{code}", code)
        directory.lookup_by_source_code.side_effect = lookup

        report = make_loop(enrichment_client=directory).run_cycle()

        assert report.enrichment_failures == 1
        assert report.merged == 1
        assert [r.canonical_key for r in store.query()] == ["vj:src-1"]

    def test_not_found_merges_unenriched_then_supersedes(self, make_loop, directory, store):
        directory.lookup_by_source_code.side_effect = lambda code: None
        loop = make_loop(enrichment_client=directory)

        report = loop.run_cycle()
        assert report.not_found == 2
        assert sorted(r.canonical_key for r in store.query()) == ["src-1", "src-2"]
        assert all(r.enrichment is None for r in store.query())

        directory.lookup_by_source_code.side_effect = lambda code: make_enrichment(f"vj:{code}", code)
        loop.run_cycle()

        assert sorted(r.canonical_key for r in store.query()) == ["vj:src-1", "vj:src-2"]

    def test_lapsed_enrichment_keeps_entity_under_canonical_key(self, make_loop, directory, store, cache, clock):
        loop = make_loop(
            enrichment_client=directory,
            max_age=timedelta(hours=2),
            enrichment_max_age=timedelta(hours=1),
        )
        loop.run_cycle()
        clock.advance(hours=2, minutes=1)
        loop.run_cycle()
        assert len(cache) == 0

        directory.lookup_by_source_code.side_effect = lambda code: None
        report = loop.run_cycle()

        assert report.not_found == 2
        assert sorted(r.canonical_key for r in store.query()) == ["vj:src-1", "vj:src-2"]
        assert store.get("vj:src-1").enrichment is not None

    def test_freshness_token_failure_keeps_previous_token(self, make_loop, directory, cache):
        loop = make_loop(enrichment_client=directory)
        loop.run_cycle()

        directory.get_freshness_token.side_effect = TransportError("down")
        report = loop.run_cycle()

        assert report.invalidated is False
        assert report.merged == 2
        assert cache.token == "t1"

    def test_token_change_resets_before_merge(self, make_loop, directory, decoder, store):
        loop = make_loop(enrichment_client=directory)
        loop.run_cycle()

        directory.get_freshness_token.return_value = "t2"
        decoder.decode.return_value = [make_feed_record("src-3")]
        report = loop.run_cycle()

        assert report.invalidated is True
        assert [r.canonical_key for r in store.query()] == ["vj:src-3"]

    def test_token_change_forces_fresh_lookups(self, make_loop, directory):
        loop = make_loop(enrichment_client=directory)
        loop.run_cycle()
        loop.run_cycle()
        assert directory.lookup_by_source_code.call_count == 2

        directory.get_freshness_token.return_value = "t2"
        loop.run_cycle()

        assert directory.lookup_by_source_code.call_count == 4

    def test_refeeding_same_records_keeps_one_entry_per_key(self, make_loop, directory, store):
        loop = make_loop(enrichment_client=directory)
        for _ in range(3):
            loop.run_cycle()

        assert len(store) == 2

    def test_zero_latitude_alone_is_not_a_sentinel(self, make_loop, decoder, store):
        decoder.decode.return_value = [make_feed_record("src-1", lat=0, lon=5)]
        report = make_loop().run_cycle()

        assert report.skipped_no_fix == 0
        assert [r.canonical_key for r in store.query()] == ["src-1"]

    def test_observed_at_is_localized(self, make_loop, store):
        paris = timezone(timedelta(hours=2))
        make_loop(location=paris).run_cycle()

        record = store.query()[0]
        assert record.observed_at == T0
        assert record.observed_at.utcoffset() == timedelta(hours=2)

    def test_missing_observed_at_uses_last_update_marker(self, make_loop, transport, decoder, store):
        marker = T0 - timedelta(minutes=3)
        transport.fetch_timestamp.return_value = marker
        decoder.decode.return_value = [make_feed_record("src-1", observed_at=None)]

        make_loop(last_update_uri="http://feed.example/last_update").run_cycle()

        transport.fetch_timestamp.assert_called_once()
        assert store.query()[0].observed_at == marker

    def test_missing_observed_at_falls_back_to_clock(self, make_loop, decoder, store, clock):
        decoder.decode.return_value = [make_feed_record("src-1", observed_at=None)]
        make_loop().run_cycle()

        assert store.query()[0].observed_at == clock()

    def test_eviction_runs_on_max_age_timer(self, make_loop, decoder, store, clock):
        loop = make_loop(max_age=timedelta(hours=2))
        loop.run_cycle()

        decoder.decode.return_value = [make_feed_record("src-1")]
        clock.advance(hours=1)
        assert loop.run_cycle().evicted == 0

        clock.advance(hours=1, minutes=1)
        report = loop.run_cycle()

        assert report.evicted == 1
        assert [r.canonical_key for r in store.query()] == ["src-1"]

    def test_set_enabled_records_status_change(self, make_loop, clock):
        loop = make_loop(enabled=False)
        loop.set_enabled(True)

        assert loop.enabled is True
        assert loop.last_status_update == clock()


class TestRefreshLoopThread:
    """Background thread lifecycle."""

    def test_stop_during_startup_delay_returns_promptly(self, store, cache):
        transport = Mock()
        loop = RefreshLoop(
            "vehicle_positions", transport, Mock(), "http://feed.example/vp.pb",
            store, cache, MetricsCollector(),
            startup_delay=timedelta(hours=1), enabled=True,
        )

        loop.start()
        assert loop.running
        loop.stop(timeout=5)

        assert not loop.running
        transport.fetch.assert_not_called()

    def test_unexpected_error_is_counted_and_loop_survives(self, store, cache):
        entered = threading.Event()

        def failing_fetch(uri, token, timeout):
            entered.set()
            raise RuntimeError("boom")

        transport = Mock()
        transport.fetch.side_effect = failing_fetch
        metrics = MetricsCollector()
        loop = RefreshLoop(
            "vehicle_positions", transport, Mock(), "http://feed.example/vp.pb",
            store, cache, metrics,
            startup_delay=timedelta(0), refresh_interval=timedelta(hours=1), enabled=True,
        )

        loop.start()
        assert entered.wait(5)
        loop.stop(timeout=5)

        assert not loop.running
        assert metrics.counter(LOADING_ERRORS, feed="vehicle_positions") == 1
        assert loop.status == "error: boom"

    def test_restart_during_slow_cycle_keeps_a_single_worker(self, store, cache):
        entered = threading.Event()
        release = threading.Event()

        def slow_fetch(uri, token, timeout):
            entered.set()
            release.wait(5)
            raise TransportError("upstream gone")

        transport = Mock()
        transport.fetch.side_effect = slow_fetch
        loop = RefreshLoop(
            "single_worker", transport, Mock(), "http://feed.example/vp.pb",
            store, cache, MetricsCollector(),
            startup_delay=timedelta(0), refresh_interval=timedelta(hours=1), enabled=True,
        )

        loop.start()
        assert entered.wait(5)
        loop.stop(timeout=0.05)
        assert loop.running

        loop.start()
        workers = [t for t in threading.enumerate() if t.name == "refresh-single_worker" and t.is_alive()]

        release.set()
        loop.stop(timeout=5)

        assert len(workers) == 1
        assert not loop.running
        assert transport.fetch.call_count == 1
