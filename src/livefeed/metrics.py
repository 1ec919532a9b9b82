"""
In-memory metrics for the refresh loops.

Counters, windowed histograms and gauges keyed by name and label set. The
engine only writes to it; the HTTP layer exports it.
"""

from collections import defaultdict, deque
from dataclasses import dataclass
from threading import RLock
from typing import Deque, Dict, Iterable, Mapping, Optional, Tuple

REFRESH_DURATION = "livefeed_load_durations_seconds"
LOADING_ERRORS = "livefeed_loading_errors"
RECORD_COUNT = "livefeed_records"

_Key = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass
class CounterSample:
    name: str
    labels: Mapping[str, str]
    value: float


@dataclass
class HistogramSample:
    name: str
    labels: Mapping[str, str]
    count: int
    total: float
    p50: float
    p95: float
    p99: float


@dataclass
class GaugeSample:
    name: str
    labels: Mapping[str, str]
    value: float


def _key(name: str, labels: Mapping[str, str]) -> _Key:
    return name, tuple(sorted(labels.items()))


class MetricsCollector:
    """Thread-safe, Prometheus-style metrics kept in memory."""

    def __init__(self, histogram_window: int = 512):
        self._lock = RLock()
        self._histogram_window = histogram_window
        self._counters: Dict[_Key, float] = defaultdict(float)
        self._histograms: Dict[_Key, Deque[float]] = defaultdict(self._new_window)
        self._histogram_counts: Dict[_Key, int] = defaultdict(int)
        self._histogram_totals: Dict[_Key, float] = defaultdict(float)
        self._gauges: Dict[_Key, float] = {}

    def _new_window(self) -> Deque[float]:
        return deque(maxlen=self._histogram_window)

    def increment(self, name: str, amount: float = 1.0, **labels: str):
        key = _key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe(self, name: str, value: float, **labels: str):
        key = _key(name, labels)
        with self._lock:
            self._histograms[key].append(value)
            self._histogram_counts[key] += 1
            self._histogram_totals[key] += value

    def set_gauge(self, name: str, value: float, **labels: str):
        with self._lock:
            self._gauges[_key(name, labels)] = value

    def counter(self, name: str, **labels: str) -> float:
        with self._lock:
            return self._counters.get(_key(name, labels), 0.0)

    def histogram_count(self, name: str, **labels: str) -> int:
        with self._lock:
            return self._histogram_counts.get(_key(name, labels), 0)

    def gauge(self, name: str, **labels: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(_key(name, labels))

    def export_counters(self) -> Iterable[CounterSample]:
        with self._lock:
            items = list(self._counters.items())
        for (name, labels), value in items:
            yield CounterSample(name=name, labels=dict(labels), value=value)

    def export_histograms(self) -> Iterable[HistogramSample]:
        """Yield histogram samples with p50/p95/p99 over the recent window."""
        with self._lock:
            items = [
                (key, sorted(samples), self._histogram_counts[key], self._histogram_totals[key])
                for key, samples in self._histograms.items()
            ]
        for (name, labels), samples, count, total in items:
            if not samples:
                continue
            last = len(samples) - 1
            yield HistogramSample(
                name=name, labels=dict(labels), count=count, total=total,
                p50=samples[int(0.5 * last)],
                p95=samples[int(0.95 * last)],
                p99=samples[int(0.99 * last)],
            )

    def export_gauges(self) -> Iterable[GaugeSample]:
        with self._lock:
            items = list(self._gauges.items())
        for (name, labels), value in items:
            yield GaugeSample(name=name, labels=dict(labels), value=value)
