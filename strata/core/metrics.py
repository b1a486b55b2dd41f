"""
Strata Core - Metrics collection.

In-memory metrics for provider calls and apply runs. Nothing is exported;
the applier logs a summary and tests read the values directly.

Metrics:
- strata_provider_calls_total: Provider API calls by operation, kind and status
- strata_retry_attempts_total: Retries of transient provider errors
- strata_apply_duration_seconds: Apply run duration
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

LabelKey = tuple[tuple[str, str], ...]


def _key(labels: dict[str, str]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


@dataclass
class Counter:
    """Monotonic counter with optional label series."""

    name: str
    series: dict[LabelKey, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def inc(self, amount: int = 1, **labels: str) -> None:
        """
        Increment the series for a label set.

        Args:
            amount: Amount to add (default: 1)
            **labels: Series labels, e.g. operation="create", status="ok"
        """
        key = _key(labels)
        with self._lock:
            self.series[key] = self.series.get(key, 0) + amount

    def get(self, **labels: str) -> int:
        """Value of one exact label set; no labels reads the unlabelled series."""
        with self._lock:
            return self.series.get(_key(labels), 0)

    def total(self) -> int:
        with self._lock:
            return sum(self.series.values())

    def by(self, label: str) -> dict[str, int]:
        """Sum the series grouped by one label; series without it are ignored."""
        grouped: dict[str, int] = {}
        with self._lock:
            for key, value in self.series.items():
                labels = dict(key)
                if label in labels:
                    grouped[labels[label]] = grouped.get(labels[label], 0) + value
        return grouped

    def reset(self) -> None:
        with self._lock:
            self.series.clear()


@dataclass
class Histogram:
    """Observations kept in a bounded window."""

    name: str
    max_observations: int = 1000
    _window: deque[float] = field(default_factory=deque, init=False, repr=False)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def __post_init__(self) -> None:
        self._window = deque(maxlen=self.max_observations)

    def observe(self, value: float) -> None:
        with self._lock:
            self._window.append(value)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            values = sorted(self._window)
        if not values:
            return {"count": 0, "sum": 0.0, "min": 0.0, "max": 0.0, "avg": 0.0, "p95": 0.0}
        total = sum(values)
        return {
            "count": len(values),
            "sum": total,
            "min": values[0],
            "max": values[-1],
            "avg": total / len(values),
            "p95": values[min(len(values) - 1, int(len(values) * 0.95))],
        }

    def reset(self) -> None:
        with self._lock:
            self._window.clear()


class MetricsRegistry:
    """Named counters and histograms, created on first use."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = Lock()

    def counter(self, name: str) -> Counter:
        with self._lock:
            return self._counters.setdefault(name, Counter(name=name))

    def histogram(self, name: str) -> Histogram:
        with self._lock:
            return self._histograms.setdefault(name, Histogram(name=name))

    def snapshot(self) -> dict[str, Any]:
        """Plain-data copy of every metric, label sets rendered as k=v strings."""
        with self._lock:
            counters = list(self._counters.values())
            histograms = list(self._histograms.values())
        return {
            "counters": {
                c.name: {",".join(f"{k}={v}" for k, v in key): value for key, value in c.series.items()}
                for c in counters
            },
            "histograms": {h.name: h.get_stats() for h in histograms},
        }

    def reset(self) -> None:
        with self._lock:
            for counter in self._counters.values():
                counter.reset()
            for histogram in self._histograms.values():
                histogram.reset()


_registry = MetricsRegistry()


def get_registry() -> MetricsRegistry:
    """Get the process-wide metrics registry."""
    return _registry


def reset_metrics() -> None:
    """Zero every metric (tests)."""
    _registry.reset()
