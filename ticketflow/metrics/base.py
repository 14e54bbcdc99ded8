"""Counter and summary types held by the metrics registry."""
from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from time import perf_counter
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

LabelValues = Tuple[str, ...]
Labels = Optional[Mapping[str, str]]


class Metric:
    """A named series family; every sample is keyed by its label values in order."""

    metric_type = "untyped"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        self.name = name
        self.description = description
        self.label_names: LabelValues = tuple(label_names or ())
        self._lock = Lock()

    def _label_key(self, labels: Labels) -> LabelValues:
        given = dict(labels or {})
        if set(given) != set(self.label_names):
            raise ValueError(
                f"Metric '{self.name}' expects labels {list(self.label_names)}, got {sorted(given)}"
            )
        return tuple(str(given[name]) for name in self.label_names)

    def snapshot(self) -> Dict[LabelValues, Dict[str, float]]:
        raise NotImplementedError


class CounterMetric(Metric):
    metric_type = "counter"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        self._totals: Dict[LabelValues, float] = {}

    def inc(self, amount: float = 1.0, *, labels: Labels = None) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = self._label_key(labels)
        with self._lock:
            self._totals[key] = self._totals.get(key, 0.0) + amount

    def value(self, labels: Labels = None) -> float:
        key = self._label_key(labels)
        with self._lock:
            return self._totals.get(key, 0.0)

    def snapshot(self) -> Dict[LabelValues, Dict[str, float]]:
        with self._lock:
            return {key: {"value": total} for key, total in self._totals.items()}


class DistributionMetric(Metric):
    """Count, sum, min and max of observed values, exported as a summary."""

    metric_type = "summary"

    def __init__(self, name: str, *, description: str = "", label_names: Iterable[str] | None = None) -> None:
        super().__init__(name, description=description, label_names=label_names)
        # label key -> [count, sum, min, max]
        self._series: Dict[LabelValues, list[float]] = {}

    def observe(self, value: float, *, labels: Labels = None) -> None:
        key = self._label_key(labels)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                self._series[key] = [1.0, value, value, value]
                return
            series[0] += 1
            series[1] += value
            series[2] = min(series[2], value)
            series[3] = max(series[3], value)

    def snapshot(self) -> Dict[LabelValues, Dict[str, float]]:
        with self._lock:
            return {
                key: {"count": count, "sum": total, "min": low, "max": high}
                for key, (count, total, low, high) in self._series.items()
            }


@contextmanager
def track_duration(metric: DistributionMetric, *, labels: Labels = None) -> Iterator[None]:
    started = perf_counter()
    try:
        yield
    finally:
        metric.observe(perf_counter() - started, labels=labels)
