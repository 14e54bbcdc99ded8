"""Process-wide metric lookup by name."""
from __future__ import annotations

from threading import Lock
from typing import Dict, Iterable, Tuple, Type, TypeVar

from .base import CounterMetric, DistributionMetric, Metric

_M = TypeVar("_M", bound=Metric)


class MetricsRegistry:
    """Creates metrics on first use; later lookups return the same instance."""

    def __init__(self) -> None:
        self._by_name: Dict[str, Metric] = {}
        self._lock = Lock()

    def _lookup(self, kind: Type[_M], name: str, description: str, label_names: Iterable[str] | None) -> _M:
        with self._lock:
            metric = self._by_name.get(name)
            if metric is None:
                metric = self._by_name[name] = kind(name, description=description, label_names=label_names)
        if not isinstance(metric, kind):
            raise TypeError(f"Metric '{name}' is a {metric.metric_type}, not a {kind.metric_type}")
        return metric

    def counter(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> CounterMetric:
        return self._lookup(CounterMetric, name, description, label_names)

    def distribution(
        self, name: str, *, description: str = "", label_names: Iterable[str] | None = None
    ) -> DistributionMetric:
        return self._lookup(DistributionMetric, name, description, label_names)

    def metrics(self) -> Tuple[Metric, ...]:
        with self._lock:
            return tuple(self._by_name.values())
