"""Service metrics: registry, default series and Prometheus rendering."""
from .definitions import DEFAULT_METRIC_DEFINITIONS
from .exporters import PrometheusExporter
from .registry import MetricsRegistry

_FACTORIES = {
    "counter": MetricsRegistry.counter,
    "distribution": MetricsRegistry.distribution,
}


def register_default_metrics(registry: MetricsRegistry) -> MetricsRegistry:
    """Create every default series in ``registry`` so it is exported from the start."""
    for name, kind, description, label_names in DEFAULT_METRIC_DEFINITIONS:
        _FACTORIES[kind](registry, name, description=description, label_names=label_names)
    return registry


metrics_registry = register_default_metrics(MetricsRegistry())

__all__ = [
    "MetricsRegistry",
    "PrometheusExporter",
    "metrics_registry",
    "register_default_metrics",
]
