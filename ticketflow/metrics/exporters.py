"""Render registry contents for external monitoring systems."""
from __future__ import annotations

import logging
from typing import Sequence

from .base import Metric
from .registry import MetricsRegistry

logger = logging.getLogger(__name__)


def _label_text(names: Sequence[str], values: Sequence[str]) -> str:
    if not values:
        return ""
    escaped = (v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") for v in values)
    return "{" + ",".join(f'{name}="{value}"' for name, value in zip(names, escaped)) + "}"


def _render(metric: Metric) -> list[str]:
    lines = [f"# HELP {metric.name} {metric.description}", f"# TYPE {metric.name} {metric.metric_type}"]
    for label_values, sample in sorted(metric.snapshot().items()):
        labels = _label_text(metric.label_names, label_values)
        if metric.metric_type == "counter":
            lines.append(f"{metric.name}{labels} {sample['value']}")
        else:
            lines.append(f"{metric.name}_count{labels} {sample['count']}")
            lines.append(f"{metric.name}_sum{labels} {sample['sum']}")
    return lines


class PrometheusExporter:
    """Prometheus text exposition format (version 0.0.4)."""

    content_type = "text/plain; version=0.0.4; charset=utf-8"

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def build_payload(self) -> str:
        lines = [line for metric in self.registry.metrics() for line in _render(metric)]
        logger.debug("Rendered %d metric lines", len(lines))
        return "\n".join(lines) + "\n" if lines else ""
