from __future__ import annotations

from decimal import Decimal
from threading import Lock

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from tradeexec.obs.metric_registry import MetricDef, MetricType


class PrometheusMetricsSink:
    """Mirrors registry metrics into prometheus_client collectors.

    Collectors are created on first emission from the metric definition, so
    label names always equal ``MetricDef.required_labels``. Each sink owns its
    own ``CollectorRegistry``; the process-global one is never touched.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._collectors: dict[str, Counter | Gauge] = {}
        self._lock = Lock()

    def _collector(self, defn: MetricDef) -> Counter | Gauge:
        with self._lock:
            collector = self._collectors.get(defn.name)
            if collector is None:
                kind = Counter if defn.type is MetricType.COUNTER else Gauge
                collector = kind(
                    defn.name,
                    defn.name.replace("_", " "),
                    labelnames=defn.required_labels,
                    registry=self.registry,
                )
                self._collectors[defn.name] = collector
            return collector

    def emit(self, defn: MetricDef, value: float | int | Decimal, labels: dict[str, str]) -> None:
        collector = self._collector(defn)
        series = (
            collector.labels(**{name: str(labels[name]) for name in defn.required_labels})
            if defn.required_labels
            else collector
        )
        if defn.type is MetricType.COUNTER:
            series.inc(float(value))
        else:
            series.set(float(value))

    def render(self) -> bytes:
        return generate_latest(self.registry)
