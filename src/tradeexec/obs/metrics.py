from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Protocol

from tradeexec.obs.metric_registry import REGISTRY, MetricDef, MetricType

logger = logging.getLogger(__name__)

Number = float | int | Decimal
_SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


class MetricsSink(Protocol):
    def emit(self, defn: MetricDef, value: Number, labels: dict[str, str]) -> None: ...


class LoggingMetricsSink:
    """Default sink: metrics become debug log lines for the log pipeline to scrape."""

    def emit(self, defn: MetricDef, value: Number, labels: dict[str, str]) -> None:
        logger.debug(
            "metric_emit",
            extra={
                "extra": {
                    "metric_name": defn.name,
                    "metric_type": defn.type.value,
                    "metric_value": str(value),
                    "labels": labels,
                }
            },
        )


class InMemoryMetricsSink:
    """Aggregates series in memory; counters add up and gauges keep the last value."""

    def __init__(self) -> None:
        self.values: dict[_SeriesKey, float] = {}

    def emit(self, defn: MetricDef, value: Number, labels: dict[str, str]) -> None:
        key = (defn.name, tuple(sorted(labels.items())))
        if defn.type is MetricType.COUNTER:
            self.values[key] = self.values.get(key, 0.0) + float(value)
        else:
            self.values[key] = float(value)

    def get(self, name: str, **labels: str) -> float:
        return self.values.get((name, tuple(sorted(labels.items()))), 0.0)


_sink: MetricsSink = LoggingMetricsSink()
_STRICT_REGISTRY = os.getenv("OBS_METRICS_STRICT", "1") != "0"


def set_metrics_sink(sink: MetricsSink) -> None:
    global _sink
    _sink = sink


def get_metrics_sink() -> MetricsSink:
    return _sink


def emit_metric(
    name: str,
    value: Number,
    labels: dict[str, str],
    *,
    expected: MetricType | None = None,
) -> None:
    defn = REGISTRY.get(name)
    if defn is None:
        if _STRICT_REGISTRY:
            raise ValueError(f"unknown metric name: {name}")
        logger.error("metric_unknown", extra={"extra": {"name": name}})
        return
    if expected is not None and defn.type is not expected:
        raise ValueError(f"metric {name} is a {defn.type.value}, not a {expected.value}")
    missing = [label for label in defn.required_labels if label not in labels]
    if missing:
        raise ValueError(f"missing labels for {name}: {missing}")
    _sink.emit(defn, value, labels)


def inc_counter(name: str, labels: dict[str, str], delta: int = 1) -> None:
    emit_metric(name, delta, labels, expected=MetricType.COUNTER)


def set_gauge(name: str, value: Number, labels: dict[str, str]) -> None:
    emit_metric(name, value, labels, expected=MetricType.GAUGE)
