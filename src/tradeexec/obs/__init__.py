from tradeexec.obs.metric_registry import REGISTRY, MetricDef, MetricType, validate_registry
from tradeexec.obs.metrics import (
    InMemoryMetricsSink,
    LoggingMetricsSink,
    MetricsSink,
    emit_metric,
    get_metrics_sink,
    inc_counter,
    set_gauge,
    set_metrics_sink,
)
from tradeexec.obs.prometheus import PrometheusMetricsSink

__all__ = [
    "InMemoryMetricsSink",
    "LoggingMetricsSink",
    "MetricDef",
    "MetricType",
    "MetricsSink",
    "PrometheusMetricsSink",
    "REGISTRY",
    "emit_metric",
    "get_metrics_sink",
    "inc_counter",
    "set_gauge",
    "set_metrics_sink",
    "validate_registry",
]
