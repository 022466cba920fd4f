from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass(frozen=True)
class MetricDef:
    name: str
    type: MetricType
    required_labels: tuple[str, ...] = ()


REGISTRY: dict[str, MetricDef] = {
    "decision_admission_total": MetricDef(
        name="decision_admission_total",
        type=MetricType.COUNTER,
        required_labels=("outcome",),
    ),
    "decision_orders_submitted_total": MetricDef(
        name="decision_orders_submitted_total",
        type=MetricType.COUNTER,
        required_labels=("venue",),
    ),
    "credential_quarantined_total": MetricDef(
        name="credential_quarantined_total",
        type=MetricType.COUNTER,
        required_labels=("venue", "cause"),
    ),
    "credential_fallback_exhausted_total": MetricDef(
        name="credential_fallback_exhausted_total",
        type=MetricType.COUNTER,
        required_labels=("operation",),
    ),
    "reconcile_orders_total": MetricDef(
        name="reconcile_orders_total",
        type=MetricType.COUNTER,
        required_labels=("action",),
    ),
    "reconcile_run_duration_ms": MetricDef(
        name="reconcile_run_duration_ms",
        type=MetricType.GAUGE,
    ),
}


def validate_registry(registry: dict[str, MetricDef] | None = None) -> None:
    for key, defn in (registry or REGISTRY).items():
        if key != defn.name:
            raise ValueError(f"metric registry key mismatch: {key} != {defn.name}")
