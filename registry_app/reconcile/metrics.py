"""Prometheus metrics helpers for the reconciliation engine."""

from __future__ import annotations

from typing import Literal, Mapping

from prometheus_client import Counter, Histogram

_batch_counter = Counter(
    "registry_change_batches_total",
    "Change batches processed, by source type and outcome.",
    ["source_type", "status"],
)
_op_counter = Counter(
    "registry_person_versions_total",
    "Person versions written, by change type.",
    ["change_type"],
)
_batch_duration = Histogram(
    "registry_change_batch_duration_seconds",
    "Duration of change batch application in seconds.",
    ["source_type"],
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
_conflict_counter = Counter(
    "registry_conflicts_total",
    "Conflicts surfaced to callers, by conflict kind.",
    ["kind"],
)
_decision_counter = Counter(
    "registry_moderation_decisions_total",
    "Moderation decisions, by outcome.",
    ["decision"],
)
_simulation_counter = Counter(
    "registry_simulations_total",
    "Dry-run diffs computed.",
)


def record_batch(
    *,
    source_type: str,
    status: Literal["success", "failure"],
    duration_seconds: float,
    counts: Mapping[str, int] | None = None,
) -> None:
    """Capture metrics for one applied (or failed) change batch."""

    _batch_counter.labels(source_type=source_type, status=status).inc()
    _batch_duration.labels(source_type=source_type).observe(duration_seconds)
    if status != "success" or not counts:
        return
    for change_type, key in (("INSERT", "inserted"), ("UPDATE", "updated"), ("DELETE", "deleted")):
        amount = int(counts.get(key, 0))
        if amount:
            _op_counter.labels(change_type=change_type).inc(amount)


def record_conflict(kind: str) -> None:
    _conflict_counter.labels(kind=kind).inc()


def record_moderation_decision(decision: Literal["approved", "rejected"]) -> None:
    _decision_counter.labels(decision=decision).inc()


def record_simulation() -> None:
    _simulation_counter.inc()
