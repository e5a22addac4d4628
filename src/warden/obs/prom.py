"""Prometheus instrumentation for warden pipeline runs and admission decisions.

Labels stay low-cardinality: stage names, outcome kinds, reason tokens and
attestor names only (never digests).
"""
from __future__ import annotations
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# Registry must be created before metric objects reference it.
REGISTRY = CollectorRegistry()

RUNS = Counter(
    "warden_pipeline_runs_total",
    "Pipeline runs by terminal outcome.",
    ["outcome", "reason"],
    registry=REGISTRY,
)
STAGE_LATENCY = Histogram(
    "warden_stage_latency_seconds",
    "Wall time spent per pipeline stage.",
    ["stage"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 15, 30, 60, 120, 300, 600),
    registry=REGISTRY,
)
GATE_DECISIONS = Counter(
    "warden_gate_decisions_total",
    "Severity gate decisions.",
    ["decision", "threshold"],
    registry=REGISTRY,
)
SCAN_POLLS = Counter(
    "warden_scan_polls_total",
    "Scan result polls by result (ready, pending, unavailable).",
    ["result"],
    registry=REGISTRY,
)
ATTESTATIONS = Counter(
    "warden_attestations_total",
    "Attest calls by result (created, existing, error).",
    ["attestor", "result"],
    registry=REGISTRY,
)
ADMISSION_DECISIONS = Counter(
    "warden_admission_decisions_total",
    "Admission controller decisions.",
    ["decision", "enforcement"],
    registry=REGISTRY,
)


def observe_stage(stage: str, seconds: float):
    STAGE_LATENCY.labels(stage=stage).observe(max(seconds, 0.0))


def observe_run(outcome: str, reason: str = ""):
    RUNS.labels(outcome=outcome, reason=reason or "none").inc()


def prometheus_latest() -> tuple[bytes, str]:
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
