"""Prometheus metrics for the Metalayer core.

Metrics goals:
- low-cardinality labels (never actor ids, community ids or fingerprints)
- visibility into degraded paths: fallback decisions, local executions and
  localOnly anchors

Recording a metric must never break the pipeline.
"""
from __future__ import annotations

import logging

from prometheus_client import Counter, Histogram

logger = logging.getLogger("metalayer_core.metrics")


DECISIONS_TOTAL = Counter(
    "metalayer_decisions_total",
    "Total policy decisions",
    ["source", "outcome"],
)
EXECUTIONS_TOTAL = Counter(
    "metalayer_executions_total",
    "Total execution attempts",
    ["mode", "outcome"],
)
ANCHORS_TOTAL = Counter(
    "metalayer_anchors_total",
    "Total ledger anchoring attempts",
    ["status"],
)
PIPELINE_LATENCY_SECONDS = Histogram(
    "metalayer_pipeline_latency_seconds",
    "Time from request receipt to local record persistence",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)


def record_decision(source: str, allowed: bool) -> None:
    try:
        DECISIONS_TOTAL.labels(source=str(source), outcome="allow" if allowed else "block").inc()
    except Exception:  # pragma: no cover
        logger.debug("decision metric failed", exc_info=True)


def record_execution(mode: str, outcome: str) -> None:
    try:
        EXECUTIONS_TOTAL.labels(mode=str(mode), outcome=str(outcome)).inc()
    except Exception:  # pragma: no cover
        logger.debug("execution metric failed", exc_info=True)


def record_anchor(status: str) -> None:
    try:
        ANCHORS_TOTAL.labels(status=str(status)).inc()
    except Exception:  # pragma: no cover
        logger.debug("anchor metric failed", exc_info=True)


def observe_pipeline_latency(seconds: float) -> None:
    try:
        PIPELINE_LATENCY_SECONDS.observe(max(0.0, float(seconds)))
    except Exception:  # pragma: no cover
        logger.debug("latency metric failed", exc_info=True)
