"""Combine detector results into a single risk verdict."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from threatguard.detection.models import (
    SEVERITY_WEIGHTS,
    Action,
    DetectorResult,
    Severity,
    ThreatAnalysis,
)

# Risk above which a request needs action even without a critical result
ACTION_THRESHOLD = 0.7


def overall_risk(results: Iterable[DetectorResult]) -> float:
    """Severity-weighted average of result confidences (0 with no results)."""
    numerator = 0.0
    denominator = 0.0
    for result in results:
        weight = SEVERITY_WEIGHTS[result.severity]
        numerator += result.confidence * weight
        denominator += weight
    if denominator == 0:
        return 0.0
    return min(1.0, numerator / denominator)


def aggregate(
    results: Iterable[DetectorResult],
    *,
    source_id: str,
    path: str,
    method: str,
    timestamp: datetime | None = None,
    processing_time_ms: float = 0.0,
) -> ThreatAnalysis:
    """Build a :class:`ThreatAnalysis` from the results of one request."""
    kept = list(results)
    risk = overall_risk(kept)
    has_critical = any(r.severity == Severity.CRITICAL for r in kept)
    return ThreatAnalysis(
        timestamp=timestamp or datetime.now(UTC),
        source_id=source_id,
        path=path,
        method=method,
        results=kept,
        overall_risk=risk,
        requires_action=risk > ACTION_THRESHOLD or has_critical,
        processing_time_ms=processing_time_ms,
    )


def recommend(
    analysis: ThreatAnalysis,
    *,
    block_threshold: float = 0.9,
    monitor_threshold: float = 0.5,
) -> Action:
    """Map an analysis onto the request-level action."""
    if analysis.overall_risk > block_threshold or analysis.has_critical:
        return Action.BLOCK
    if analysis.requires_action:
        return Action.CHALLENGE
    if analysis.overall_risk > monitor_threshold:
        return Action.MONITOR
    return Action.ALLOW
