"""Scorer-backed detectors: data exfiltration and request anomaly.

Both detectors build a fixed-length vector from the request plus
cross-request context (source threat history, geo risk, request rate) and
hand it to an injected :class:`~threatguard.detection.scorers.Scorer`.
"""

from __future__ import annotations

from typing import Protocol

from threatguard.detection.features import (
    GeoRiskProvider,
    StaticGeoRisk,
    VectorContext,
    anomaly_vector,
    exfiltration_vector,
)
from threatguard.detection.models import DetectorResult, RequestFeatures, Severity, ThreatKind
from threatguard.detection.rate_window import RateWindowTracker
from threatguard.detection.scorers import (
    ReconstructionModel,
    RuleBasedExfiltrationScorer,
    Scorer,
    ScorerWithFallback,
    default_request_anomaly_scorer,
)

# Endpoint key used to track the overall request rate of a source
_ALL_ENDPOINTS = "*"


class ThreatScoreSource(Protocol):
    """Historical threat score lookup (0 for unknown sources)."""

    def threat_score(self, source_id: str) -> float: ...


class DataExfiltrationDetector:
    """Flags responses that look like bulk data extraction.

    Runs only once the response size is known. Reports when the scorer's
    confidence exceeds 0.6, or whenever the large-response rule fired for a
    non-admin, so the weaker size signal is never silently dropped.
    """

    kind = ThreatKind.DATA_EXFILTRATION
    report_threshold = 0.6

    def __init__(
        self,
        scorer: Scorer | None = None,
        *,
        rules: RuleBasedExfiltrationScorer | None = None,
        threat_scores: ThreatScoreSource | None = None,
        geo: GeoRiskProvider | None = None,
    ) -> None:
        self._rules = rules or RuleBasedExfiltrationScorer()
        self._scorer: Scorer = scorer or self._rules
        self._threat_scores = threat_scores
        self._geo = geo or StaticGeoRisk()

    def context(self, features: RequestFeatures) -> VectorContext:
        historical = (
            self._threat_scores.threat_score(features.source_id) if self._threat_scores else 0.0
        )
        return VectorContext(
            historical_threat_score=historical,
            geo_risk=self._geo.geo_risk(features.source_id),
        )

    @staticmethod
    def severity_for(confidence: float) -> Severity:
        if confidence > 0.8:
            return Severity.CRITICAL
        if confidence > 0.7:
            return Severity.HIGH
        return Severity.MEDIUM

    def detect(self, features: RequestFeatures) -> DetectorResult | None:
        if features.response_size is None:
            return None

        vector = exfiltration_vector(features, self.context(features))
        confidence = self._scorer.score(vector)
        large_response = self._rules.is_large_response(vector) and not features.is_admin
        if large_response:
            confidence = max(confidence, self._rules.score(vector))

        if confidence <= self.report_threshold and not large_response:
            return None
        return DetectorResult(
            kind=self.kind,
            confidence=confidence,
            severity=self.severity_for(confidence),
            detail="Potential data exfiltration detected",
            metadata={
                "response_size": features.response_size,
                "large_response": large_response,
                "scorer": self._scorer.name,
            },
        )


class AnomalyDetector:
    """Flags requests that deviate from ordinary traffic."""

    kind = ThreatKind.ANOMALY
    report_threshold = 0.7

    def __init__(
        self,
        scorer: Scorer | None = None,
        *,
        threat_scores: ThreatScoreSource | None = None,
        geo: GeoRiskProvider | None = None,
        rate_tracker: RateWindowTracker | None = None,
        max_rate_per_second: float = 1.0,
    ) -> None:
        self._scorer: Scorer = scorer or default_request_anomaly_scorer()
        self._threat_scores = threat_scores
        self._geo = geo or StaticGeoRisk()
        self._rate_tracker = rate_tracker
        self._max_rate = max_rate_per_second

    @property
    def scorer(self) -> Scorer:
        return self._scorer

    def context(self, features: RequestFeatures) -> VectorContext:
        historical = (
            self._threat_scores.threat_score(features.source_id) if self._threat_scores else 0.0
        )
        rate = 0.0
        if self._rate_tracker is not None:
            snapshot = self._rate_tracker.record(features.source_id, _ALL_ENDPOINTS)
            rate = min(1.0, snapshot.rate_per_second / self._max_rate)
        return VectorContext(
            historical_threat_score=historical,
            request_rate=rate,
            geo_risk=self._geo.geo_risk(features.source_id),
        )

    def vector(self, features: RequestFeatures) -> list[float]:
        return anomaly_vector(features, self.context(features))

    @staticmethod
    def severity_for(confidence: float) -> Severity:
        if confidence > 0.9:
            return Severity.HIGH
        if confidence > 0.8:
            return Severity.MEDIUM
        return Severity.LOW

    def _reconstruction_error(self, vector: list[float]) -> float | None:
        if isinstance(self._scorer, ScorerWithFallback):
            return self._scorer.reconstruction_error(vector)
        if isinstance(self._scorer, ReconstructionModel):
            return self._scorer.reconstruction_error(vector)
        return None

    def detect(self, features: RequestFeatures) -> DetectorResult | None:
        vector = self.vector(features)
        confidence = self._scorer.score(vector)
        if confidence <= self.report_threshold:
            return None

        metadata: dict[str, object] = {"scorer": self._scorer.name}
        error = self._reconstruction_error(vector)
        if error is not None:
            metadata["reconstruction_error"] = round(error, 6)
        return DetectorResult(
            kind=self.kind,
            confidence=confidence,
            severity=self.severity_for(confidence),
            detail="Anomalous request pattern detected",
            metadata=metadata,
        )
