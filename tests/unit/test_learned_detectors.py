"""Tests for the scorer-backed exfiltration and anomaly detectors."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from threatguard.detection.features import (
    ANOMALY_FEATURES,
    EXFILTRATION_FEATURES,
    StaticGeoRisk,
)
from threatguard.detection.learned import AnomalyDetector, DataExfiltrationDetector
from threatguard.detection.models import Severity, ThreatKind
from threatguard.detection.rate_window import RateWindowTracker
from threatguard.detection.scorers import ReconstructionScorer, ScorerWithFallback

LARGE = 20 * 1024 * 1024
NIGHT = datetime(2024, 3, 12, 23, 30, tzinfo=UTC)


class FixedScorer:
    """Scorer returning a constant and remembering the last vector."""

    def __init__(self, value: float, name: str = "fixed") -> None:
        self.value = value
        self.name = name
        self.last_vector: list[float] | None = None

    @property
    def is_ready(self) -> bool:
        return True

    def score(self, vector):
        self.last_vector = list(vector)
        return self.value


class FixedThreatScores:
    def __init__(self, score: float) -> None:
        self.score = score

    def threat_score(self, source_id: str) -> float:
        return self.score


# ---------------------------------------------------------------------------
# Data exfiltration
# ---------------------------------------------------------------------------


class TestDataExfiltrationDetector:
    """Response-size aware exfiltration detection."""

    def test_no_opinion_without_response_size(self, make_features):
        assert DataExfiltrationDetector().detect(make_features()) is None

    def test_small_response_not_reported(self, make_features):
        assert DataExfiltrationDetector().detect(make_features(response_size=2048)) is None

    def test_large_response_to_non_admin_is_always_reported(self, make_features):
        result = DataExfiltrationDetector().detect(make_features(response_size=LARGE))
        assert result is not None
        assert result.kind == ThreatKind.DATA_EXFILTRATION
        assert result.confidence == pytest.approx(0.3)
        assert result.severity == Severity.MEDIUM
        assert result.metadata["large_response"] is True
        assert result.metadata["response_size"] == LARGE

    def test_large_response_to_admin_not_reported(self, make_features):
        features = make_features(response_size=LARGE, user_id="u1", user_role="admin")
        assert DataExfiltrationDetector().detect(features) is None

    def test_bulk_export_at_night_is_high(self, make_features):
        features = make_features(
            "/export/all/users.csv",
            query={"limit": "5000"},
            response_size=LARGE,
            now=NIGHT,
        )
        result = DataExfiltrationDetector().detect(features)
        assert result is not None
        assert result.confidence == pytest.approx(0.8)
        assert result.severity == Severity.HIGH

    def test_injected_scorer(self, make_features):
        scorer = FixedScorer(0.75, name="exfil_model")
        detector = DataExfiltrationDetector(scorer)
        result = detector.detect(make_features(response_size=1000))
        assert result is not None
        assert result.severity == Severity.HIGH
        assert result.metadata["scorer"] == "exfil_model"

    def test_context_is_folded_into_vector(self, make_features):
        scorer = FixedScorer(0.0)
        detector = DataExfiltrationDetector(
            scorer, threat_scores=FixedThreatScores(0.5), geo=StaticGeoRisk(0.25)
        )
        detector.detect(make_features(response_size=1000))
        slots = dict(zip(EXFILTRATION_FEATURES, scorer.last_vector, strict=True))
        assert slots["historical_threat_score"] == pytest.approx(0.5)
        assert slots["geo_risk"] == pytest.approx(0.25)


# ---------------------------------------------------------------------------
# Anomaly
# ---------------------------------------------------------------------------


class TestAnomalyDetector:
    """Deviation from ordinary request traffic."""

    def test_ordinary_request_not_reported(self, make_features):
        assert AnomalyDetector().detect(make_features()) is None

    def test_hostile_context_is_reported(self, make_features):
        detector = AnomalyDetector(
            threat_scores=FixedThreatScores(1.0), geo=StaticGeoRisk(1.0)
        )
        result = detector.detect(make_features())
        assert result is not None
        assert result.kind == ThreatKind.ANOMALY
        assert result.severity == Severity.HIGH
        assert result.metadata["scorer"] == "request_deviation"
        assert "reconstruction_error" in result.metadata

    def test_records_source_rate(self, clock, make_features):
        tracker = RateWindowTracker(60.0, clock=clock)
        detector = AnomalyDetector(FixedScorer(0.0), rate_tracker=tracker)
        detector.detect(make_features(source="8.8.4.4"))
        detector.detect(make_features("/other", source="8.8.4.4"))
        assert tracker.peek("8.8.4.4", "*").count == 2

    def test_rate_is_normalised(self, clock, make_features):
        tracker = RateWindowTracker(60.0, clock=clock)
        detector = AnomalyDetector(FixedScorer(0.0), rate_tracker=tracker, max_rate_per_second=0.1)
        for _ in range(2):
            vector = detector.vector(make_features())
        rate = dict(zip(ANOMALY_FEATURES, vector, strict=True))["request_rate"]
        # 2 requests over a 60s window against 0.1 req/s
        assert rate == pytest.approx(1 / 3)

    def test_threshold_is_exclusive(self, make_features):
        assert AnomalyDetector(FixedScorer(0.7)).detect(make_features()) is None
        result = AnomalyDetector(FixedScorer(0.85)).detect(make_features())
        assert result is not None
        assert result.severity == Severity.MEDIUM

    def test_fitted_model_reports_reconstruction_error(self, make_features):
        # Train on a single repeated request so anything else is far away
        detector = AnomalyDetector()
        baseline = detector.vector(make_features())
        model = ReconstructionScorer(n_components=1).fit([baseline] * 25)
        scorer = ScorerWithFallback(model, FixedScorer(0.0))
        detector = AnomalyDetector(scorer)
        odd = make_features(
            "/a/b/c/d/e/f/g/h/i/j/k/l/m/n/o/p",
            method="DELETE",
            body="x" * 2000,
            query={str(i): "1" for i in range(10)},
            headers={f"X-H{i}": "v" for i in range(20)},
        )
        result = detector.detect(odd)
        assert result is not None
        assert result.metadata["scorer"] == "reconstruction"
        assert result.metadata["reconstruction_error"] > 0

    @pytest.mark.parametrize(
        ("confidence", "severity"),
        [(0.95, Severity.HIGH), (0.85, Severity.MEDIUM), (0.75, Severity.LOW)],
    )
    def test_severity_bands(self, confidence, severity):
        assert AnomalyDetector.severity_for(confidence) == severity
