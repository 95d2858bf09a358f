"""Tests for payload decoders and the SQL injection / XSS detectors."""

from __future__ import annotations

import time

import pytest

from threatguard.detection.decoders import decoded_variants, html_entity_decode, url_decode
from threatguard.detection.models import Severity, ThreatKind
from threatguard.detection.patterns import (
    SQLInjectionDetector,
    XSSDetector,
    signatures_for,
)
from threatguard.detection.patterns import _SQL_SIGNATURES as SQL_SIGNATURES

# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------


class TestDecoders:
    """URL and HTML entity decoding."""

    def test_url_decode_single(self):
        assert url_decode("%27%20OR%201%3D1") == "' OR 1=1"

    def test_url_decode_double_encoded(self):
        assert url_decode("%2527") == "'"

    def test_url_decode_plain_text_unchanged(self):
        assert url_decode("hello") == "hello"

    def test_url_decode_malformed_escape_kept(self):
        assert url_decode("100%zz") == "100%zz"

    def test_html_entity_decode(self):
        assert html_entity_decode("&lt;script&gt;") == "<script>"
        assert html_entity_decode("&#60;b&#x3e;") == "<b>"

    def test_decoded_variants_only_differing(self):
        assert decoded_variants("plain") == []
        variants = decoded_variants("&lt;x&gt;%20", html_entities=True)
        assert [name for name, _ in variants] == ["url_encoded", "html_entity"]


# ---------------------------------------------------------------------------
# SQL injection
# ---------------------------------------------------------------------------


class TestSQLInjectionDetector:
    """Additive SQL signature scoring."""

    def test_tautology_in_query_is_reported(self, make_features):
        detector = SQLInjectionDetector()
        features = make_features("/api/users", query={"id": "1' OR 1=1 --"})
        result = detector.detect(features)
        assert result is not None
        assert result.kind == ThreatKind.SQL_INJECTION
        assert result.confidence > 0.5
        assert result.metadata["field"] == "query"
        assert "or_tautology" in result.metadata["patterns"]

    def test_union_select_is_critical(self, make_features):
        detector = SQLInjectionDetector()
        features = make_features(
            "/search", query={"q": "1 UNION SELECT password FROM users; DROP TABLE users --"}
        )
        result = detector.detect(features)
        assert result is not None
        assert result.severity == Severity.CRITICAL

    def test_benign_request_is_not_reported(self, make_features):
        detector = SQLInjectionDetector()
        features = make_features("/api/items", query={"page": "2", "sort": "name"})
        assert detector.detect(features) is None

    def test_single_keyword_is_below_threshold(self, make_features):
        """One generic keyword scores 0.3, under the 0.5 reporting bar."""
        detector = SQLInjectionDetector()
        features = make_features("/notes", body={"text": "please select a colour"})
        assert detector.detect(features) is None

    def test_url_encoded_payload_adds_decoded_increment(self):
        detector = SQLInjectionDetector()
        raw_score, _ = detector.score_text("1' OR 1=1")
        encoded_score, matched = detector.score_text("1%27%20OR%201%3D1%20--")
        assert any(name.startswith("url_encoded:") for name in matched)
        assert encoded_score > 0
        assert raw_score > 0

    def test_confidence_capped_at_one(self):
        detector = SQLInjectionDetector(sensitivity="strict")
        score, _ = detector.score_text(
            "' or 1=1; DROP TABLE x -- UNION SELECT sleep(5) FROM information_schema"
        )
        assert score == 1.0

    def test_scan_is_truncated(self):
        detector = SQLInjectionDetector(max_scan_length=10)
        score, _ = detector.score_text("a" * 50 + " UNION SELECT 1 --")
        assert score == 0.0

    def test_severity_bands(self):
        detector = SQLInjectionDetector()
        assert detector.severity_for(0.9) == Severity.CRITICAL
        assert detector.severity_for(0.7) == Severity.HIGH
        assert detector.severity_for(0.5) == Severity.MEDIUM


class TestSensitivity:
    """Signature sets grow with sensitivity."""

    def test_levels_are_nested(self):
        low = {s.name for s in signatures_for(SQL_SIGNATURES, "low")}
        medium = {s.name for s in signatures_for(SQL_SIGNATURES, "medium")}
        strict = {s.name for s in signatures_for(SQL_SIGNATURES, "strict")}
        assert low < medium < strict

    def test_unknown_level_falls_back_to_medium(self):
        assert signatures_for(SQL_SIGNATURES, "bogus") == signatures_for(SQL_SIGNATURES, "medium")

    def test_strict_catches_schema_enumeration(self, make_features):
        features = make_features("/q", query={"q": "information_schema.tables sleep(3)"})
        assert SQLInjectionDetector(sensitivity="low").detect(features) is None
        assert SQLInjectionDetector(sensitivity="strict").detect(features) is not None


# ---------------------------------------------------------------------------
# XSS
# ---------------------------------------------------------------------------


class TestXSSDetector:
    """Additive XSS signature scoring."""

    def test_script_tag_in_body(self, make_features):
        detector = XSSDetector()
        features = make_features(
            "/comments", method="POST", body={"text": "<script>alert(1)</script>"}
        )
        result = detector.detect(features)
        assert result is not None
        assert result.kind == ThreatKind.XSS
        assert result.metadata["field"] == "body"

    def test_header_is_scanned(self, make_features):
        detector = XSSDetector()
        features = make_features(
            "/", headers={"Referer": "javascript:alert(document.cookie)<script>x</script>"}
        )
        result = detector.detect(features)
        assert result is not None
        assert result.metadata["field"] == "header:Referer"

    def test_url_alone_is_not_a_sink(self, make_features):
        detector = XSSDetector()
        features = make_features("/<script>alert(1)</script>")
        assert detector.detect(features) is None

    def test_entity_encoded_payload(self):
        detector = XSSDetector()
        score, matched = detector.score_text("&lt;script&gt;alert(1)&lt;/script&gt;")
        assert any(name.startswith("html_entity:") for name in matched)
        # Two signatures, entity-decoded only: 2 x 0.2
        assert score == pytest.approx(0.4)

    def test_threshold_is_exclusive(self):
        detector = XSSDetector()
        assert detector.is_threat(0.4) is False
        assert detector.is_threat(0.41) is True

    @pytest.mark.parametrize(
        ("confidence", "severity"),
        [(0.9, Severity.HIGH), (0.7, Severity.MEDIUM), (0.5, Severity.LOW)],
    )
    def test_severity_bands(self, confidence, severity):
        assert XSSDetector().severity_for(confidence) == severity


# ---------------------------------------------------------------------------
# Scan cost
# ---------------------------------------------------------------------------

# Well under the 200ms default detector timeout
SCAN_BUDGET_SECONDS = 0.1


def _timed(detector, text: str) -> tuple[float, float]:
    start = time.perf_counter()
    score, _ = detector.score_text(text)
    return score, time.perf_counter() - start


class TestPaddedPayloads:
    """Padding up to the scan limit must not push a scan past the timeout."""

    def test_quote_padding_keeps_union_select_visible(self):
        detector = SQLInjectionDetector()
        score, elapsed = _timed(detector, "1 UNION SELECT password FROM users " + "'" * 8150)
        assert elapsed < SCAN_BUDGET_SECONDS
        assert detector.is_threat(score)

    @pytest.mark.parametrize("padding", ["'" * 8192, ";" * 8192, "'a" * 4096, "' or '" * 1365])
    def test_sql_padding(self, padding):
        _, elapsed = _timed(SQLInjectionDetector(sensitivity="strict"), padding)
        assert elapsed < SCAN_BUDGET_SECONDS

    @pytest.mark.parametrize(
        "padding", ["<script>" * 1024, "<a" * 4096, "<img " * 1638, "<iframe>" * 1024]
    )
    def test_xss_padding(self, padding):
        _, elapsed = _timed(XSSDetector(sensitivity="strict"), padding)
        assert elapsed < SCAN_BUDGET_SECONDS

    def test_bounded_gap_still_matches_comment(self):
        _, matched = SQLInjectionDetector().score_text("admin'--")
        assert "quote_comment" in matched
