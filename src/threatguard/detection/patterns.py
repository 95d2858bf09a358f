"""Signature-based detectors for SQL injection and cross-site scripting.

Every candidate string (URL, query, body, params, and headers for XSS) is
scanned in its raw form and in its decoded forms. Each matching signature
adds a fixed increment to the confidence; matches that only appear after
decoding add a smaller one. Scanning is bounded: strings are truncated to
``max_scan_length`` characters and at most ``max_patterns`` signatures run.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from threatguard.detection.decoders import decoded_variants
from threatguard.detection.models import DetectorResult, RequestFeatures, Severity, ThreatKind

# ---------------------------------------------------------------------------
# Signatures: (compiled_regex, name, minimum sensitivity)
# ---------------------------------------------------------------------------

_SENSITIVITY_RANK = {"low": 0, "medium": 1, "strict": 2}


@dataclass(frozen=True)
class Signature:
    pattern: re.Pattern[str]
    name: str
    level: str = "medium"


_SQL_SIGNATURES: list[Signature] = [
    # --- High-precision core ---
    Signature(
        re.compile(r"\bor\b\s*\d{1,10}\s*=\s*\d{1,10}", re.IGNORECASE), "or_tautology", "low"
    ),
    Signature(
        re.compile(r"\band\b\s*\d{1,10}\s*=\s*\d{1,10}", re.IGNORECASE), "and_tautology", "low"
    ),
    Signature(
        re.compile(r"'\s*or\s*'[^']{0,100}'\s*=\s*'", re.IGNORECASE), "quoted_tautology", "low"
    ),
    # Bounded gap keeps the scan linear in input length
    Signature(re.compile(r"[';][^';\n]{0,200}?--"), "quote_comment", "low"),
    Signature(
        re.compile(r"\bunion\b\s+(?:all\s+)?\bselect\b", re.IGNORECASE), "union_select", "low"
    ),
    Signature(
        re.compile(r";\s*(?:drop|delete|alter|truncate)\s+\w+", re.IGNORECASE),
        "stacked_destructive",
        "low",
    ),
    # --- Standard set ---
    Signature(
        re.compile(
            r"\b(?:union|select|insert|update|delete|drop|create|alter|exec|execute)\b",
            re.IGNORECASE,
        ),
        "sql_keyword",
    ),
    Signature(re.compile(r"--|#|/\*|\*/"), "comment_sequence"),
    Signature(re.compile(r"\bhaving\b|\bgroup\s+by\b", re.IGNORECASE), "having_group_by"),
    Signature(re.compile(r"\bwaitfor\b|\bdelay\b|\bbenchmark\b", re.IGNORECASE), "time_based"),
    # --- Aggressive ---
    Signature(re.compile(r"\binformation_schema\b", re.IGNORECASE), "schema_enumeration", "strict"),
    Signature(re.compile(r"\bsleep\s*\(", re.IGNORECASE), "sleep_call", "strict"),
    Signature(re.compile(r"\b(?:char|chr|concat)\s*\(", re.IGNORECASE), "string_builder", "strict"),
    Signature(re.compile(r"\b0x[0-9a-f]{8,}\b", re.IGNORECASE), "hex_literal", "strict"),
    Signature(
        re.compile(r"\bload_file\b|\binto\s+(?:out|dump)file\b", re.IGNORECASE),
        "file_access",
        "strict",
    ),
]

_XSS_SIGNATURES: list[Signature] = [
    # --- High-precision core ---
    Signature(
        re.compile(r"<script[^>]{0,256}>[\s\S]{0,1024}?</script>", re.IGNORECASE),
        "script_tag",
        "low",
    ),
    Signature(re.compile(r"javascript:", re.IGNORECASE), "javascript_uri", "low"),
    Signature(
        re.compile(r"<iframe[^>]{0,256}>[\s\S]{0,1024}?</iframe>", re.IGNORECASE),
        "iframe_tag",
        "low",
    ),
    # --- Standard set ---
    Signature(re.compile(r"<script\b", re.IGNORECASE), "script_open"),
    Signature(
        re.compile(r"<\w{1,32}[^<>]{0,256}\bon\w{1,32}\s*=", re.IGNORECASE), "tag_with_handler"
    ),
    Signature(re.compile(r"\bon\w{1,32}\s*=", re.IGNORECASE), "event_handler"),
    Signature(
        re.compile(r"<img[^>]{1,256}src\s*=\s*\\?[\"']?\s*javascript:", re.IGNORECASE),
        "img_javascript_src",
    ),
    Signature(re.compile(r"\beval\s*\(", re.IGNORECASE), "eval_call"),
    Signature(re.compile(r"\bexpression\s*\(", re.IGNORECASE), "css_expression"),
    Signature(re.compile(r"<embed[^>]{0,256}>", re.IGNORECASE), "embed_tag"),
    Signature(re.compile(r"<object[^>]{0,256}>", re.IGNORECASE), "object_tag"),
    # --- Aggressive ---
    Signature(re.compile(r"<svg[^>]{0,256}\bon\w{1,32}", re.IGNORECASE), "svg_handler", "strict"),
    Signature(re.compile(r"data:text/html", re.IGNORECASE), "data_html_uri", "strict"),
    Signature(
        re.compile(r"document\.(?:cookie|domain|write)", re.IGNORECASE), "dom_access", "strict"
    ),
    Signature(re.compile(r"\bvbscript:", re.IGNORECASE), "vbscript_uri", "strict"),
]


def signatures_for(signatures: Iterable[Signature], sensitivity: str) -> list[Signature]:
    """Return the signatures active at *sensitivity*, preserving order."""
    level = _SENSITIVITY_RANK.get(sensitivity, _SENSITIVITY_RANK["medium"])
    return [s for s in signatures if _SENSITIVITY_RANK[s.level] <= level]


class PatternDetector:
    """Additive signature scanner over the request's candidate strings."""

    kind: ThreatKind
    detail = "Suspicious pattern detected"
    raw_increment = 0.3
    decoded_increment = 0.2
    entity_increment = 0.0
    report_threshold = 0.5
    scan_headers = False

    def __init__(
        self,
        signatures: Iterable[Signature],
        *,
        sensitivity: str = "medium",
        max_scan_length: int = 8192,
        max_patterns: int = 32,
    ) -> None:
        self._signatures = signatures_for(signatures, sensitivity)[:max_patterns]
        self._max_scan_length = max_scan_length
        self.sensitivity = sensitivity

    def candidates(self, features: RequestFeatures) -> list[tuple[str, str]]:
        """Return ``(field, text)`` pairs to scan."""
        fields = [
            ("url", features.path),
            ("query", features.query_string),
            ("body", features.body_string),
            ("params", features.params_string),
        ]
        if self.scan_headers:
            fields.extend((f"header:{name}", value) for name, value in features.headers.items())
        return [(name, text) for name, text in fields if text]

    def _matches(self, text: str) -> list[str]:
        return [s.name for s in self._signatures if s.pattern.search(text)]

    def score_text(self, text: str) -> tuple[float, list[str]]:
        """Score a single string. Returns ``(confidence, matched_names)``."""
        text = text[: self._max_scan_length]
        matched = self._matches(text)
        score = self.raw_increment * len(matched)

        for encoding, decoded in decoded_variants(text, html_entities=self.entity_increment > 0):
            inner = self._matches(decoded[: self._max_scan_length])
            increment = (
                self.entity_increment if encoding == "html_entity" else self.decoded_increment
            )
            score += increment * len(inner)
            matched.extend(f"{encoding}:{name}" for name in inner)

        return min(score, 1.0), matched

    def score(self, features: RequestFeatures) -> tuple[float, str, list[str]]:
        """Maximum confidence across candidate strings, with its field and matches."""
        best = (0.0, "", [])
        for field_name, text in self.candidates(features):
            confidence, matched = self.score_text(text)
            if confidence > best[0]:
                best = (confidence, field_name, matched)
        return best

    def severity_for(self, confidence: float) -> Severity:
        raise NotImplementedError

    def is_threat(self, confidence: float) -> bool:
        return confidence >= self.report_threshold

    def detect(self, features: RequestFeatures) -> DetectorResult | None:
        confidence, field_name, matched = self.score(features)
        if not self.is_threat(confidence):
            return None
        return DetectorResult(
            kind=self.kind,
            confidence=confidence,
            severity=self.severity_for(confidence),
            detail=self.detail,
            metadata={"field": field_name, "patterns": matched[:10]},
        )


class SQLInjectionDetector(PatternDetector):
    """SQL injection signatures (+0.3 raw, +0.2 decoded)."""

    kind = ThreatKind.SQL_INJECTION
    detail = "Potential SQL injection attempt detected"
    raw_increment = 0.3
    decoded_increment = 0.2
    report_threshold = 0.5

    def __init__(self, *, sensitivity: str = "medium", max_scan_length: int = 8192) -> None:
        super().__init__(
            _SQL_SIGNATURES, sensitivity=sensitivity, max_scan_length=max_scan_length
        )

    def severity_for(self, confidence: float) -> Severity:
        if confidence > 0.8:
            return Severity.CRITICAL
        if confidence > 0.6:
            return Severity.HIGH
        return Severity.MEDIUM


class XSSDetector(PatternDetector):
    """Cross-site scripting signatures (+0.4 raw, +0.3 URL-decoded, +0.2 entity-decoded)."""

    kind = ThreatKind.XSS
    detail = "Potential XSS attempt detected"
    raw_increment = 0.4
    decoded_increment = 0.3
    entity_increment = 0.2
    report_threshold = 0.4
    scan_headers = True

    def __init__(self, *, sensitivity: str = "medium", max_scan_length: int = 8192) -> None:
        super().__init__(
            _XSS_SIGNATURES, sensitivity=sensitivity, max_scan_length=max_scan_length
        )

    def candidates(self, features: RequestFeatures) -> list[tuple[str, str]]:
        # The raw URL is not an XSS sink on its own; query/body/params/headers are.
        return [(name, text) for name, text in super().candidates(features) if name != "url"]

    def is_threat(self, confidence: float) -> bool:
        return confidence > self.report_threshold

    def severity_for(self, confidence: float) -> Severity:
        if confidence > 0.8:
            return Severity.HIGH
        if confidence > 0.6:
            return Severity.MEDIUM
        return Severity.LOW
