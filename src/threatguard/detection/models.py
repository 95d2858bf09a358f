"""Data models for the request threat analysis pipeline."""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ThreatKind(StrEnum):
    """Categories of detected threats."""

    SQL_INJECTION = "sql_injection"
    XSS = "xss"
    BRUTE_FORCE = "brute_force"
    DATA_EXFILTRATION = "data_exfiltration"
    ANOMALY = "anomaly"


class Severity(StrEnum):
    """Severity attached to a single detector result."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_WEIGHTS: Mapping[Severity, float] = MappingProxyType(
    {
        Severity.CRITICAL: 1.0,
        Severity.HIGH: 0.8,
        Severity.MEDIUM: 0.5,
        Severity.LOW: 0.3,
    }
)


class Action(StrEnum):
    """Action to take for a request, from least to most restrictive."""

    ALLOW = "allow"
    MONITOR = "monitor"  # Allow but log
    CHALLENGE = "challenge"  # Require step-up verification
    BLOCK = "block"  # Reject and block the source

    @property
    def rank(self) -> int:
        return _ACTION_RANK[self]

    @classmethod
    def most_restrictive(cls, *actions: Action | None) -> Action:
        present = [a for a in actions if a is not None]
        if not present:
            return cls.ALLOW
        return max(present, key=lambda a: a.rank)


_ACTION_RANK = {Action.ALLOW: 0, Action.MONITOR: 1, Action.CHALLENGE: 2, Action.BLOCK: 3}


@dataclass
class RequestDescriptor:
    """Request as handed over by the HTTP layer.

    The engine never parses raw HTTP; the host framework fills this in from
    its own request object.
    """

    method: str
    path: str
    source: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    body: Any = None
    params: Mapping[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    user_role: str | None = None
    content_length: int | None = None
    secure: bool = False


@dataclass(frozen=True)
class RequestFeatures:
    """Normalised, request-scoped view used by every detector."""

    source_id: str
    method: str
    path: str
    headers: Mapping[str, str]
    query_params: Mapping[str, str]
    query_string: str
    body_string: str
    params_string: str
    user_id: str | None = None
    user_role: str | None = None
    request_size: int = 0
    response_size: int | None = None
    secure: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def is_admin(self) -> bool:
        return self.user_role == "admin"

    def header(self, name: str, default: str = "") -> str:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def with_response_size(self, size: int) -> RequestFeatures:
        """Return a copy carrying the post-handling response size."""
        return dataclasses.replace(self, response_size=size)


@dataclass
class DetectorResult:
    """A single judgment produced by one detector."""

    kind: ThreatKind
    confidence: float  # 0.0 - 1.0
    severity: Severity
    detail: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "confidence": round(self.confidence, 4),
            "severity": self.severity.value,
            "detail": self.detail,
            "metadata": self.metadata,
        }


@dataclass
class ThreatAnalysis:
    """Aggregate verdict for one request."""

    timestamp: datetime
    source_id: str
    path: str
    method: str
    results: list[DetectorResult] = field(default_factory=list)
    overall_risk: float = 0.0
    requires_action: bool = False
    processing_time_ms: float = 0.0

    @property
    def has_critical(self) -> bool:
        return any(r.severity == Severity.CRITICAL for r in self.results)

    @property
    def kinds(self) -> list[ThreatKind]:
        return [r.kind for r in self.results]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "source_id": self.source_id,
            "path": self.path,
            "method": self.method,
            "results": [r.to_dict() for r in self.results],
            "overall_risk": round(self.overall_risk, 4),
            "requires_action": self.requires_action,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }


@dataclass
class ThreatStateEntry:
    """Running risk state for a single source."""

    average_risk: float = 0.0
    hit_count: int = 0
    last_seen: float = 0.0


@dataclass(frozen=True)
class BlockEntry:
    """A time-limited block on a source."""

    source_id: str
    expires_at: float
    reason: str = ""
