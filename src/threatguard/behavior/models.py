"""Data models for per-user behavioural baselines."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from threatguard.detection.models import Action, Severity

# Severity increments added to the behavioural risk per named anomaly
ANOMALY_RISK_INCREMENTS: Mapping[Severity, float] = MappingProxyType(
    {
        Severity.CRITICAL: 0.45,
        Severity.HIGH: 0.3,
        Severity.MEDIUM: 0.15,
        Severity.LOW: 0.05,
    }
)


def hash_location(ip: str) -> str:
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()[:16]


def hash_search_term(term: str) -> str:
    return hashlib.sha256(term.lower().encode("utf-8")).hexdigest()[:8]


class BaselineState(StrEnum):
    """Lifecycle of a user profile."""

    COLD = "cold"  # Not enough history yet
    WARM = "warm"  # Baseline usable
    RECALIBRATING = "recalibrating"  # Usable, a refresh is in flight


class AnomalyType(StrEnum):
    LOCATION_CHANGE = "LOCATION_CHANGE"
    DEVICE_CHANGE = "DEVICE_CHANGE"
    TIME_ANOMALY = "TIME_ANOMALY"
    TYPING_PATTERN = "TYPING_PATTERN"
    API_ABUSE = "API_ABUSE"


@dataclass(frozen=True)
class BehaviorSample:
    """One observation of a user's behaviour.

    Locations and search terms are stored hashed only; use :meth:`from_raw`
    to build a sample from a raw IP address and raw search terms.
    """

    location: str
    device_fingerprint: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    login_time: datetime | None = None
    auth_method: str = "password"
    typing_speed: float = 0.0
    avg_time_per_page: float = 0.0
    page_sequence: tuple[str, ...] = ()
    mouse_velocity: float = 0.0
    mouse_acceleration: float = 0.0
    api_call_frequency: Mapping[str, float] = field(default_factory=dict)
    search_terms: tuple[str, ...] = ()

    @classmethod
    def from_raw(
        cls,
        *,
        ip: str,
        device_fingerprint: str,
        search_queries: Iterable[str] = (),
        page_sequence: Iterable[str] = (),
        api_call_frequency: Mapping[str, float] | None = None,
        **kwargs: Any,
    ) -> BehaviorSample:
        return cls(
            location=hash_location(ip),
            device_fingerprint=device_fingerprint,
            page_sequence=tuple(page_sequence),
            api_call_frequency=dict(api_call_frequency or {}),
            search_terms=tuple(hash_search_term(q) for q in search_queries),
            **kwargs,
        )

    @property
    def login_hour(self) -> int:
        return (self.login_time or self.timestamp).hour


@dataclass(frozen=True)
class UserBaseline:
    """Summary of a user's normal behaviour, computed from their history."""

    avg_login_hour: float
    primary_location: str | None
    primary_device: str | None
    avg_typing_speed: float
    avg_time_per_page: float
    common_paths: frozenset[tuple[str, str]]
    api_baseline: Mapping[str, float]
    search_patterns: frozenset[str]
    avg_mouse_velocity: float
    avg_mouse_acceleration: float
    sample_count: int
    computed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class BehaviorAnomaly:
    type: AnomalyType
    severity: Severity
    details: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type.value, "severity": self.severity.value, "details": self.details}


@dataclass(frozen=True)
class BehaviorRecommendation:
    action: Action
    reason: str
    require_mfa: bool = False
    notify_admin: bool = False
    additional_verification: str | None = None


@dataclass
class BehaviorAssessment:
    """Result of comparing a sample against a warm baseline."""

    user_id: str
    anomaly_score: float
    is_anomalous: bool
    risk_score: float
    anomalies: list[BehaviorAnomaly]
    recommendation: BehaviorRecommendation
    features: list[float] = field(default_factory=list)

    @property
    def action(self) -> Action:
        return self.recommendation.action

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "anomaly_score": round(self.anomaly_score, 4),
            "is_anomalous": self.is_anomalous,
            "risk_score": round(self.risk_score, 4),
            "anomalies": [a.to_dict() for a in self.anomalies],
            "action": self.recommendation.action.value,
            "reason": self.recommendation.reason,
        }


@dataclass(frozen=True)
class InsufficientBaseline:
    """Not enough history to judge this user yet. Carries no risk number."""

    user_id: str
    sample_count: int
    required: int

    @property
    def reason(self) -> str:
        return "Insufficient baseline data"
