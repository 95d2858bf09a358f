"""Baseline computation and the behaviour feature vector.

Behaviour vector (``BEHAVIOR_FEATURES``, 10 slots, each in [0, 1] where 0
means "same as baseline"): time deviation, location change, device change,
typing speed difference, mouse difference, navigation difference, API usage
difference, time-per-page difference, search difference, overall deviation.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime

from threatguard.behavior.models import (
    AnomalyType,
    BehaviorAnomaly,
    BehaviorSample,
    UserBaseline,
)
from threatguard.detection.models import Severity

BEHAVIOR_FEATURES: tuple[str, ...] = (
    "time_deviation",
    "location_change",
    "device_change",
    "typing_speed_diff",
    "mouse_diff",
    "navigation_diff",
    "api_usage_diff",
    "time_per_page_diff",
    "search_diff",
    "overall_deviation",
)
BEHAVIOR_VECTOR_LENGTH = len(BEHAVIOR_FEATURES)

_MAX_COMMON_PATHS = 20
_MAX_SEARCH_PATTERNS = 50
_LOGIN_HOUR_TOLERANCE = 6
_TYPING_SLOWDOWN_RATIO = 0.5
_API_ABUSE_RATIO = 3.0


def _mean(values: Iterable[float]) -> float:
    items = [v for v in values if v > 0]
    return sum(items) / len(items) if items else 0.0


def circular_mean_hour(hours: Sequence[int]) -> float:
    """Mean hour on a 24h clock, so 23:00 and 01:00 average to midnight."""
    if not hours:
        return 0.0
    angles = [h / 24 * 2 * math.pi for h in hours]
    x = sum(math.cos(a) for a in angles)
    y = sum(math.sin(a) for a in angles)
    if x == 0 and y == 0:
        return float(sum(hours) / len(hours))
    return (math.atan2(y, x) / (2 * math.pi) * 24) % 24


def hour_distance(a: float, b: float) -> float:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def _transitions(pages: Sequence[str]) -> list[tuple[str, str]]:
    return list(zip(pages, pages[1:], strict=False))


def _relative_diff(value: float, baseline: float) -> float:
    if baseline <= 0 or value <= 0:
        return 0.0
    return min(1.0, abs(value - baseline) / baseline)


def compute_baseline(samples: Sequence[BehaviorSample]) -> UserBaseline:
    """Summarise a user's history into a :class:`UserBaseline`."""
    locations = Counter(s.location for s in samples)
    devices = Counter(s.device_fingerprint for s in samples)

    path_counts: Counter[tuple[str, str]] = Counter()
    for sample in samples:
        path_counts.update(_transitions(sample.page_sequence))

    api_totals: Counter[str] = Counter()
    for sample in samples:
        api_totals.update(sample.api_call_frequency)
    n = max(len(samples), 1)

    searches: Counter[str] = Counter()
    for sample in samples:
        searches.update(sample.search_terms)

    return UserBaseline(
        avg_login_hour=circular_mean_hour([s.login_hour for s in samples]),
        primary_location=locations.most_common(1)[0][0] if locations else None,
        primary_device=devices.most_common(1)[0][0] if devices else None,
        avg_typing_speed=_mean(s.typing_speed for s in samples),
        avg_time_per_page=_mean(s.avg_time_per_page for s in samples),
        common_paths=frozenset(p for p, _ in path_counts.most_common(_MAX_COMMON_PATHS)),
        api_baseline={endpoint: total / n for endpoint, total in api_totals.items()},
        search_patterns=frozenset(t for t, _ in searches.most_common(_MAX_SEARCH_PATTERNS)),
        avg_mouse_velocity=_mean(s.mouse_velocity for s in samples),
        avg_mouse_acceleration=_mean(s.mouse_acceleration for s in samples),
        sample_count=len(samples),
        computed_at=datetime.now(UTC),
    )


def _api_usage_diff(calls: Mapping[str, float], baseline: Mapping[str, float]) -> float:
    worst = 0.0
    for endpoint, frequency in calls.items():
        expected = baseline.get(endpoint, 0.0)
        if expected <= 0:
            worst = max(worst, 1.0 if frequency > 0 else 0.0)
            continue
        excess = (frequency - expected) / expected
        worst = max(worst, min(1.0, excess / _API_ABUSE_RATIO))
    return worst


def behavior_vector(sample: BehaviorSample, baseline: UserBaseline) -> list[float]:
    """Build the 10-slot behaviour vector (see module docstring)."""
    transitions = _transitions(sample.page_sequence)
    navigation = (
        sum(1 for t in transitions if t not in baseline.common_paths) / len(transitions)
        if transitions and baseline.common_paths
        else 0.0
    )
    search = (
        sum(1 for t in sample.search_terms if t not in baseline.search_patterns)
        / len(sample.search_terms)
        if sample.search_terms and baseline.search_patterns
        else 0.0
    )
    mouse = (
        _relative_diff(sample.mouse_velocity, baseline.avg_mouse_velocity)
        + _relative_diff(sample.mouse_acceleration, baseline.avg_mouse_acceleration)
    ) / 2

    new_location = bool(baseline.primary_location) and sample.location != baseline.primary_location
    new_device = (
        bool(baseline.primary_device) and sample.device_fingerprint != baseline.primary_device
    )

    values = [
        hour_distance(sample.login_hour, baseline.avg_login_hour) / 12,
        1.0 if new_location else 0.0,
        1.0 if new_device else 0.0,
        _relative_diff(sample.typing_speed, baseline.avg_typing_speed),
        mouse,
        navigation,
        _api_usage_diff(sample.api_call_frequency, baseline.api_baseline),
        _relative_diff(sample.avg_time_per_page, baseline.avg_time_per_page),
        search,
    ]
    values.append(sum(values) / len(values))
    return values


def identify_anomalies(sample: BehaviorSample, baseline: UserBaseline) -> list[BehaviorAnomaly]:
    """Named rules over a sample and its baseline."""
    anomalies: list[BehaviorAnomaly] = []

    if baseline.primary_location and sample.location != baseline.primary_location:
        anomalies.append(
            BehaviorAnomaly(
                AnomalyType.LOCATION_CHANGE, Severity.HIGH, "Login from unusual location"
            )
        )

    if hour_distance(sample.login_hour, baseline.avg_login_hour) > _LOGIN_HOUR_TOLERANCE:
        anomalies.append(
            BehaviorAnomaly(AnomalyType.TIME_ANOMALY, Severity.MEDIUM, "Login at unusual time")
        )

    if baseline.primary_device and sample.device_fingerprint != baseline.primary_device:
        anomalies.append(
            BehaviorAnomaly(
                AnomalyType.DEVICE_CHANGE, Severity.HIGH, "Login from unrecognized device"
            )
        )

    if (
        sample.typing_speed > 0
        and baseline.avg_typing_speed > 0
        and sample.typing_speed < baseline.avg_typing_speed * _TYPING_SLOWDOWN_RATIO
    ):
        anomalies.append(
            BehaviorAnomaly(
                AnomalyType.TYPING_PATTERN, Severity.MEDIUM, "Significantly slower typing detected"
            )
        )

    for endpoint, frequency in sample.api_call_frequency.items():
        expected = baseline.api_baseline.get(endpoint, 0.0)
        if frequency > expected * _API_ABUSE_RATIO:
            anomalies.append(
                BehaviorAnomaly(
                    AnomalyType.API_ABUSE, Severity.HIGH, f"Excessive calls to {endpoint}"
                )
            )

    return anomalies
