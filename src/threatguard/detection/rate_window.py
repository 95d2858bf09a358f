"""Sliding-window attempt tracking and the brute-force detector.

State is a map from ``(source, endpoint)`` to a deque of attempt timestamps.
The map is split across lock stripes so concurrent requests for different
keys never contend on the same lock; each stripe is a bounded ``TTLCache``
whose TTL equals the window, so idle keys disappear on their own.
"""

from __future__ import annotations

import re
import threading
import time
import zlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from cachetools import TTLCache  # type: ignore[import-untyped]

from threatguard.detection.models import DetectorResult, RequestFeatures, Severity, ThreatKind

_AUTH_ENDPOINT_PATTERN = re.compile(r"auth|login|signin|password", re.IGNORECASE)

# Per-key timestamp cap; beyond this the count saturates.
_MAX_EVENTS_PER_KEY = 10_000


@dataclass(frozen=True)
class RateWindowSnapshot:
    """Window statistics for one key after recording an attempt."""

    count: int
    # Attempts in the window divided by the window length
    rate_per_second: float
    seconds_since_last: float | None


class RateWindowTracker:
    """Per-key sliding window counter with lock striping."""

    def __init__(
        self,
        window_seconds: float = 60.0,
        *,
        max_keys: int = 100_000,
        lock_stripes: int = 64,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        per_stripe = max(1, max_keys // lock_stripes)
        self._locks = [threading.Lock() for _ in range(lock_stripes)]
        self._stripes: list[TTLCache[str, deque[float]]] = [
            TTLCache(maxsize=per_stripe, ttl=window_seconds, timer=clock)
            for _ in range(lock_stripes)
        ]

    @property
    def window_seconds(self) -> float:
        return self._window

    @staticmethod
    def _key(source: str, endpoint: str) -> str:
        return f"{source}:{endpoint}"

    def _stripe(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    def _snapshot(self, attempts: deque[float], now: float) -> RateWindowSnapshot:
        count = len(attempts)
        if count == 0:
            return RateWindowSnapshot(count=0, rate_per_second=0.0, seconds_since_last=None)
        since_last = now - attempts[-2] if count > 1 else None
        return RateWindowSnapshot(
            count=count, rate_per_second=count / self._window, seconds_since_last=since_last
        )

    def _evict_old(self, attempts: deque[float], now: float) -> None:
        cutoff = now - self._window
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()

    def record(
        self, source: str, endpoint: str, now: float | None = None
    ) -> RateWindowSnapshot:
        """Record an attempt at *now* (default: the tracker clock) and return the window."""
        key = self._key(source, endpoint)
        idx = self._stripe(key)
        with self._locks[idx]:
            if now is None:
                now = self._clock()
            stripe = self._stripes[idx]
            attempts = stripe.get(key)
            if attempts is None:
                attempts = deque(maxlen=_MAX_EVENTS_PER_KEY)
            attempts.append(now)
            self._evict_old(attempts, now)
            # Re-insert to refresh the TTL on every attempt
            stripe[key] = attempts
            return self._snapshot(attempts, now)

    def peek(self, source: str, endpoint: str) -> RateWindowSnapshot:
        """Return the window statistics without recording an attempt."""
        key = self._key(source, endpoint)
        idx = self._stripe(key)
        with self._locks[idx]:
            now = self._clock()
            attempts = self._stripes[idx].get(key)
            if attempts is None:
                return RateWindowSnapshot(count=0, rate_per_second=0.0, seconds_since_last=None)
            self._evict_old(attempts, now)
            return self._snapshot(attempts, now)

    def reset(self, source: str, endpoint: str) -> None:
        key = self._key(source, endpoint)
        idx = self._stripe(key)
        with self._locks[idx]:
            self._stripes[idx].pop(key, None)

    def __len__(self) -> int:
        total = 0
        for lock, stripe in zip(self._locks, self._stripes, strict=True):
            with lock:
                total += len(stripe)
        return total


def is_auth_endpoint(path: str) -> bool:
    return bool(_AUTH_ENDPOINT_PATTERN.search(path))


class BruteForceDetector:
    """Flags repeated attempts against the same endpoint from one source."""

    kind = ThreatKind.BRUTE_FORCE
    report_threshold = 0.6

    def __init__(
        self,
        tracker: RateWindowTracker,
        *,
        max_attempts: int = 10,
        auth_attempt_floor: int = 5,
    ) -> None:
        self._tracker = tracker
        self._max_attempts = max_attempts
        self._auth_attempt_floor = auth_attempt_floor
        # Rate at which max_attempts fill exactly one window
        self._full_rate = max_attempts / tracker.window_seconds

    def confidence(self, snapshot: RateWindowSnapshot, *, auth_endpoint: bool) -> float:
        count_score = snapshot.count / self._max_attempts
        rate_score = min(1.0, snapshot.rate_per_second / self._full_rate) * 0.9
        auth_floor = 0.8 if auth_endpoint and snapshot.count > self._auth_attempt_floor else 0.0
        return min(1.0, max(count_score, rate_score, auth_floor))

    @staticmethod
    def severity_for(confidence: float) -> Severity:
        if confidence > 0.9:
            return Severity.CRITICAL
        if confidence > 0.7:
            return Severity.HIGH
        return Severity.MEDIUM

    def detect(self, features: RequestFeatures) -> DetectorResult | None:
        snapshot = self._tracker.record(features.source_id, features.path)
        auth_endpoint = is_auth_endpoint(features.path)
        confidence = self.confidence(snapshot, auth_endpoint=auth_endpoint)
        if confidence <= self.report_threshold:
            return None
        window = self._tracker.window_seconds
        return DetectorResult(
            kind=self.kind,
            confidence=confidence,
            severity=self.severity_for(confidence),
            detail=f"{snapshot.count} attempts in {window:g}s",
            metadata={
                "attempts": snapshot.count,
                "rate": round(snapshot.rate_per_second, 3),
                "endpoint": features.path,
                "auth_endpoint": auth_endpoint,
            },
        )
