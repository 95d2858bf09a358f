"""Behavioral baseline engine.

Keeps a bounded history per user, derives a :class:`UserBaseline` from it
and scores new samples against that baseline.

Profile lifecycle::

    COLD --(history >= min_samples, computed inline once)--> WARM
    WARM --(every recalibrate_every samples, job queued)--> RECALIBRATING
    RECALIBRATING --(worker publishes new baseline, or job dropped)--> WARM

Recalibration and retraining only ever run on the :class:`BaselineWorker`.
An engine built without a worker keeps the baseline computed at warm-up.

Profiles live in lock-striped LRU caches, so at most ``max_users`` users are
tracked and the least recently active ones are forgotten first. Readers may
see a baseline that is one recalibration behind.
"""

from __future__ import annotations

import threading
import zlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from cachetools import LRUCache  # type: ignore[import-untyped]

from threatguard.behavior.baseline import behavior_vector, compute_baseline, identify_anomalies
from threatguard.behavior.models import (
    ANOMALY_RISK_INCREMENTS,
    BaselineState,
    BehaviorAssessment,
    BehaviorRecommendation,
    BehaviorSample,
    InsufficientBaseline,
    UserBaseline,
)
from threatguard.behavior.worker import BaselineJob, BaselineWorker
from threatguard.detection.models import Action
from threatguard.detection.scorers import (
    DeviationScorer,
    IsolationForestScorer,
    Scorer,
    ScorerWithFallback,
)
from threatguard.logging import get_logger

log = get_logger("threatguard.behavior.engine")

ScorerFactory = Callable[[], Any]


@dataclass
class _UserProfile:
    history: deque[BehaviorSample]
    scorer: ScorerWithFallback
    baseline: UserBaseline | None = None
    state: BaselineState = BaselineState.COLD
    since_refresh: int = 0
    total_seen: int = 0
    trained_on: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock)


def recommend_behavior(risk_score: float) -> BehaviorRecommendation:
    """Map a behavioural risk score onto a recommendation."""
    if risk_score > 0.9:
        return BehaviorRecommendation(
            action=Action.BLOCK,
            reason="Critical security risk detected",
            require_mfa=True,
            notify_admin=True,
            additional_verification="BIOMETRIC",
        )
    if risk_score > 0.7:
        return BehaviorRecommendation(
            action=Action.CHALLENGE,
            reason="Suspicious activity detected",
            require_mfa=True,
            notify_admin=True,
            additional_verification="SMS",
        )
    if risk_score > 0.5:
        return BehaviorRecommendation(
            action=Action.MONITOR,
            reason="Unusual behavior patterns",
            require_mfa=True,
        )
    return BehaviorRecommendation(action=Action.ALLOW, reason="Normal behavior")


class BehavioralBaselineEngine:
    """Per-user behavioural profiling and anomaly assessment."""

    def __init__(
        self,
        *,
        scorer: Scorer | None = None,
        scorer_factory: ScorerFactory | None = IsolationForestScorer,
        worker: BaselineWorker | None = None,
        min_samples: int = 10,
        history_cap: int = 1000,
        recalibrate_every: int = 25,
        retrain_min_samples: int = 50,
        max_users: int = 50_000,
        lock_stripes: int = 64,
        anomaly_threshold: float = 0.85,
    ) -> None:
        self._default_scorer: Scorer = scorer or DeviationScorer.for_behavior()
        self._scorer_factory = scorer_factory
        self._worker = worker
        self._min_samples = min_samples
        self._history_cap = history_cap
        self._recalibrate_every = recalibrate_every
        self._retrain_min_samples = retrain_min_samples
        self._anomaly_threshold = anomaly_threshold
        per_stripe = max(1, max_users // lock_stripes)
        self._locks = [threading.Lock() for _ in range(lock_stripes)]
        self._profiles: list[LRUCache[str, _UserProfile]] = [
            LRUCache(maxsize=per_stripe) for _ in range(lock_stripes)
        ]

    @property
    def min_samples(self) -> int:
        return self._min_samples

    @property
    def worker(self) -> BaselineWorker | None:
        return self._worker

    def attach_worker(self, worker: BaselineWorker) -> None:
        """Use *worker* for recalibration and retraining jobs."""
        self._worker = worker

    # ------------------------------------------------------------------
    # Profile access
    # ------------------------------------------------------------------

    def _stripe(self, user_id: str) -> int:
        return zlib.crc32(user_id.encode("utf-8")) % len(self._locks)

    def _get_profile(self, user_id: str, *, create: bool = False) -> _UserProfile | None:
        idx = self._stripe(user_id)
        with self._locks[idx]:
            profile = self._profiles[idx].get(user_id)
            if profile is None and create:
                profile = _UserProfile(
                    history=deque(maxlen=self._history_cap),
                    scorer=ScorerWithFallback(None, self._default_scorer),
                )
                self._profiles[idx][user_id] = profile
            return profile

    def baseline_state(self, user_id: str) -> BaselineState:
        profile = self._get_profile(user_id)
        if profile is None:
            return BaselineState.COLD
        with profile.lock:
            return profile.state

    def get_baseline(self, user_id: str) -> UserBaseline | None:
        """Current baseline; may be one recalibration behind."""
        profile = self._get_profile(user_id)
        if profile is None:
            return None
        with profile.lock:
            return profile.baseline

    def sample_count(self, user_id: str) -> int:
        profile = self._get_profile(user_id)
        if profile is None:
            return 0
        with profile.lock:
            return len(profile.history)

    def forget_user(self, user_id: str) -> bool:
        idx = self._stripe(user_id)
        with self._locks[idx]:
            return self._profiles[idx].pop(user_id, None) is not None

    def stats(self) -> dict[str, Any]:
        users = 0
        for lock, profiles in zip(self._locks, self._profiles, strict=True):
            with lock:
                users += len(profiles)
        return {"tracked_users": users}

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_behavior(
        self, user_id: str, sample: BehaviorSample
    ) -> BehaviorAssessment | InsufficientBaseline:
        """Record *sample* and assess it against the user's baseline."""
        profile = self._get_profile(user_id, create=True)
        assert profile is not None
        refresh_due = False
        with profile.lock:
            profile.history.append(sample)
            profile.total_seen += 1
            if profile.state == BaselineState.COLD:
                if len(profile.history) >= self._min_samples:
                    profile.baseline = compute_baseline(list(profile.history))
                    profile.state = BaselineState.WARM
                    profile.since_refresh = 0
                    log.info(
                        "behavior_baseline_ready",
                        user_id=user_id,
                        samples=len(profile.history),
                    )
            elif profile.state == BaselineState.WARM:
                profile.since_refresh += 1
                if profile.since_refresh >= self._recalibrate_every:
                    if self._worker is None:
                        # Without a worker the first baseline is kept
                        profile.since_refresh = 0
                    else:
                        refresh_due = True
                        profile.state = BaselineState.RECALIBRATING

        if refresh_due:
            self._schedule_refresh(user_id)
        return self.analyze_current_behavior(user_id, sample)

    def _schedule_refresh(self, user_id: str) -> None:
        assert self._worker is not None
        # A stopped worker or a full queue drops the job; on_drop restores WARM
        self._worker.submit(
            BaselineJob(
                name=f"baseline:{user_id}",
                run=lambda: self.refresh_baseline(user_id),
                on_drop=lambda: self._set_state(user_id, BaselineState.WARM),
            )
        )

    def _set_state(self, user_id: str, state: BaselineState) -> None:
        profile = self._get_profile(user_id)
        if profile is None:
            return
        with profile.lock:
            profile.state = state
            profile.since_refresh = 0

    def refresh_baseline(self, user_id: str) -> UserBaseline | None:
        """Recompute the baseline (and retrain the user's model when due)."""
        profile = self._get_profile(user_id)
        if profile is None:
            return None
        with profile.lock:
            history = list(profile.history)
            seen = profile.total_seen
            retrain = (
                self._scorer_factory is not None
                and len(history) >= self._retrain_min_samples
                and seen > profile.trained_on
            )

        baseline = compute_baseline(history)
        model = self._train(user_id, history, baseline) if retrain else None

        with profile.lock:
            profile.baseline = baseline
            profile.state = BaselineState.WARM
            profile.since_refresh = 0
            if model is not None:
                profile.scorer.replace_primary(model)
                profile.trained_on = seen
        log.debug(
            "behavior_baseline_recalibrated",
            user_id=user_id,
            samples=len(history),
            retrained=model is not None,
        )
        return baseline

    def _train(
        self, user_id: str, history: list[BehaviorSample], baseline: UserBaseline
    ) -> Scorer | None:
        assert self._scorer_factory is not None
        vectors = [behavior_vector(s, baseline) for s in history]
        try:
            return self._scorer_factory().fit(vectors)  # type: ignore[no-any-return]
        except ValueError as e:
            log.warning("behavior_model_training_failed", user_id=user_id, error=str(e))
            return None

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------

    def analyze_current_behavior(
        self, user_id: str, sample: BehaviorSample
    ) -> BehaviorAssessment | InsufficientBaseline:
        profile = self._get_profile(user_id)
        if profile is None:
            return InsufficientBaseline(user_id=user_id, sample_count=0, required=self._min_samples)
        with profile.lock:
            baseline = profile.baseline
            count = len(profile.history)
            scorer = profile.scorer
        if baseline is None or count < self._min_samples:
            return InsufficientBaseline(
                user_id=user_id, sample_count=count, required=self._min_samples
            )

        features = behavior_vector(sample, baseline)
        anomaly_score = scorer.score(features)
        anomalies = identify_anomalies(sample, baseline)
        risk = anomaly_score * 0.5 + sum(ANOMALY_RISK_INCREMENTS[a.severity] for a in anomalies)
        risk = min(1.0, risk)

        return BehaviorAssessment(
            user_id=user_id,
            anomaly_score=anomaly_score,
            is_anomalous=anomaly_score > self._anomaly_threshold,
            risk_score=risk,
            anomalies=anomalies,
            recommendation=recommend_behavior(risk),
            features=features,
        )
