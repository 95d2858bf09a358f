"""Scorers: map a fixed-length numeric vector to a confidence in [0, 1].

Any model runtime can sit behind :class:`Scorer`. The deterministic
rule-based and deviation scorers need no training and are always available,
so a missing or unfitted model degrades detection instead of disabling it.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import numpy as np
from sklearn.ensemble import IsolationForest

from threatguard.detection.features import (
    EXFILTRATION_FEATURES,
    EXFILTRATION_VECTOR_LENGTH,
    OFF_HOURS_RISK,
    pad_vector,
)
from threatguard.errors import ScorerNotReadyError


@runtime_checkable
class Scorer(Protocol):
    """Anything that turns a feature vector into a confidence."""

    name: str

    @property
    def is_ready(self) -> bool: ...

    def score(self, vector: Sequence[float]) -> float: ...


@runtime_checkable
class ReconstructionModel(Protocol):
    """A scorer that can also report a reconstruction-error distance."""

    def reconstruction_error(self, vector: Sequence[float]) -> float: ...


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


# ---------------------------------------------------------------------------
# Rule-based scorers
# ---------------------------------------------------------------------------

_SLOT = {name: idx for idx, name in enumerate(EXFILTRATION_FEATURES)}


class RuleBasedExfiltrationScorer:
    """Explicit thresholds over the exfiltration vector.

    +0.3 for a large response to a non-admin, +0.2 for bulk keywords in the
    path, +0.2 for a dump-style path serving a data file, +0.1 off-hours.
    Admin downloads and paging hints only feed the learned models.
    """

    name = "rule_based_exfiltration"

    def __init__(self, large_response_bytes: int = 10 * 1024 * 1024) -> None:
        self._large_response_mb = large_response_bytes / 1_000_000

    @property
    def is_ready(self) -> bool:
        return True

    def is_large_response(self, vector: Sequence[float]) -> bool:
        v = pad_vector(vector, EXFILTRATION_VECTOR_LENGTH)
        return v[_SLOT["response_mb"]] > self._large_response_mb

    def score(self, vector: Sequence[float]) -> float:
        v = pad_vector(vector, EXFILTRATION_VECTOR_LENGTH)
        score = 0.0
        if self.is_large_response(v) and v[_SLOT["role_factor"]] >= 1.0:
            score += 0.3
        if v[_SLOT["bulk_path_token"]]:
            score += 0.2
        if v[_SLOT["dump_path_token"]] and v[_SLOT["data_file_extension"]]:
            score += 0.2
        if v[_SLOT["time_of_day_risk"]] >= OFF_HOURS_RISK:
            score += 0.1
        return _clamp(score)


class DeviationScorer:
    """Weighted mean squared deviation from an expected profile.

    Each slot is clipped to ``[0, clip]`` first so one huge value cannot
    dominate; the error is mapped linearly to confidence and saturates at 1.
    """

    def __init__(
        self,
        expected: Sequence[float],
        weights: Sequence[float],
        *,
        error_scale: float = 1.0,
        clip: float = 1.0,
        name: str = "deviation",
    ) -> None:
        if len(expected) != len(weights):
            raise ValueError("expected and weights must have the same length")
        self._expected = np.asarray(expected, dtype=float)
        self._weights = np.asarray(weights, dtype=float)
        self._error_scale = error_scale
        self._clip = clip
        self.name = name

    @classmethod
    def for_requests(cls, error_scale: float = 3.0) -> DeviationScorer:
        """Profile of an ordinary request over the 20-slot anomaly vector."""
        # (expected, weight) per slot; calendar slots carry no weight.
        profile = [
            (0.5, 0.0),  # hour
            (0.5, 0.0),  # weekday
            (0.5, 0.0),  # day of month
            (0.0, 0.5),  # method code
            (0.1, 1.0),  # path length
            (0.5, 0.5),  # header count
            (0.1, 1.0),  # body length
            (0.1, 1.0),  # query parameter count
            (0.5, 0.0),  # authenticated
            (0.0, 0.0),  # admin
            (0.5, 0.0),  # json content type
            (0.5, 0.0),  # accepts json
            (1.0, 0.5),  # secure
            (0.5, 0.0),  # has authorization
            (1.0, 0.0),  # external address
            (0.0, 1.0),  # geo risk
            (0.0, 2.0),  # historical threat score
            (0.0, 2.0),  # request rate
            (0.3, 1.0),  # url depth
            (0.0, 0.5),  # file extension
        ]
        return cls(
            [e for e, _ in profile],
            [w for _, w in profile],
            error_scale=error_scale,
            name="request_deviation",
        )

    @classmethod
    def for_behavior(cls, error_scale: float = 1.0) -> DeviationScorer:
        """Profile over the 10-slot behaviour vector (0 means "like baseline")."""
        weights = [1.0, 2.0, 2.0, 1.0, 0.5, 0.5, 1.0, 0.5, 0.5, 0.0]
        return cls(
            [0.0] * len(weights), weights, error_scale=error_scale, name="behavior_deviation"
        )

    @property
    def is_ready(self) -> bool:
        return True

    def reconstruction_error(self, vector: Sequence[float]) -> float:
        x = np.clip(np.asarray(pad_vector(vector, len(self._expected))), 0.0, self._clip)
        total_weight = float(self._weights.sum())
        if total_weight <= 0:
            return 0.0
        return float((self._weights * (x - self._expected) ** 2).sum() / total_weight)

    def score(self, vector: Sequence[float]) -> float:
        return _clamp(self.reconstruction_error(vector) * self._error_scale)


# ---------------------------------------------------------------------------
# Learned scorers
# ---------------------------------------------------------------------------


class ReconstructionScorer:
    """Linear autoencoder (PCA via SVD) scored by reconstruction error.

    Fitted on vectors of normal traffic; inputs far from the learned
    subspace reconstruct poorly. ``error_scale`` maps the mean squared error
    onto confidence, saturating at 1.
    """

    name = "reconstruction"

    def __init__(
        self,
        *,
        n_components: int = 7,
        error_scale: float = 10.0,
        min_samples: int = 20,
        clip: float = 2.0,
    ) -> None:
        self._n_components = n_components
        self._error_scale = error_scale
        self._min_samples = min_samples
        self._clip = clip
        self._mean: np.ndarray | None = None
        self._components: np.ndarray | None = None

    @property
    def is_ready(self) -> bool:
        return self._components is not None

    def fit(self, samples: Sequence[Sequence[float]]) -> ReconstructionScorer:
        if len(samples) < self._min_samples:
            raise ValueError(
                f"need at least {self._min_samples} samples to fit, got {len(samples)}"
            )
        matrix = np.clip(np.asarray(samples, dtype=float), 0.0, self._clip)
        mean = matrix.mean(axis=0)
        _, _, vt = np.linalg.svd(matrix - mean, full_matrices=False)
        k = min(self._n_components, vt.shape[0])
        self._mean = mean
        self._components = vt[:k]
        return self

    def reconstruction_error(self, vector: Sequence[float]) -> float:
        if self._components is None or self._mean is None:
            raise ScorerNotReadyError(f"{self.name} scorer has not been fitted")
        x = np.clip(np.asarray(pad_vector(vector, len(self._mean))), 0.0, self._clip)
        centered = x - self._mean
        reconstructed = centered @ self._components.T @ self._components
        return float(np.mean((centered - reconstructed) ** 2))

    def score(self, vector: Sequence[float]) -> float:
        return _clamp(self.reconstruction_error(vector) * self._error_scale)


class IsolationForestScorer:
    """scikit-learn ``IsolationForest`` over feature vectors.

    ``score_samples`` returns the negated anomaly score of the original
    paper (about 0.5 at the decision boundary); it is rescaled so typical
    points land near 0 and clear outliers near 1.
    """

    name = "isolation_forest"

    def __init__(
        self,
        *,
        n_estimators: int = 100,
        min_samples: int = 20,
        random_state: int | None = 0,
    ) -> None:
        self._n_estimators = n_estimators
        self._min_samples = min_samples
        self._random_state = random_state
        self._model: IsolationForest | None = None
        self._n_features = 0

    @property
    def is_ready(self) -> bool:
        return self._model is not None

    def fit(self, samples: Sequence[Sequence[float]]) -> IsolationForestScorer:
        if len(samples) < self._min_samples:
            raise ValueError(
                f"need at least {self._min_samples} samples to fit, got {len(samples)}"
            )
        matrix = np.asarray(samples, dtype=float)
        model = IsolationForest(
            n_estimators=self._n_estimators,
            contamination="auto",
            random_state=self._random_state,
        )
        model.fit(matrix)
        self._n_features = matrix.shape[1]
        self._model = model
        return self

    def score(self, vector: Sequence[float]) -> float:
        if self._model is None:
            raise ScorerNotReadyError(f"{self.name} scorer has not been fitted")
        x = np.asarray([pad_vector(vector, self._n_features)])
        raw = -float(self._model.score_samples(x)[0])
        return _clamp((raw - 0.45) / 0.3)


class ScorerWithFallback:
    """Use *primary* once it is ready, *fallback* until then or on failure."""

    def __init__(self, primary: Scorer | None, fallback: Scorer) -> None:
        self._primary = primary
        self._fallback = fallback

    @property
    def name(self) -> str:  # type: ignore[override]
        return self.active.name

    @property
    def active(self) -> Scorer:
        if self._primary is not None and self._primary.is_ready:
            return self._primary
        return self._fallback

    @property
    def is_ready(self) -> bool:
        return True

    def replace_primary(self, primary: Scorer | None) -> None:
        """Swap in a newly trained model; readers see either old or new."""
        self._primary = primary

    def score(self, vector: Sequence[float]) -> float:
        try:
            return self.active.score(vector)
        except ScorerNotReadyError:
            return self._fallback.score(vector)

    def reconstruction_error(self, vector: Sequence[float]) -> float | None:
        active = self.active
        if isinstance(active, ReconstructionModel):
            try:
                return active.reconstruction_error(vector)
            except ScorerNotReadyError:
                return None
        return None


def default_request_anomaly_scorer() -> ScorerWithFallback:
    """Reconstruction model slot backed by the request deviation heuristic."""
    return ScorerWithFallback(None, DeviationScorer.for_requests())

