"""Per-user behavioural baselines and anomaly assessment."""

from threatguard.behavior.baseline import BEHAVIOR_VECTOR_LENGTH, behavior_vector, compute_baseline
from threatguard.behavior.engine import BehavioralBaselineEngine, recommend_behavior
from threatguard.behavior.models import (
    AnomalyType,
    BaselineState,
    BehaviorAnomaly,
    BehaviorAssessment,
    BehaviorRecommendation,
    BehaviorSample,
    InsufficientBaseline,
    UserBaseline,
)
from threatguard.behavior.worker import BaselineJob, BaselineWorker

__all__ = [
    "BEHAVIOR_VECTOR_LENGTH",
    "AnomalyType",
    "BaselineJob",
    "BaselineState",
    "BaselineWorker",
    "BehaviorAnomaly",
    "BehaviorAssessment",
    "BehaviorRecommendation",
    "BehaviorSample",
    "BehavioralBaselineEngine",
    "InsufficientBaseline",
    "UserBaseline",
    "behavior_vector",
    "compute_baseline",
    "recommend_behavior",
]
