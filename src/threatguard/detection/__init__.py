"""Request threat detection: feature extraction, detectors, aggregation, state.

Public API
----------
- :class:`DetectionPipeline` runs the detector registry concurrently
- :class:`SQLInjectionDetector`, :class:`XSSDetector`, :class:`BruteForceDetector`,
  :class:`DataExfiltrationDetector`, :class:`AnomalyDetector`
- :func:`aggregate`, :func:`recommend` turn results into a verdict
- :class:`ThreatStateStore` keeps per-source risk and blocks
"""

from threatguard.detection.aggregator import aggregate, overall_risk, recommend
from threatguard.detection.base import Detector
from threatguard.detection.features import FeatureExtractor, StaticGeoRisk
from threatguard.detection.learned import AnomalyDetector, DataExfiltrationDetector
from threatguard.detection.models import (
    Action,
    DetectorResult,
    RequestDescriptor,
    RequestFeatures,
    Severity,
    ThreatAnalysis,
    ThreatKind,
)
from threatguard.detection.patterns import SQLInjectionDetector, XSSDetector
from threatguard.detection.pipeline import DetectionPipeline
from threatguard.detection.rate_window import BruteForceDetector, RateWindowTracker
from threatguard.detection.state import ThreatStateStore

__all__ = [
    "Action",
    "AnomalyDetector",
    "BruteForceDetector",
    "DataExfiltrationDetector",
    "DetectionPipeline",
    "Detector",
    "DetectorResult",
    "FeatureExtractor",
    "RateWindowTracker",
    "RequestDescriptor",
    "RequestFeatures",
    "SQLInjectionDetector",
    "Severity",
    "StaticGeoRisk",
    "ThreatAnalysis",
    "ThreatKind",
    "ThreatStateStore",
    "XSSDetector",
    "aggregate",
    "overall_risk",
    "recommend",
]
