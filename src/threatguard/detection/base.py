"""Detector interface shared by every threat detector."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from threatguard.detection.models import DetectorResult, RequestFeatures, ThreatKind


@runtime_checkable
class Detector(Protocol):
    """A component judging one threat category from request features.

    ``detect`` returns ``None`` when the detector has no opinion (confidence
    below its reporting threshold). Implementations may be synchronous and
    CPU-bound; the pipeline runs them off the event loop.
    """

    kind: ThreatKind

    def detect(self, features: RequestFeatures) -> DetectorResult | None: ...
