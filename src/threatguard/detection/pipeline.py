"""Concurrent detector fan-out with per-detector timeouts.

Every registered detector runs as its own asyncio task. Synchronous
detectors are pushed to a worker thread so regex scans and model inference
never block the event loop. A detector that times out or raises contributes
no result; the request is never failed because of it.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Sequence

from threatguard.detection.base import Detector
from threatguard.detection.models import DetectorResult, RequestFeatures
from threatguard.logging import get_logger

log = get_logger("threatguard.detection.pipeline")


class DetectionPipeline:
    """Run a fixed registry of detectors concurrently over one request."""

    def __init__(self, detectors: Sequence[Detector], *, timeout: float = 0.2) -> None:
        self._detectors = list(detectors)
        self._timeout = timeout

    @property
    def detectors(self) -> list[Detector]:
        return list(self._detectors)

    @property
    def timeout(self) -> float:
        return self._timeout

    async def _invoke(self, detector: Detector, features: RequestFeatures) -> DetectorResult | None:
        if inspect.iscoroutinefunction(detector.detect):
            return await detector.detect(features)  # type: ignore[no-any-return]
        return await asyncio.to_thread(detector.detect, features)

    async def _run_one(
        self,
        detector: Detector,
        features: RequestFeatures,
        collected: list[DetectorResult],
    ) -> DetectorResult | None:
        name = type(detector).__name__
        try:
            result = await asyncio.wait_for(self._invoke(detector, features), self._timeout)
        except TimeoutError:
            log.warning(
                "detector_timeout",
                detector=name,
                timeout_ms=round(self._timeout * 1000, 1),
                path=features.path,
            )
            return None
        except Exception as e:
            log.warning("detector_failed", detector=name, error=str(e), path=features.path)
            return None
        if result is not None:
            collected.append(result)
        return result

    async def run(
        self,
        features: RequestFeatures,
        *,
        collected: list[DetectorResult] | None = None,
    ) -> list[DetectorResult]:
        """Run every detector and return the results in registry order.

        Results are also appended to *collected* as they arrive, so a caller
        that gets cancelled midway still holds whatever finished.
        """
        if collected is None:
            collected = []
        tasks = [
            asyncio.create_task(self._run_one(detector, features, collected))
            for detector in self._detectors
        ]
        if not tasks:
            return []
        try:
            outcomes = await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        return [r for r in outcomes if r is not None]
