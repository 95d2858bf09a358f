"""Threat engine: composition root and per-request entry point.

The engine wires the detectors, state store, behaviour engine and action
dispatcher together. Per request it:

1. Rejects sources with an active block.
2. Extracts features and runs every detector concurrently.
3. Consults the behavioural baseline in parallel for authenticated users.
4. Aggregates, records the source's running risk and dispatches a decision.

Nothing inside the engine fails a request except a deny decision; any
other error is logged and the request proceeds.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable, Sequence
from types import TracebackType

from threatguard.alerts import AlertDispatcher, LogAlertChannel
from threatguard.behavior.engine import BehavioralBaselineEngine
from threatguard.behavior.models import BehaviorAssessment, BehaviorSample, InsufficientBaseline
from threatguard.behavior.worker import BaselineWorker
from threatguard.config import Settings, get_settings
from threatguard.detection.aggregator import aggregate
from threatguard.detection.base import Detector
from threatguard.detection.features import (
    FeatureExtractor,
    GeoRiskProvider,
    StaticGeoRisk,
    VectorContext,
    anomaly_vector,
)
from threatguard.detection.learned import AnomalyDetector, DataExfiltrationDetector
from threatguard.detection.models import DetectorResult, RequestDescriptor, RequestFeatures
from threatguard.detection.patterns import SQLInjectionDetector, XSSDetector
from threatguard.detection.pipeline import DetectionPipeline
from threatguard.detection.rate_window import BruteForceDetector, RateWindowTracker
from threatguard.detection.scorers import (
    ReconstructionScorer,
    RuleBasedExfiltrationScorer,
    Scorer,
    ScorerWithFallback,
    default_request_anomaly_scorer,
)
from threatguard.detection.state import ThreatStateStore
from threatguard.dispatcher import ActionDispatcher, Decision
from threatguard.forensics import AuditSink
from threatguard.logging import get_logger

log = get_logger("threatguard.engine")

# Response checks run after the handler
LARGE_RESPONSE_ALERT_BYTES = 1_000_000
BULK_RECORD_ALERT_COUNT = 1000


class ThreatEngine:
    """Request threat analysis and behavioural risk, end to end."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        detectors: Sequence[Detector] | None = None,
        state: ThreatStateStore | None = None,
        behavior: BehavioralBaselineEngine | None = None,
        alerts: AlertDispatcher | None = None,
        audit: AuditSink | None = None,
        geo: GeoRiskProvider | None = None,
        anomaly_scorer: Scorer | None = None,
        exfiltration_scorer: Scorer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings
        self._extractor = FeatureExtractor()
        self._geo = geo or StaticGeoRisk()
        self._state = state or ThreatStateStore(
            retention_count=s.state_retention_count,
            max_sources=s.state_max_sources,
            entry_ttl_seconds=s.state_entry_ttl_seconds,
            lock_stripes=s.lock_stripes,
            clock=clock,
        )
        self._rate_tracker = RateWindowTracker(
            s.rate_window_seconds,
            max_keys=s.state_max_sources,
            lock_stripes=s.lock_stripes,
            clock=clock,
        )
        self._source_rates = RateWindowTracker(
            s.rate_window_seconds,
            max_keys=s.state_max_sources,
            lock_stripes=s.lock_stripes,
            clock=clock,
        )
        self._anomaly_scorer = anomaly_scorer or default_request_anomaly_scorer()
        self._exfiltration = DataExfiltrationDetector(
            exfiltration_scorer,
            rules=RuleBasedExfiltrationScorer(s.large_response_bytes),
            threat_scores=self._state,
            geo=self._geo,
        )
        if detectors is None:
            detectors = self._default_detectors()
        self._pipeline = DetectionPipeline(detectors, timeout=s.detector_timeout)
        self._response_pipeline = DetectionPipeline(
            [self._exfiltration], timeout=s.detector_timeout
        )

        if behavior is not None and behavior.worker is not None:
            self._worker = behavior.worker
        else:
            self._worker = BaselineWorker(queue_size=s.baseline_queue_size)
        if behavior is None:
            behavior = BehavioralBaselineEngine(
                min_samples=s.baseline_min_samples,
                history_cap=s.baseline_history_cap,
                recalibrate_every=s.baseline_recalibrate_every,
                retrain_min_samples=s.retrain_min_samples,
                max_users=s.baseline_max_users,
                lock_stripes=s.lock_stripes,
            )
        # The engine's start()/stop() drive whichever worker the behaviour engine uses
        behavior.attach_worker(self._worker)
        self._behavior = behavior
        self._dispatcher = ActionDispatcher(
            self._state,
            alerts=alerts or AlertDispatcher([LogAlertChannel()]),
            audit=audit,
            block_duration_seconds=s.block_duration_seconds,
            alert_threshold=s.alert_threshold,
            deny_threshold=s.deny_threshold,
        )
        self._housekeeping_task: asyncio.Task[None] | None = None
        self._running = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ThreatEngine:
        return cls(settings or get_settings())

    def _default_detectors(self) -> list[Detector]:
        s = self._settings
        return [
            SQLInjectionDetector(sensitivity=s.sensitivity, max_scan_length=s.max_scan_length),
            XSSDetector(sensitivity=s.sensitivity, max_scan_length=s.max_scan_length),
            BruteForceDetector(
                self._rate_tracker,
                max_attempts=s.rate_max_attempts,
                auth_attempt_floor=s.auth_attempt_floor,
            ),
            self._exfiltration,
            AnomalyDetector(
                self._anomaly_scorer,
                threat_scores=self._state,
                geo=self._geo,
                rate_tracker=self._source_rates,
            ),
        ]

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def state(self) -> ThreatStateStore:
        return self._state

    @property
    def behavior(self) -> BehavioralBaselineEngine:
        return self._behavior

    @property
    def worker(self) -> BaselineWorker:
        return self._worker

    @property
    def alerts(self) -> AlertDispatcher:
        return self._dispatcher.alerts

    @property
    def detectors(self) -> list[Detector]:
        return self._pipeline.detectors

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the baseline worker and the housekeeping loop."""
        if self._running:
            log.warning("threat_engine_already_running")
            return
        self._running = True
        await self._worker.start()
        self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        if self._settings.security_bypass_enabled:
            log.warning("security_bypass_active", scope="engine")
        log.info(
            "threat_engine_started",
            detectors=[type(d).__name__ for d in self.detectors],
            sensitivity=self._settings.sensitivity,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._housekeeping_task is not None and not self._housekeeping_task.done():
            self._housekeeping_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._housekeeping_task
        self._housekeeping_task = None
        await self._worker.stop()
        await self.flush_alerts()
        log.info("threat_engine_stopped", **self._state.stats())

    async def __aenter__(self) -> ThreatEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def flush_alerts(self) -> None:
        """Wait for alerts still being delivered."""
        await self._dispatcher.flush_alerts()

    async def _housekeeping_loop(self) -> None:
        """Periodically purge expired blocks."""
        interval = self._settings.housekeeping_interval_seconds
        while self._running:
            try:
                await asyncio.sleep(interval)
                if not self._running:
                    break
                self._state.purge_expired()
            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("housekeeping_error")

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def analyze_request(
        self,
        request: RequestDescriptor,
        *,
        behavior: BehaviorSample | None = None,
        response_size: int | None = None,
    ) -> Decision:
        """Analyse one request and return the decision for it.

        Args:
            request: The inbound request.
            behavior: Behaviour sample for the authenticated user, if any.
            response_size: Response size when analysing after the handler.

        Returns:
            The :class:`Decision`. Only ``decision.deny`` should stop the request.
        """
        if self._settings.security_bypass_enabled:
            log.warning("security_bypass_active", source_id=request.source, path=request.path)
            return Decision.allow()

        start = time.perf_counter()
        try:
            if self._state.is_blocked(request.source):
                return self._dispatcher.reject_blocked(request.source)
            features = self._extractor.extract(request, response_size=response_size)
        except Exception:
            log.exception("threat_analysis_failed", source_id=request.source, path=request.path)
            return Decision.allow()

        behavior_task: asyncio.Task[BehaviorAssessment | InsufficientBaseline] | None = None
        behavior_deadline = 0.0
        if behavior is not None and features.user_id is not None:
            behavior_task = asyncio.create_task(
                asyncio.to_thread(self._behavior.track_behavior, features.user_id, behavior)
            )
            behavior_deadline = asyncio.get_running_loop().time() + self._settings.detector_timeout

        collected: list[DetectorResult] = []
        try:
            results = await self._pipeline.run(features, collected=collected)
        except asyncio.CancelledError:
            if behavior_task is not None:
                behavior_task.cancel()
            self._record_partial(features, collected, start)
            raise

        assessment = await self._await_behavior(behavior_task, features, behavior_deadline)
        try:
            analysis = aggregate(
                results,
                source_id=features.source_id,
                path=features.path,
                method=features.method,
                timestamp=features.timestamp,
                processing_time_ms=(time.perf_counter() - start) * 1000,
            )
            self._state.record_analysis(features.source_id, analysis)
            return await self._dispatcher.decide(analysis, assessment, features=features)
        except Exception:
            log.exception(
                "threat_decision_failed", source_id=features.source_id, path=features.path
            )
            return Decision.allow()

    async def _await_behavior(
        self,
        task: asyncio.Task[BehaviorAssessment | InsufficientBaseline] | None,
        features: RequestFeatures,
        deadline: float,
    ) -> BehaviorAssessment | InsufficientBaseline | None:
        """Wait for the behaviour task until *deadline* (loop time).

        The assessment started alongside the detectors, so it shares their
        time budget. A late assessment is dropped and the request proceeds
        on request-level signals only.
        """
        if task is None:
            return None
        remaining = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(task, remaining)
        except TimeoutError:
            log.warning(
                "behavior_analysis_timeout",
                user_id=features.user_id,
                timeout_ms=round(self._settings.detector_timeout * 1000, 1),
            )
            return None
        except Exception as e:
            log.warning("behavior_analysis_failed", user_id=features.user_id, error=str(e))
            return None

    def _record_partial(
        self, features: RequestFeatures, collected: list[DetectorResult], start: float
    ) -> None:
        analysis = aggregate(
            collected,
            source_id=features.source_id,
            path=features.path,
            method=features.method,
            timestamp=features.timestamp,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )
        self._state.record_analysis(features.source_id, analysis)
        log.info(
            "threat_analysis_cancelled",
            source_id=features.source_id,
            partial_results=len(collected),
        )

    async def check_response(
        self,
        request: RequestDescriptor,
        response_size: int,
        *,
        record_count: int | None = None,
    ) -> Decision:
        """Inspect a response after the handler ran.

        Alerts on large responses to non-admins and on bulk record lists,
        then runs the exfiltration detector with the now-known size. A
        resulting block applies to the source's next request.
        """
        if self._settings.security_bypass_enabled:
            return Decision.allow()
        try:
            features = self._extractor.extract(request, response_size=response_size)
            if response_size > LARGE_RESPONSE_ALERT_BYTES and not features.is_admin:
                self._dispatcher.schedule_alert(
                    self.alerts.notify_large_response(
                        features.source_id, features.path, response_size, user_id=features.user_id
                    )
                )
            if record_count is not None and record_count > BULK_RECORD_ALERT_COUNT:
                self._dispatcher.schedule_alert(
                    self.alerts.notify_bulk_access(
                        features.source_id, features.path, record_count, user_id=features.user_id
                    )
                )

            results = await self._response_pipeline.run(features)
            if not results:
                return Decision.allow()
            analysis = aggregate(
                results,
                source_id=features.source_id,
                path=features.path,
                method=features.method,
                timestamp=features.timestamp,
            )
            self._state.record_analysis(features.source_id, analysis)
            return await self._dispatcher.decide(analysis, features=features)
        except Exception:
            log.exception("response_check_failed", source_id=request.source, path=request.path)
            return Decision.allow()

    # ------------------------------------------------------------------
    # Behaviour and administration
    # ------------------------------------------------------------------

    async def track_behavior(
        self, user_id: str, sample: BehaviorSample
    ) -> BehaviorAssessment | InsufficientBaseline:
        """Record a behaviour sample outside the request path."""
        return await asyncio.to_thread(self._behavior.track_behavior, user_id, sample)

    async def fit_anomaly_model(self, requests: Sequence[RequestDescriptor]) -> bool:
        """Fit the request reconstruction model on known-good traffic.

        Returns ``False`` when the anomaly scorer cannot take a model or
        there are too few samples.
        """
        if not isinstance(self._anomaly_scorer, ScorerWithFallback):
            return False
        vectors = [
            anomaly_vector(self._extractor.extract(r), VectorContext()) for r in requests
        ]
        try:
            model = await asyncio.to_thread(ReconstructionScorer().fit, vectors)
        except ValueError as e:
            log.warning("anomaly_model_training_failed", error=str(e), samples=len(vectors))
            return False
        self._anomaly_scorer.replace_primary(model)
        log.info("anomaly_model_trained", samples=len(vectors))
        return True

    def block_source(self, source_id: str, duration_seconds: float, reason: str = "manual") -> bool:
        entry = self._state.block(source_id, duration_seconds, reason)
        if entry is not None:
            log.warning("ip_blocked", source_id=source_id, reason=reason)
        return entry is not None

    def unblock_source(self, source_id: str) -> bool:
        removed = self._state.unblock(source_id)
        if removed:
            log.info("ip_unblocked", source_id=source_id)
        return removed

    def stats(self) -> dict[str, object]:
        return {
            "state": self._state.stats(),
            "behavior": self._behavior.stats(),
            "worker": self._worker.stats,
            "running": self._running,
        }
