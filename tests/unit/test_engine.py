"""Tests for the threat engine composition root."""

from __future__ import annotations

import asyncio
import time

import pytest

from threatguard.alerts import AlertDispatcher
from threatguard.behavior.engine import BehavioralBaselineEngine
from threatguard.behavior.models import BehaviorAssessment, BehaviorSample, InsufficientBaseline
from threatguard.behavior.worker import BaselineWorker
from threatguard.config import Settings
from threatguard.detection.models import Action, DetectorResult, Severity, ThreatKind
from threatguard.detection.patterns import SQLInjectionDetector
from threatguard.dispatcher import REASON_IP_BLOCKED, REASON_THREAT_DETECTED
from threatguard.engine import ThreatEngine

SQLI_QUERY = {"id": "1' OR 1=1 --"}


def _settings(**overrides) -> Settings:
    # Generous timeout so a cold thread pool never drops a detector
    values = {"environment": "test", "detector_timeout_ms": 2000}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def make_engine(clock, alert_channel, audit_sink):
    def _make(**kwargs) -> ThreatEngine:
        settings = kwargs.pop("settings", None) or _settings()
        return ThreatEngine(
            settings,
            alerts=AlertDispatcher([alert_channel]),
            audit=audit_sink,
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def engine(make_engine) -> ThreatEngine:
    return make_engine()


class SlowDetector:
    kind = ThreatKind.ANOMALY

    async def detect(self, features):
        await asyncio.sleep(5)
        return DetectorResult(kind=self.kind, confidence=1.0, severity=Severity.CRITICAL)


class SleepyScorer:
    name = "sleepy"
    is_ready = True

    def __init__(self) -> None:
        self.delay = 0.0

    def score(self, vector):
        time.sleep(self.delay)
        return 0.0


class ExplodingDetector:
    kind = ThreatKind.XSS

    def detect(self, features):
        raise RuntimeError("boom")


def _behavior(ip: str = "198.51.100.10", device: str = "laptop-1") -> BehaviorSample:
    return BehaviorSample.from_raw(ip=ip, device_fingerprint=device)


# ---------------------------------------------------------------------------
# Request analysis
# ---------------------------------------------------------------------------


class TestAnalyzeRequest:
    """Per-request entry point."""

    def test_default_detector_registry(self, engine):
        kinds = [d.kind for d in engine.detectors]
        assert kinds == [
            ThreatKind.SQL_INJECTION,
            ThreatKind.XSS,
            ThreatKind.BRUTE_FORCE,
            ThreatKind.DATA_EXFILTRATION,
            ThreatKind.ANOMALY,
        ]

    @pytest.mark.asyncio
    async def test_clean_request_allowed(self, engine, make_request):
        decision = await engine.analyze_request(make_request())
        assert decision.action == Action.ALLOW
        assert decision.deny is False
        assert decision.analysis is not None
        assert decision.analysis.results == []
        assert engine.state.get_entry("203.0.113.7").hit_count == 1

    @pytest.mark.asyncio
    async def test_sql_injection_blocks_source(self, engine, make_request, alert_channel):
        decision = await engine.analyze_request(make_request("/api/users", query=SQLI_QUERY))
        assert decision.deny is True
        assert decision.reason_code == REASON_THREAT_DETECTED
        assert ThreatKind.SQL_INJECTION in decision.analysis.kinds
        assert engine.state.is_blocked("203.0.113.7")
        await engine.flush_alerts()
        assert "ip_blocked" in alert_channel.types()

        follow_up = await engine.analyze_request(make_request())
        assert follow_up.deny is True
        assert follow_up.reason_code == REASON_IP_BLOCKED
        assert follow_up.analysis is None

    @pytest.mark.asyncio
    async def test_other_sources_unaffected(self, engine, make_request):
        await engine.analyze_request(make_request("/api/users", query=SQLI_QUERY))
        decision = await engine.analyze_request(make_request(source="198.51.100.20"))
        assert decision.deny is False

    @pytest.mark.asyncio
    async def test_block_expires(self, engine, make_request, clock):
        await engine.analyze_request(make_request("/api/users", query=SQLI_QUERY))
        clock.advance(engine.settings.block_duration_seconds + 1)
        decision = await engine.analyze_request(make_request("/api/other"))
        assert decision.reason_code != REASON_IP_BLOCKED

    @pytest.mark.asyncio
    async def test_security_bypass(self, make_engine, make_request):
        engine = make_engine(settings=_settings(security_bypass_enabled=True))
        decision = await engine.analyze_request(make_request("/api/users", query=SQLI_QUERY))
        assert decision.action == Action.ALLOW
        assert engine.state.get_entry("203.0.113.7") is None

    @pytest.mark.asyncio
    async def test_failing_detector_never_fails_request(self, make_engine, make_request):
        engine = make_engine(detectors=[ExplodingDetector(), SQLInjectionDetector()])
        decision = await engine.analyze_request(make_request())
        assert decision.action == Action.ALLOW

    @pytest.mark.asyncio
    async def test_response_size_runs_exfiltration(self, engine, make_request):
        decision = await engine.analyze_request(
            make_request("/api/report"), response_size=50 * 1024 * 1024
        )
        assert ThreatKind.DATA_EXFILTRATION in decision.analysis.kinds

    @pytest.mark.asyncio
    async def test_cancellation_records_partial_results(self, make_engine, make_request):
        engine = make_engine(
            detectors=[SQLInjectionDetector(), SlowDetector()],
            settings=_settings(detector_timeout_ms=10_000),
        )
        task = asyncio.create_task(
            engine.analyze_request(make_request("/api/users", query=SQLI_QUERY))
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        entry = engine.state.get_entry("203.0.113.7")
        assert entry is not None
        assert entry.hit_count == 1
        assert entry.average_risk > 0.5


# ---------------------------------------------------------------------------
# Behaviour
# ---------------------------------------------------------------------------


class TestBehaviorIntegration:
    """Behavioural assessment alongside request analysis."""

    @pytest.mark.asyncio
    async def test_cold_user_is_not_judged(self, engine, make_request):
        decision = await engine.analyze_request(
            make_request(user_id="alice"), behavior=_behavior()
        )
        assert isinstance(decision.behavior, InsufficientBaseline)
        assert decision.action == Action.ALLOW

    @pytest.mark.asyncio
    async def test_unauthenticated_request_skips_behavior(self, engine, make_request):
        decision = await engine.analyze_request(make_request(), behavior=_behavior())
        assert decision.behavior is None
        assert engine.behavior.sample_count("alice") == 0

    @pytest.mark.asyncio
    async def test_new_location_and_device_challenged(self, engine, make_request, alert_channel):
        for _ in range(10):
            await engine.track_behavior("alice", _behavior())
        decision = await engine.analyze_request(
            make_request(user_id="alice"),
            behavior=_behavior(ip="203.0.113.99", device="unknown-2"),
        )
        assert isinstance(decision.behavior, BehaviorAssessment)
        assert decision.action == Action.CHALLENGE
        assert decision.step_up_required is True
        assert decision.deny is False
        assert decision.risk == pytest.approx(decision.behavior.risk_score)
        await engine.flush_alerts()
        assert "behavior_anomaly" in alert_channel.types()

    @pytest.mark.asyncio
    async def test_slow_behavior_scoring_is_bounded(self, make_engine, make_request):
        scorer = SleepyScorer()
        behavior = BehavioralBaselineEngine(scorer=scorer, scorer_factory=None)
        engine = make_engine(behavior=behavior, settings=_settings(detector_timeout_ms=300))
        for _ in range(10):
            await engine.track_behavior("alice", _behavior())
        scorer.delay = 1.5

        start = time.perf_counter()
        decision = await engine.analyze_request(
            make_request(user_id="alice"), behavior=_behavior()
        )
        elapsed = time.perf_counter() - start

        assert elapsed < 1.0
        assert decision.behavior is None
        assert decision.action == Action.ALLOW

    def test_injected_behavior_uses_engine_worker(self, make_engine):
        engine = make_engine(behavior=BehavioralBaselineEngine(scorer_factory=None))
        assert engine.behavior.worker is engine.worker

    @pytest.mark.asyncio
    async def test_injected_behavior_worker_is_started(self, make_engine):
        worker = BaselineWorker(queue_size=8)
        engine = make_engine(behavior=BehavioralBaselineEngine(worker=worker))
        assert engine.worker is worker
        async with engine:
            assert worker.running is True
        assert worker.running is False


# ---------------------------------------------------------------------------
# Response checks
# ---------------------------------------------------------------------------


class TestCheckResponse:
    """Post-handler response inspection."""

    @pytest.mark.asyncio
    async def test_small_response(self, engine, make_request, alert_channel):
        decision = await engine.check_response(make_request(), 2048)
        assert decision.action == Action.ALLOW
        await engine.flush_alerts()
        assert alert_channel.alerts == []

    @pytest.mark.asyncio
    async def test_large_response_alert(self, engine, make_request, alert_channel):
        await engine.check_response(make_request("/api/report"), 2_000_000)
        await engine.flush_alerts()
        assert alert_channel.types() == ["large_data_response"]

    @pytest.mark.asyncio
    async def test_admin_large_response_not_alerted(self, engine, make_request, alert_channel):
        await engine.check_response(
            make_request("/api/report", user_id="root", user_role="admin"), 2_000_000
        )
        await engine.flush_alerts()
        assert alert_channel.alerts == []

    @pytest.mark.asyncio
    async def test_bulk_record_alert(self, engine, make_request, alert_channel):
        await engine.check_response(make_request("/api/users"), 4096, record_count=5000)
        await engine.flush_alerts()
        assert alert_channel.types() == ["bulk_data_access"]

    @pytest.mark.asyncio
    async def test_huge_response_is_analysed(self, engine, make_request):
        decision = await engine.check_response(make_request("/api/report"), 20 * 1024 * 1024)
        assert decision.analysis is not None
        assert decision.analysis.kinds == [ThreatKind.DATA_EXFILTRATION]
        assert engine.state.get_entry("203.0.113.7").hit_count == 1

    @pytest.mark.asyncio
    async def test_bulk_export_is_flagged(self, engine, make_request):
        request = make_request("/export/all/users.csv", query={"limit": "5000"})
        decision = await engine.check_response(request, 20 * 1024 * 1024)
        # 0.3 + 0.2 + 0.2, plus 0.1 off-hours
        assert decision.analysis.results[0].confidence >= 0.7 - 1e-9
        assert decision.action != Action.ALLOW


# ---------------------------------------------------------------------------
# Administration and lifecycle
# ---------------------------------------------------------------------------


class TestAdministration:
    """Manual blocks, model fitting and lifecycle."""

    @pytest.mark.asyncio
    async def test_manual_block_and_unblock(self, engine, make_request):
        assert engine.block_source("203.0.113.7", 60) is True
        assert (await engine.analyze_request(make_request())).deny is True
        assert engine.unblock_source("203.0.113.7") is True
        assert engine.unblock_source("203.0.113.7") is False
        assert (await engine.analyze_request(make_request("/api/next"))).deny is False

    def test_zero_duration_block_ignored(self, engine):
        assert engine.block_source("203.0.113.7", 0) is False
        assert not engine.state.is_blocked("203.0.113.7")

    @pytest.mark.asyncio
    async def test_fit_anomaly_model(self, engine, make_request):
        requests = [make_request(f"/api/items/{i % 5}") for i in range(30)]
        assert await engine.fit_anomaly_model(requests) is True
        anomaly = engine.detectors[-1]
        assert anomaly.scorer.name == "reconstruction"

    @pytest.mark.asyncio
    async def test_fit_anomaly_model_needs_samples(self, engine, make_request):
        assert await engine.fit_anomaly_model([make_request()] * 3) is False
        assert engine.detectors[-1].scorer.name == "request_deviation"

    @pytest.mark.asyncio
    async def test_start_stop(self, engine):
        async with engine:
            assert engine.running is True
            assert engine.worker.running is True
        assert engine.running is False
        assert engine.worker.running is False

    @pytest.mark.asyncio
    async def test_housekeeping_purges_expired_blocks(self, make_engine, clock):
        engine = make_engine(settings=_settings(housekeeping_interval_seconds=0.01))
        engine.block_source("203.0.113.7", 10)
        clock.advance(11)
        async with engine:
            await asyncio.sleep(0.1)
            assert engine.stats()["state"]["blocked_sources"] == 0

    def test_stats(self, engine):
        stats = engine.stats()
        assert set(stats) == {"state", "behavior", "worker", "running"}
        assert stats["running"] is False

    def test_from_settings(self):
        engine = ThreatEngine.from_settings(_settings(sensitivity="strict"))
        assert engine.settings.sensitivity == "strict"
        assert engine.detectors[0].sensitivity == "strict"
