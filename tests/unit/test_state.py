"""Tests for the per-source threat state store."""

from __future__ import annotations

import threading

import pytest

from threatguard.detection.aggregator import aggregate
from threatguard.detection.models import DetectorResult, Severity, ThreatKind
from threatguard.detection.state import ThreatStateStore


def _analysis(risk: float, source_id: str = "1.2.3.4"):
    results = (
        [DetectorResult(kind=ThreatKind.ANOMALY, confidence=risk, severity=Severity.MEDIUM)]
        if risk
        else []
    )
    return aggregate(results, source_id=source_id, path="/x", method="GET")


class TestBlocks:
    """Time-limited source blocks."""

    def test_block_round_trip(self, clock):
        store = ThreatStateStore(clock=clock)
        entry = store.block("1.2.3.4", 60, "threat_detected")
        assert entry is not None
        assert entry.expires_at == pytest.approx(clock() + 60)
        assert store.is_blocked("1.2.3.4")
        assert store.get_block("1.2.3.4").reason == "threat_detected"
        assert not store.is_blocked("5.6.7.8")

    def test_is_blocked_is_idempotent(self, clock):
        store = ThreatStateStore(clock=clock)
        store.block("1.2.3.4", 60)
        for source in ("1.2.3.4", "5.6.7.8"):
            first = store.is_blocked(source)
            assert store.is_blocked(source) == first
        assert store.get_block("1.2.3.4").expires_at == pytest.approx(clock() + 60)
        clock.advance(60)
        assert store.is_blocked("1.2.3.4") is False
        assert store.is_blocked("1.2.3.4") is False

    def test_block_expires(self, clock):
        store = ThreatStateStore(clock=clock)
        store.block("1.2.3.4", 60)
        clock.advance(60)
        assert not store.is_blocked("1.2.3.4")
        assert store.stats()["blocked_sources"] == 0

    def test_non_positive_duration_is_ignored(self, clock):
        store = ThreatStateStore(clock=clock)
        assert store.block("1.2.3.4", 0) is None
        assert store.block("1.2.3.4", -5) is None
        assert not store.is_blocked("1.2.3.4")

    def test_unblock(self, clock):
        store = ThreatStateStore(clock=clock)
        store.block("1.2.3.4", 60)
        assert store.unblock("1.2.3.4") is True
        assert store.unblock("1.2.3.4") is False
        assert not store.is_blocked("1.2.3.4")

    def test_reblock_extends(self, clock):
        store = ThreatStateStore(clock=clock)
        store.block("1.2.3.4", 10)
        clock.advance(5)
        store.block("1.2.3.4", 60)
        clock.advance(30)
        assert store.is_blocked("1.2.3.4")

    def test_unreadable_block_fails_open(self, clock):
        store = ThreatStateStore(lock_stripes=1, clock=clock)
        store._shards[0].blocks["1.2.3.4"] = "garbage"  # type: ignore[assignment]
        assert store.get_block("1.2.3.4") is None
        assert not store.is_blocked("1.2.3.4")

    def test_purge_expired(self, clock):
        store = ThreatStateStore(lock_stripes=4, clock=clock)
        store.block("a", 10)
        store.block("b", 100)
        store._shards[0].blocks["junk"] = object()  # type: ignore[assignment]
        clock.advance(50)
        assert store.purge_expired() == 2
        assert store.is_blocked("b")
        assert store.stats()["blocked_sources"] == 1


class TestRunningRisk:
    """Running risk averages per source."""

    def test_unknown_source_scores_zero(self):
        store = ThreatStateStore()
        assert store.threat_score("nobody") == 0.0
        assert store.get_entry("nobody") is None

    def test_running_average(self, clock):
        store = ThreatStateStore(clock=clock)
        store.record_analysis("1.2.3.4", _analysis(0.6))
        entry = store.record_analysis("1.2.3.4", _analysis(0.0))
        assert entry.hit_count == 2
        assert entry.average_risk == pytest.approx(0.3)
        assert entry.last_seen == clock()
        assert store.threat_score("1.2.3.4") == pytest.approx(0.3)

    def test_retention_caps_history_weight(self):
        store = ThreatStateStore(retention_count=1)
        store.record_analysis("s", _analysis(0.0))
        store.record_analysis("s", _analysis(0.0))
        entry = store.record_analysis("s", _analysis(0.8))
        # Weight of history is capped at 1: (0 * 1 + 0.8) / 2
        assert entry.average_risk == pytest.approx(0.4)
        assert entry.hit_count == 3

    def test_returned_entry_is_a_copy(self):
        store = ThreatStateStore()
        entry = store.record_analysis("s", _analysis(0.5))
        entry.average_risk = 1.0
        assert store.threat_score("s") == pytest.approx(0.5)

    def test_idle_entry_expires(self, clock):
        store = ThreatStateStore(entry_ttl_seconds=100, clock=clock)
        store.record_analysis("s", _analysis(0.5))
        clock.advance(101)
        assert store.get_entry("s") is None

    def test_concurrent_updates_are_not_lost(self):
        store = ThreatStateStore(lock_stripes=2)
        n_threads, per_thread = 8, 25
        barrier = threading.Barrier(n_threads)

        def worker():
            barrier.wait()
            for _ in range(per_thread):
                store.record_analysis("10.0.0.1", _analysis(0.5))

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        entry = store.get_entry("10.0.0.1")
        assert entry is not None
        assert entry.hit_count == n_threads * per_thread
        assert entry.average_risk == pytest.approx(0.5)

    def test_stats(self):
        store = ThreatStateStore(lock_stripes=8)
        store.record_analysis("a", _analysis(0.1))
        store.record_analysis("b", _analysis(0.1))
        store.block("a", 60)
        assert store.stats() == {"tracked_sources": 2, "blocked_sources": 1, "lock_stripes": 8}
