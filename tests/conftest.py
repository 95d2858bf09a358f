"""Pytest fixtures for threatguard tests."""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from threatguard.alerts import Alert, AlertChannel, AlertPriority
from threatguard.detection.features import FeatureExtractor
from threatguard.detection.models import RequestDescriptor, RequestFeatures


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Make sure no THREATGUARD_* variable from the shell leaks into Settings."""
    for key in [k for k in os.environ if k.startswith("THREATGUARD_")]:
        del os.environ[key]

    from threatguard.config import get_settings

    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel(AlertChannel):
    """Alert channel that keeps every alert it receives."""

    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    async def send(self, alert: Alert) -> bool:
        self.alerts.append(alert)
        return True

    def supports_priority(self, priority: AlertPriority) -> bool:
        return True

    def types(self) -> list[str]:
        return [a.type.value for a in self.alerts]


class RecordingAuditSink:
    """Audit sink that keeps every record in memory."""

    def __init__(self) -> None:
        self.records: list[tuple[str, dict[str, Any]]] = []

    def record(self, event: str, **fields: Any) -> None:
        self.records.append((event, fields))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def alert_channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def settings():
    """Settings with defaults, isolated from the environment and any .env file."""
    from threatguard.config import Settings

    return Settings(_env_file=None, environment="test", log_level="DEBUG")


@pytest.fixture
def make_request() -> Callable[..., RequestDescriptor]:
    """Factory for request descriptors with harmless defaults."""

    def _make(
        path: str = "/api/items",
        *,
        method: str = "GET",
        source: str = "203.0.113.7",
        **kwargs: Any,
    ) -> RequestDescriptor:
        kwargs.setdefault("headers", {"User-Agent": "pytest", "Accept": "application/json"})
        return RequestDescriptor(method=method, path=path, source=source, **kwargs)

    return _make


@pytest.fixture
def make_features(make_request) -> Callable[..., RequestFeatures]:
    """Factory for extracted features at a fixed business-hours timestamp."""
    extractor = FeatureExtractor()

    def _make(
        path: str = "/api/items",
        *,
        response_size: int | None = None,
        now: datetime | None = None,
        **kwargs: Any,
    ) -> RequestFeatures:
        return extractor.extract(
            make_request(path, **kwargs),
            response_size=response_size,
            now=now or datetime(2024, 3, 12, 14, 0, tzinfo=UTC),
        )

    return _make
