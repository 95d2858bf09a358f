"""Forensic logging for security events.

All WARNING+ events land in the rotating log file when file logging is on.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import structlog

from threatguard.detection.models import RequestFeatures, ThreatAnalysis
from threatguard.logging import get_logger

log = get_logger("threatguard.forensics")


@runtime_checkable
class AuditSink(Protocol):
    """Destination for audit records of every decision."""

    def record(self, event: str, **fields: Any) -> None: ...


class StructlogAuditSink:
    """Audit sink writing INFO-level structured log records."""

    def __init__(self, logger_name: str = "threatguard.audit") -> None:
        self._log = get_logger(logger_name)

    def record(self, event: str, **fields: Any) -> None:
        self._log.info(event, **fields)


def payload_hash(features: RequestFeatures) -> str:
    payload = "\n".join(
        (features.path, features.query_string, features.body_string, features.params_string)
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def log_security_event(
    *,
    features: RequestFeatures,
    analysis: ThreatAnalysis,
    action: str,
    reason_code: str | None = None,
    request_id: str = "",
) -> None:
    """Log a detailed forensic record for a security event.

    Without an explicit *request_id* the one bound by
    :func:`threatguard.logging.request_context` is used.
    """
    request_id = request_id or structlog.contextvars.get_contextvars().get("request_id", "")
    log.warning(
        "security_event",
        event_type="threat_detected",
        request_id=request_id,
        source_id=features.source_id,
        user_id=features.user_id,
        method=features.method,
        path=features.path,
        timestamp=datetime.now(UTC).isoformat(),
        action=action,
        reason_code=reason_code,
        overall_risk=round(analysis.overall_risk, 4),
        requires_action=analysis.requires_action,
        result_count=len(analysis.results),
        results=[
            {
                "kind": r.kind.value,
                "severity": r.severity.value,
                "confidence": round(r.confidence, 3),
                "detail": r.detail,
            }
            for r in analysis.results
        ],
        payload_hash=payload_hash(features),
        payload_length=len(features.body_string) + len(features.query_string),
        processing_ms=round(analysis.processing_time_ms, 2),
    )
