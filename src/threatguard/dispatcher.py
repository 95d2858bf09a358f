"""Turn analyses into decisions and carry out their side effects.

The dispatcher picks the most restrictive of the request-level and the
behavioural recommendation, then applies it: a block is recorded in the
state store, high-risk outcomes raise alerts and every decision is written
to the audit sink. Alerts are sent from background tasks so a slow channel
never holds up the request; :meth:`ActionDispatcher.flush_alerts` waits for
them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any

from threatguard.alerts import AlertDispatcher
from threatguard.behavior.models import BehaviorAssessment, InsufficientBaseline
from threatguard.detection.aggregator import recommend
from threatguard.detection.models import Action, RequestFeatures, ThreatAnalysis
from threatguard.detection.state import ThreatStateStore
from threatguard.errors import SecurityViolation
from threatguard.forensics import AuditSink, StructlogAuditSink, log_security_event
from threatguard.logging import get_logger

log = get_logger("threatguard.dispatcher")

REASON_IP_BLOCKED = "ip_blocked"
REASON_THREAT_DETECTED = "threat_detected"
REASON_BEHAVIOR_BLOCKED = "behavior_blocked"


@dataclass
class Decision:
    """Outcome for one request."""

    action: Action
    analysis: ThreatAnalysis | None = None
    behavior: BehaviorAssessment | InsufficientBaseline | None = None
    reason_code: str | None = None
    step_up_required: bool = False

    @property
    def deny(self) -> bool:
        return self.action == Action.BLOCK

    @property
    def risk(self) -> float:
        risk = self.analysis.overall_risk if self.analysis is not None else 0.0
        if isinstance(self.behavior, BehaviorAssessment):
            risk = max(risk, self.behavior.risk_score)
        return risk

    def raise_for_denial(self) -> None:
        """Raise :class:`SecurityViolation` if this decision denies the request."""
        if self.deny:
            raise SecurityViolation(self.reason_code or REASON_THREAT_DETECTED, risk=self.risk)

    @classmethod
    def allow(cls, analysis: ThreatAnalysis | None = None) -> Decision:
        return cls(action=Action.ALLOW, analysis=analysis)

    @classmethod
    def blocked_source(cls) -> Decision:
        return cls(action=Action.BLOCK, reason_code=REASON_IP_BLOCKED)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "action": self.action.value,
            "deny": self.deny,
            "reason_code": self.reason_code,
            "step_up_required": self.step_up_required,
            "risk": round(self.risk, 4),
        }
        if self.analysis is not None:
            data["analysis"] = self.analysis.to_dict()
        if isinstance(self.behavior, BehaviorAssessment):
            data["behavior"] = self.behavior.to_dict()
        return data


class ActionDispatcher:
    """Decides and enforces the action for an analysed request."""

    def __init__(
        self,
        state: ThreatStateStore,
        *,
        alerts: AlertDispatcher | None = None,
        audit: AuditSink | None = None,
        block_duration_seconds: float = 3600.0,
        alert_threshold: float = 0.8,
        deny_threshold: float = 0.9,
    ) -> None:
        self._state = state
        self._alerts = alerts or AlertDispatcher()
        self._audit = audit or StructlogAuditSink()
        self._block_duration = block_duration_seconds
        self._alert_threshold = alert_threshold
        self._deny_threshold = deny_threshold
        self._pending_alerts: set[asyncio.Task[Any]] = set()

    @property
    def alerts(self) -> AlertDispatcher:
        return self._alerts

    def schedule_alert(self, coro: Coroutine[Any, Any, int]) -> asyncio.Task[int]:
        """Send an alert in the background."""
        task = asyncio.create_task(coro)
        self._pending_alerts.add(task)
        task.add_done_callback(self._pending_alerts.discard)
        return task

    async def flush_alerts(self) -> None:
        """Wait for every alert scheduled so far."""
        while self._pending_alerts:
            await asyncio.gather(*list(self._pending_alerts), return_exceptions=True)

    def reject_blocked(self, source_id: str) -> Decision:
        """Decision for a request from a source that is already blocked."""
        decision = Decision.blocked_source()
        log.info("blocked_source_rejected", source_id=source_id)
        self._audit.record("threat_decision", source_id=source_id, **decision.to_dict())
        return decision

    async def decide(
        self,
        analysis: ThreatAnalysis,
        behavior: BehaviorAssessment | InsufficientBaseline | None = None,
        *,
        features: RequestFeatures | None = None,
    ) -> Decision:
        """Combine recommendations, apply side effects and return the decision."""
        request_action = recommend(analysis, block_threshold=self._deny_threshold)
        assessment = behavior if isinstance(behavior, BehaviorAssessment) else None
        behavior_action = assessment.action if assessment is not None else None
        action = Action.most_restrictive(request_action, behavior_action)

        decision = Decision(action=action, analysis=analysis, behavior=behavior)
        if action == Action.BLOCK:
            decision.reason_code = (
                REASON_THREAT_DETECTED
                if request_action == Action.BLOCK
                else REASON_BEHAVIOR_BLOCKED
            )
            self._block(analysis.source_id, decision.reason_code)
        else:
            decision.step_up_required = action == Action.CHALLENGE or (
                assessment is not None and assessment.recommendation.require_mfa
            )

        if analysis.overall_risk > self._alert_threshold:
            self.schedule_alert(
                self._alerts.notify_threat(
                    analysis.source_id,
                    analysis.overall_risk,
                    [k.value for k in analysis.kinds],
                    path=analysis.path,
                )
            )
        if assessment is not None and assessment.recommendation.notify_admin:
            self.schedule_alert(
                self._alerts.notify_behavior_anomaly(
                    assessment.user_id,
                    assessment.risk_score,
                    [a.type.value for a in assessment.anomalies],
                    source_id=analysis.source_id,
                )
            )

        if action != Action.ALLOW and features is not None:
            log_security_event(
                features=features,
                analysis=analysis,
                action=action.value,
                reason_code=decision.reason_code,
            )
        self._audit.record("threat_decision", **decision.to_dict())
        return decision

    def _block(self, source_id: str, reason: str) -> None:
        entry = self._state.block(source_id, self._block_duration, reason)
        if entry is None:
            return
        log.warning(
            "ip_blocked",
            source_id=source_id,
            reason=reason,
            duration_seconds=self._block_duration,
        )
        self.schedule_alert(self._alerts.notify_blocked(source_id, self._block_duration, reason))
