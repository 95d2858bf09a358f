"""Alert dispatcher for routing security alerts to the appropriate channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from threatguard.logging import get_logger

log = get_logger("threatguard.alerts")


class AlertType(StrEnum):
    """Types of security alerts."""

    # Request threats
    THREAT_DETECTED = "threat_detected"
    IP_BLOCKED = "ip_blocked"

    # User behaviour
    BEHAVIOR_ANOMALY = "behavior_anomaly"

    # Responses
    LARGE_DATA_RESPONSE = "large_data_response"
    BULK_DATA_ACCESS = "bulk_data_access"


class AlertPriority(StrEnum):
    """Priority levels for alerts."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    AlertPriority.LOW: 0,
    AlertPriority.MEDIUM: 1,
    AlertPriority.HIGH: 2,
    AlertPriority.CRITICAL: 3,
}


@dataclass
class Alert:
    """An alert to be sent."""

    type: AlertType
    title: str
    message: str
    priority: AlertPriority = AlertPriority.MEDIUM
    source_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)


class AlertChannel(ABC):
    """Abstract base class for alert channels."""

    @abstractmethod
    async def send(self, alert: Alert) -> bool:
        """Send an alert.

        Args:
            alert: The alert to send.

        Returns:
            True if sent successfully, False otherwise.
        """

    @abstractmethod
    def supports_priority(self, priority: AlertPriority) -> bool:
        """Check if this channel handles a priority level."""


class LogAlertChannel(AlertChannel):
    """Writes alerts to the structured log at WARNING level."""

    def __init__(self, min_priority: AlertPriority = AlertPriority.LOW) -> None:
        self._min_priority = min_priority

    async def send(self, alert: Alert) -> bool:
        log.warning(
            "security_alert",
            alert_type=alert.type.value,
            priority=alert.priority.value,
            title=alert.title,
            message=alert.message,
            source_id=alert.source_id,
            timestamp=alert.timestamp.isoformat(),
            metadata=alert.metadata,
        )
        return True

    def supports_priority(self, priority: AlertPriority) -> bool:
        return priority.rank >= self._min_priority.rank


class AlertDispatcher:
    """Dispatches alerts to registered channels.

    Supports multiple channels and priority-based routing.
    """

    def __init__(self, channels: list[AlertChannel] | None = None) -> None:
        self._channels: list[AlertChannel] = list(channels or [])
        self._type_filters: dict[AlertType, bool] = {}

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    def register_channel(self, channel: AlertChannel) -> None:
        """Register an alert channel.

        Args:
            channel: The channel to register.
        """
        self._channels.append(channel)
        log.info("alert_channel_registered", channel=channel.__class__.__name__)

    def set_type_enabled(self, alert_type: AlertType, enabled: bool) -> None:
        self._type_filters[alert_type] = enabled

    def is_type_enabled(self, alert_type: AlertType) -> bool:
        return self._type_filters.get(alert_type, True)

    async def dispatch(self, alert: Alert) -> int:
        """Dispatch an alert to all channels that accept its priority.

        Args:
            alert: The alert to dispatch.

        Returns:
            Number of channels that successfully received the alert.
        """
        if not self.is_type_enabled(alert.type):
            log.debug("alert_filtered", type=alert.type.value)
            return 0

        sent_count = 0
        for channel in self._channels:
            if not channel.supports_priority(alert.priority):
                continue
            try:
                if await channel.send(alert):
                    sent_count += 1
            except Exception as e:
                log.error(
                    "alert_channel_send_failed",
                    channel=channel.__class__.__name__,
                    error=str(e),
                )

        if sent_count == 0:
            log.warning("alert_not_sent", type=alert.type.value, reason="no channels available")
        return sent_count

    # ------------------------------------------------------------------
    # Convenience constructors
    # ------------------------------------------------------------------

    async def notify_threat(
        self, source_id: str, risk: float, kinds: list[str], *, path: str = ""
    ) -> int:
        """Alert on a high-risk request.

        Args:
            source_id: Source address of the request.
            risk: Overall risk of the request.
            kinds: Threat kinds that were detected.
            path: Request path.

        Returns:
            Number of channels notified.
        """
        alert = Alert(
            type=AlertType.THREAT_DETECTED,
            title="Threat Detected",
            message=f"Risk {risk:.2f} from {source_id} on {path or '?'}: {', '.join(kinds)}",
            priority=AlertPriority.CRITICAL if risk > 0.9 else AlertPriority.HIGH,
            source_id=source_id,
            metadata={"risk": round(risk, 4), "kinds": kinds, "path": path},
        )
        return await self.dispatch(alert)

    async def notify_blocked(self, source_id: str, duration_seconds: float, reason: str) -> int:
        alert = Alert(
            type=AlertType.IP_BLOCKED,
            title="Source Blocked",
            message=f"{source_id} blocked for {duration_seconds:g}s ({reason})",
            priority=AlertPriority.CRITICAL,
            source_id=source_id,
            metadata={"duration_seconds": duration_seconds, "reason": reason},
        )
        return await self.dispatch(alert)

    async def notify_behavior_anomaly(
        self, user_id: str, risk: float, anomalies: list[str], *, source_id: str | None = None
    ) -> int:
        alert = Alert(
            type=AlertType.BEHAVIOR_ANOMALY,
            title="Behavioral Anomaly",
            message=f"User {user_id} risk {risk:.2f}: {', '.join(anomalies) or 'model score'}",
            priority=AlertPriority.HIGH,
            source_id=source_id,
            metadata={"user_id": user_id, "risk": round(risk, 4), "anomalies": anomalies},
        )
        return await self.dispatch(alert)

    async def notify_large_response(
        self, source_id: str, path: str, size: int, *, user_id: str | None = None
    ) -> int:
        alert = Alert(
            type=AlertType.LARGE_DATA_RESPONSE,
            title="Large Data Response",
            message=f"{size} bytes served to {user_id or source_id} on {path}",
            priority=AlertPriority.MEDIUM,
            source_id=source_id,
            metadata={"path": path, "size": size, "user_id": user_id},
        )
        return await self.dispatch(alert)

    async def notify_bulk_access(
        self, source_id: str, path: str, record_count: int, *, user_id: str | None = None
    ) -> int:
        alert = Alert(
            type=AlertType.BULK_DATA_ACCESS,
            title="Bulk Data Access",
            message=f"{record_count} records served to {user_id or source_id} on {path}",
            priority=AlertPriority.HIGH,
            source_id=source_id,
            metadata={"path": path, "record_count": record_count, "user_id": user_id},
        )
        return await self.dispatch(alert)
