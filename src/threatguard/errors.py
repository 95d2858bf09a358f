"""Exception types raised by the engine.

Only :class:`SecurityViolation` is allowed to change the outcome of a
request; everything else is recovered inside the engine.
"""

from __future__ import annotations


class ThreatGuardError(Exception):
    """Base class for threatguard errors."""


class SecurityViolation(ThreatGuardError):
    """A request was rejected because its risk crossed the deny threshold.

    The HTTP layer turns this into a 403 response.
    """

    def __init__(self, reason_code: str, message: str = "", *, risk: float = 0.0) -> None:
        self.reason_code = reason_code
        self.risk = risk
        super().__init__(message or f"Request denied: {reason_code}")


class ScorerNotReadyError(ThreatGuardError):
    """A learned scorer was queried before it was fitted and has no fallback."""
