"""Outcome types returned by the discovery pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

TOO_FAR = "too_far"
LOW_CONFIDENCE = "low_confidence"
RATE_LIMITED = "rate_limited"
COOLDOWN = "cooldown"
IMPLAUSIBLE_TIMING = "implausible_timing"
IMPLAUSIBLE_TRAVEL = "implausible_travel"

REJECTION_REASONS = frozenset(
    {TOO_FAR, LOW_CONFIDENCE, RATE_LIMITED, COOLDOWN, IMPLAUSIBLE_TIMING, IMPLAUSIBLE_TRAVEL}
)


class DiscoveryServiceError(Exception):
    """Raised when a submission cannot be processed (a fault, not a rejection)."""

    def __init__(self, message: str, status_code: int = 400, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {"error": message}

    @property
    def cause(self) -> str:
        return str(self.payload.get("error") or "internal_error")


def malformed(message: str, **extra: Any) -> DiscoveryServiceError:
    return DiscoveryServiceError(message, status_code=400, payload={"error": "malformed_input", "detail": message, **extra})


@dataclass(frozen=True)
class Rejected:
    reason: str
    detail: Dict[str, Any] = field(default_factory=dict)

    status = "rejected"
    http_status = 409

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "reason": self.reason, **self.detail}


@dataclass(frozen=True)
class Completed:
    xp_delta: int
    total_xp: int
    leveled_up: bool
    new_level: Optional[int]
    badges_awarded: Tuple[str, ...]
    is_first_global_discovery: bool
    rank_among_discoverers: int
    achievements_updated: Tuple[Dict[str, Any], ...] = ()
    replayed: bool = False

    status = "completed"
    http_status = 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "xp_delta": self.xp_delta,
            "total_xp": self.total_xp,
            "leveled_up": self.leveled_up,
            "new_level": self.new_level,
            "badges_awarded": list(self.badges_awarded),
            "achievements_updated": [dict(entry) for entry in self.achievements_updated],
            "is_first_global_discovery": self.is_first_global_discovery,
            "rank_among_discoverers": self.rank_among_discoverers,
            "replayed": self.replayed,
        }

    def figures(self) -> Tuple[Any, ...]:
        """Reward figures that must match between a completion and its replays."""
        return (
            self.xp_delta,
            self.total_xp,
            self.leveled_up,
            self.new_level,
            self.badges_awarded,
            self.is_first_global_discovery,
            self.rank_among_discoverers,
        )


@dataclass(frozen=True)
class Failed:
    cause: str
    detail: Optional[str] = None
    http_status: int = 500

    status = "failed"

    @classmethod
    def from_error(cls, exc: DiscoveryServiceError) -> "Failed":
        detail = exc.payload.get("detail") or str(exc)
        return cls(cause=exc.cause, detail=detail, http_status=exc.status_code)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status, "cause": self.cause}
        if self.detail:
            payload["detail"] = self.detail
        return payload
