"""Per-user abuse checks: cooldown, rate limit, clock skew and teleporting."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func

from extensions import db
from .geo import travel_speed_kmh
from .ledger import DiscoveryLedger
from .models import SubmissionAttempt, ensure_aware
from .outcomes import COOLDOWN, IMPLAUSIBLE_TIMING, IMPLAUSIBLE_TRAVEL, RATE_LIMITED, Rejected
from .settings import DiscoverySettings


class AntiAbuseGuard:
    """Evaluates the abuse rules in order; the first failing rule wins.

    Every submission that reaches the guard is noted as a SubmissionAttempt.
    Attempts that share an idempotency token are retries of the same claim
    and never count against each other.
    """

    def __init__(self, settings: DiscoverySettings, ledger: DiscoveryLedger):
        self.settings = settings
        self.ledger = ledger

    def evaluate(
        self,
        *,
        user_id: str,
        landmark_id: str,
        token: str,
        latitude: float,
        longitude: float,
        client_timestamp: datetime,
        received_at: datetime,
    ) -> Optional[Rejected]:
        rejection = (
            self._cooldown(user_id, landmark_id, token, received_at)
            or self._rate_limit(user_id, token, received_at)
            or self._timing(client_timestamp, received_at)
            or self._travel(user_id, landmark_id, latitude, longitude, received_at)
        )
        db.session.add(
            SubmissionAttempt(
                user_id=user_id,
                landmark_id=landmark_id,
                idempotency_token=token,
                received_at=received_at,
                accepted=rejection is None,
                reason=rejection.reason if rejection else None,
            )
        )
        return rejection

    def _cooldown(self, user_id: str, landmark_id: str, token: str, now: datetime) -> Optional[Rejected]:
        last = (
            SubmissionAttempt.query.filter(
                SubmissionAttempt.user_id == user_id,
                SubmissionAttempt.landmark_id == landmark_id,
                SubmissionAttempt.accepted.is_(True),
                SubmissionAttempt.idempotency_token != token,
            )
            .order_by(SubmissionAttempt.received_at.desc())
            .first()
        )
        if last is None:
            return None
        elapsed = (now - ensure_aware(last.received_at)).total_seconds()
        if 0 <= elapsed < self.settings.cooldown_seconds:
            return Rejected(COOLDOWN, {"retry_after_s": round(self.settings.cooldown_seconds - elapsed, 1)})
        return None

    def _rate_limit(self, user_id: str, token: str, now: datetime) -> Optional[Rejected]:
        window_start = now - timedelta(seconds=self.settings.rate_window_seconds)
        recent = (
            db.session.query(func.count(func.distinct(SubmissionAttempt.idempotency_token)))
            .filter(
                SubmissionAttempt.user_id == user_id,
                SubmissionAttempt.received_at > window_start,
                SubmissionAttempt.idempotency_token != token,
            )
            .scalar()
        )
        if (recent or 0) >= self.settings.rate_limit:
            return Rejected(RATE_LIMITED, {"window_s": self.settings.rate_window_seconds})
        return None

    def _timing(self, client_timestamp: datetime, now: datetime) -> Optional[Rejected]:
        skew = abs((client_timestamp - now).total_seconds())
        if skew > self.settings.clock_tolerance_seconds:
            return Rejected(IMPLAUSIBLE_TIMING, {"skew_s": round(skew, 1)})
        return None

    def _travel(
        self,
        user_id: str,
        landmark_id: str,
        latitude: float,
        longitude: float,
        now: datetime,
    ) -> Optional[Rejected]:
        previous = self.ledger.last_discovery(user_id, exclude_landmark_id=landmark_id)
        if previous is None:
            return None
        elapsed = (now - ensure_aware(previous.discovered_at)).total_seconds()
        speed = travel_speed_kmh(previous.latitude, previous.longitude, latitude, longitude, elapsed)
        if speed > self.settings.max_travel_kmh:
            detail = {"speed_kmh": round(speed, 1)} if speed != float("inf") else {}
            return Rejected(IMPLAUSIBLE_TRAVEL, detail)
        return None
