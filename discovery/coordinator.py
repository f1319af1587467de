"""Submission pipeline: verify a discovery claim and credit it exactly once."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from math import isfinite
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from dateutil import parser as date_parser
from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from extensions import db
from .abuse import AntiAbuseGuard
from .catalog import Landmark, LandmarkCatalog, RewardTable
from .geo import GeoVerifier, validate_coordinates
from .leaderboard import LeaderboardIndex
from .ledger import DiscoveryLedger, completed_from_record
from .locks import KeyedLocks
from .models import DiscoveryRecord
from .outcomes import (
    LOW_CONFIDENCE,
    TOO_FAR,
    Completed,
    DiscoveryServiceError,
    Failed,
    Rejected,
    malformed,
)
from .recognition import OracleVerdict, RecognitionGate
from .rewards import RewardCalculator
from .settings import DiscoverySettings

Outcome = Union[Completed, Rejected, Failed]

SUPABASE_MIRROR_TABLE = "landmark_discoveries"
MAX_TOKEN_LENGTH = 128
# Matches the String(64) id columns in models.py.
MAX_ID_LENGTH = 64

_module_logger = logging.getLogger(__name__)


class RecognitionOracle(Protocol):
    def score(self, image: bytes, expected_landmark_id: str) -> OracleVerdict: ...


class SubmissionState(str, enum.Enum):
    RECEIVED = "received"
    GEO_CHECKED = "geo_checked"
    RECOGNITION_CHECKED = "recognition_checked"
    ABUSE_CHECKED = "abuse_checked"
    LEDGERED = "ledgered"
    RANKED = "ranked"
    REWARDED = "rewarded"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class DiscoverySubmission:
    user_id: str
    landmark_id: str
    latitude: float
    longitude: float
    accuracy_m: float
    client_timestamp: datetime
    idempotency_token: str
    confidence: Optional[float] = None
    matched_landmark_id: Optional[str] = None
    image: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], image: Optional[bytes] = None) -> "DiscoverySubmission":
        """Parse a request body; raises a malformed-input error on bad fields."""
        if not isinstance(payload, dict):
            raise malformed("Request body must be a JSON object")
        user_id = str(payload.get("user_id") or "").strip()
        landmark_id = str(payload.get("landmark_id") or "").strip()
        token = str(payload.get("idempotency_token") or "").strip()
        if not user_id or not landmark_id or not token:
            raise malformed("user_id, landmark_id and idempotency_token are required")

        try:
            latitude = float(payload.get("latitude"))
            longitude = float(payload.get("longitude"))
            accuracy = float(payload.get("accuracy_m") or 0.0)
        except (TypeError, ValueError) as exc:
            raise malformed("Invalid coordinate values") from exc

        confidence = payload.get("confidence")
        if confidence is not None:
            try:
                confidence = float(confidence)
            except (TypeError, ValueError) as exc:
                raise malformed("Invalid confidence value") from exc

        raw_ts = payload.get("client_timestamp")
        if not raw_ts:
            raise malformed("client_timestamp is required")
        try:
            client_ts = date_parser.isoparse(str(raw_ts))
        except (TypeError, ValueError) as exc:
            raise malformed("client_timestamp must be ISO 8601") from exc
        if client_ts.tzinfo is None:
            client_ts = client_ts.replace(tzinfo=timezone.utc)

        matched = payload.get("matched_landmark_id")
        return cls(
            user_id=user_id,
            landmark_id=landmark_id,
            latitude=latitude,
            longitude=longitude,
            accuracy_m=accuracy,
            client_timestamp=client_ts.astimezone(timezone.utc),
            idempotency_token=token,
            confidence=confidence,
            matched_landmark_id=str(matched) if matched else None,
            image=image,
        )


@dataclass
class DiscoveryTransaction:
    """Per-submission state carried through the pipeline."""

    submission: DiscoverySubmission
    received_at: datetime
    state: SubmissionState = SubmissionState.RECEIVED
    history: List[SubmissionState] = field(default_factory=lambda: [SubmissionState.RECEIVED])
    landmark: Optional[Landmark] = None
    confidence: Optional[float] = None
    matched_landmark_id: Optional[str] = None

    def advance(self, state: SubmissionState) -> None:
        self.state = state
        self.history.append(state)

    def reject(self, rejection: Rejected) -> Rejected:
        self.advance(SubmissionState.REJECTED)
        return rejection

    def fail(self, failure: Failed) -> Failed:
        self.advance(SubmissionState.FAILED)
        return failure


def _logger():
    if has_app_context():
        return current_app.logger
    return _module_logger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiscoveryCoordinator:
    """Runs one submission through geo, recognition and abuse checks, then the
    atomic ledger/rank/reward section.

    Checks short-circuit on the first rejection. Nothing is committed until the
    whole reward is computed, so callers see either the full completion or no
    change at all.
    """

    def __init__(
        self,
        settings: DiscoverySettings,
        catalog_loader: Callable[[], LandmarkCatalog],
        reward_table: RewardTable,
        *,
        clock: Callable[[], datetime] = _utcnow,
        oracle: Optional[RecognitionOracle] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.settings = settings
        self.catalog_loader = catalog_loader
        self.clock = clock
        self.oracle = oracle
        self.locks = locks = locks or KeyedLocks()
        self.geo = GeoVerifier(settings.geo_slack_factor)
        self.gate = RecognitionGate(settings.confidence_thresholds)
        self.ledger = DiscoveryLedger(locks)
        self.leaderboard = LeaderboardIndex(locks)
        self.guard = AntiAbuseGuard(settings, self.ledger)
        self.rewards = RewardCalculator(reward_table, settings.first_bonus_xp, settings.timezone)

    def submit(self, submission: DiscoverySubmission) -> Outcome:
        txn = DiscoveryTransaction(submission=submission, received_at=self.clock())
        try:
            return self._run(txn)
        except DiscoveryServiceError as exc:
            db.session.rollback()
            _logger().warning(
                "Discovery submission failed for user=%s landmark=%s: %s",
                submission.user_id,
                submission.landmark_id,
                exc.payload,
            )
            return txn.fail(Failed.from_error(exc))
        except SQLAlchemyError:
            db.session.rollback()
            _logger().exception("Discovery persistence error for user=%s", submission.user_id)
            return txn.fail(Failed("persistence_unavailable", "Storage is unavailable", http_status=503))
        except Exception:
            db.session.rollback()
            _logger().exception("Unexpected discovery failure for user=%s", submission.user_id)
            return txn.fail(Failed("internal_error", "Unexpected error", http_status=500))

    def _run(self, txn: DiscoveryTransaction) -> Outcome:
        submission = txn.submission
        txn.landmark = self._validate(submission)

        replay = self.ledger.find_by_token(submission.user_id, submission.idempotency_token)
        if replay is not None:
            if replay.landmark_id != submission.landmark_id:
                raise malformed("Idempotency token was already used for another landmark")
            txn.advance(SubmissionState.COMPLETED)
            return completed_from_record(replay)

        self._resolve_confidence(txn)

        geo = self.geo.verify(submission.latitude, submission.longitude, submission.accuracy_m, txn.landmark)
        if not geo.is_nearby:
            return self._rejected(
                txn,
                Rejected(
                    TOO_FAR,
                    {
                        "distance_m": round(geo.distance_m, 1),
                        "radius_m": txn.landmark.radius_m,
                    },
                ),
            )
        txn.advance(SubmissionState.GEO_CHECKED)

        if not self.gate.accepts_for(
            txn.confidence,
            txn.landmark.difficulty,
            txn.landmark.id,
            txn.matched_landmark_id,
        ):
            return self._rejected(
                txn,
                Rejected(LOW_CONFIDENCE, {"threshold": self.gate.threshold_for(txn.landmark.difficulty)}),
            )
        txn.advance(SubmissionState.RECOGNITION_CHECKED)

        # Abuse rules read the user's own history, so one user's claims are
        # checked and committed one at a time.
        with self.locks.hold(("user", submission.user_id)):
            return self._check_and_commit(txn)

    def _check_and_commit(self, txn: DiscoveryTransaction) -> Outcome:
        submission = txn.submission
        rejection = self.guard.evaluate(
            user_id=submission.user_id,
            landmark_id=submission.landmark_id,
            token=submission.idempotency_token,
            latitude=submission.latitude,
            longitude=submission.longitude,
            client_timestamp=submission.client_timestamp,
            received_at=txn.received_at,
        )
        if rejection is not None:
            # Keep the attempt so rate limiting sees it.
            db.session.commit()
            return self._rejected(txn, rejection)
        txn.advance(SubmissionState.ABUSE_CHECKED)

        for attempt in range(1, self.settings.commit_retries + 1):
            try:
                return self._commit(txn)
            except IntegrityError as exc:
                db.session.rollback()
                _logger().warning(
                    "Discovery commit conflict (attempt %s/%s) for user=%s landmark=%s: %s",
                    attempt,
                    self.settings.commit_retries,
                    submission.user_id,
                    submission.landmark_id,
                    exc.orig,
                )
        raise DiscoveryServiceError(
            "Could not commit discovery",
            status_code=503,
            payload={"error": "persistence_unavailable", "detail": "commit_conflict"},
        )

    def _validate(self, submission: DiscoverySubmission) -> Landmark:
        if not submission.user_id or len(submission.user_id) > MAX_ID_LENGTH:
            raise malformed(f"user_id must be 1-{MAX_ID_LENGTH} characters")
        landmark = self.catalog_loader().require(submission.landmark_id)
        validate_coordinates(submission.latitude, submission.longitude)
        if not isfinite(submission.accuracy_m) or submission.accuracy_m < 0:
            raise malformed("GPS accuracy must be a non-negative number")
        if len(submission.idempotency_token) > MAX_TOKEN_LENGTH:
            raise malformed("Idempotency token is too long")
        if submission.confidence is not None:
            self.gate.validate(submission.confidence)
        elif not submission.image:
            raise malformed("A recognition confidence or a photo is required")
        return landmark

    def _resolve_confidence(self, txn: DiscoveryTransaction) -> None:
        submission = txn.submission
        if submission.confidence is not None:
            txn.confidence = submission.confidence
            txn.matched_landmark_id = submission.matched_landmark_id
            return
        if self.oracle is None:
            raise DiscoveryServiceError(
                "Recognition oracle is not configured",
                status_code=503,
                payload={"error": "recognition_unavailable", "detail": "oracle_not_configured"},
            )
        verdict = self.oracle.score(submission.image, submission.landmark_id)
        self.gate.validate(verdict.confidence)
        txn.confidence = verdict.confidence
        txn.matched_landmark_id = verdict.matched_landmark_id

    def _rejected(self, txn: DiscoveryTransaction, rejection: Rejected) -> Rejected:
        _logger().info(
            "Discovery rejected (%s) for user=%s landmark=%s",
            rejection.reason,
            txn.submission.user_id,
            txn.submission.landmark_id,
        )
        return txn.reject(rejection)

    def _commit(self, txn: DiscoveryTransaction) -> Completed:
        submission = txn.submission
        landmark = txn.landmark
        record = DiscoveryRecord(
            user_id=submission.user_id,
            landmark_id=landmark.id,
            discovered_at=txn.received_at,
            verification_method="gps+recognition",
            confidence=txn.confidence,
            latitude=submission.latitude,
            longitude=submission.longitude,
            idempotency_token=submission.idempotency_token,
        )
        write = self.ledger.record_if_absent(submission.user_id, landmark.id, record)
        if not write.inserted:
            db.session.commit()
            txn.advance(SubmissionState.COMPLETED)
            return completed_from_record(write.existing)
        txn.advance(SubmissionState.LEDGERED)

        rank = self.leaderboard.record_discoverer(landmark.id, submission.user_id, txn.received_at)
        txn.advance(SubmissionState.RANKED)

        snapshot = self.ledger.snapshot(submission.user_id)
        reward = self.rewards.apply(snapshot, landmark, rank.is_first_global, txn.received_at)
        self.ledger.apply_reward(record, reward, rank.is_first_global, rank.rank_among_discoverers)
        txn.advance(SubmissionState.REWARDED)

        db.session.commit()
        txn.advance(SubmissionState.COMPLETED)
        _logger().info(
            "Discovery completed user=%s landmark=%s xp=%s first=%s rank=%s",
            submission.user_id,
            landmark.id,
            reward.xp_delta,
            rank.is_first_global,
            rank.rank_among_discoverers,
        )
        self._mirror(record)
        return completed_from_record(record, replayed=False)

    def _mirror(self, record: DiscoveryRecord) -> None:
        """Best-effort copy of a committed discovery to Supabase."""
        if not has_app_context() or not current_app.config.get("USE_SUPABASE"):
            return
        client = current_app.config.get("SUPABASE_CLIENT")
        if not client:
            return
        payload = {
            "user_id": record.user_id,
            "landmark_id": record.landmark_id,
            "discovered_at": record.discovered_at.isoformat(),
            "xp_delta": record.xp_delta,
            "is_first_global": record.is_first_global,
            "rank_among_discoverers": record.rank_among_discoverers,
        }
        try:
            client.table(SUPABASE_MIRROR_TABLE).insert(payload, returning="minimal").execute()
        except Exception as exc:  # pragma: no cover - external service dependency
            current_app.logger.warning("Discovery Supabase mirror failed: %s", exc)
