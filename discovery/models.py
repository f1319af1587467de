"""Database models for the discovery ledger and leaderboard."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from extensions import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiscoveryRecord(db.Model):
    """A credited discovery (unique per user/landmark) plus its frozen outcome."""

    __tablename__ = "discovery_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    landmark_id = db.Column(db.String(64), index=True, nullable=False)
    discovered_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    verification_method = db.Column(db.String(32), nullable=False, default="gps+recognition")
    confidence = db.Column(db.Float, nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    idempotency_token = db.Column(db.String(128), nullable=False)

    xp_delta = db.Column(db.Integer, nullable=False, default=0)
    total_xp = db.Column(db.Integer, nullable=False, default=0)
    leveled_up = db.Column(db.Boolean, nullable=False, default=False)
    new_level = db.Column(db.Integer, nullable=True)
    badges_awarded = db.Column(db.JSON, nullable=False, default=list)
    achievements_updated = db.Column(db.JSON, nullable=False, default=list)
    is_first_global = db.Column(db.Boolean, nullable=False, default=False)
    rank_among_discoverers = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint("user_id", "landmark_id", name="uq_discovery_user_landmark"),
        db.Index("ix_discovery_user_token", "user_id", "idempotency_token"),
    )

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<DiscoveryRecord user={self.user_id!r} landmark={self.landmark_id!r}>"


class UserProgress(db.Model):
    """Per-user aggregate; `level` always mirrors the curve applied to `total_xp`."""

    __tablename__ = "user_progress"

    user_id = db.Column(db.String(64), primary_key=True)
    total_xp = db.Column(db.Integer, nullable=False, default=0)
    level = db.Column(db.Integer, nullable=False, default=1)
    streak_days = db.Column(db.Integer, nullable=False, default=0)
    discovery_count = db.Column(db.Integer, nullable=False, default=0)
    first_discovery_count = db.Column(db.Integer, nullable=False, default=0)
    category_counts = db.Column(db.JSON, nullable=False, default=dict)
    achievement_progress = db.Column(db.JSON, nullable=False, default=dict)
    first_discovery_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_discovery_at = db.Column(db.DateTime(timezone=True), nullable=True)


class UserBadge(db.Model):
    """Earned badge, unique per user/badge so awarding twice is a no-op."""

    __tablename__ = "user_badges"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    badge_id = db.Column(db.String(64), nullable=False)
    awarded_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),
    )


class LandmarkStats(db.Model):
    __tablename__ = "landmark_stats"

    landmark_id = db.Column(db.String(64), primary_key=True)
    first_discoverer_id = db.Column(db.String(64), nullable=False)
    first_discovered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    discoverer_count = db.Column(db.Integer, nullable=False, default=0)


class LandmarkDiscoverer(db.Model):
    """Ordered discoverer list for a landmark (rank 1 is the first discoverer)."""

    __tablename__ = "landmark_discoverers"

    id = db.Column(db.Integer, primary_key=True)
    landmark_id = db.Column(db.String(64), index=True, nullable=False)
    user_id = db.Column(db.String(64), nullable=False)
    discovered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    rank = db.Column(db.Integer, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("landmark_id", "user_id", name="uq_landmark_discoverer"),
        db.UniqueConstraint("landmark_id", "rank", name="uq_landmark_rank"),
    )


class SubmissionAttempt(db.Model):
    """Anti-abuse history: one row per submission that reached the guard."""

    __tablename__ = "submission_attempts"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), index=True, nullable=False)
    landmark_id = db.Column(db.String(64), nullable=False)
    idempotency_token = db.Column(db.String(128), nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), index=True, nullable=False)
    accepted = db.Column(db.Boolean, nullable=False, default=False)
    reason = db.Column(db.String(32), nullable=True)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
