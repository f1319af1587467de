"""The authoritative store of credited discoveries and per-user progress."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from .locks import KeyedLocks
from .models import DiscoveryRecord, UserBadge, UserProgress, ensure_aware
from .outcomes import Completed
from .rewards import ProgressSnapshot, RewardResult


@dataclass(frozen=True)
class LedgerWrite:
    inserted: bool
    existing: Optional[DiscoveryRecord] = None


class DiscoveryLedger:
    """Owns DiscoveryRecord, UserProgress and UserBadge.

    ``record_if_absent`` is the only way a DiscoveryRecord is created. It runs
    under a per-(user, landmark) lock and relies on the unique constraint for
    callers in other processes; the loser of a race gets the winning record
    back instead of an error.
    """

    def __init__(self, locks: Optional[KeyedLocks] = None):
        self.locks = locks or KeyedLocks()

    def find(self, user_id: str, landmark_id: str) -> Optional[DiscoveryRecord]:
        return DiscoveryRecord.query.filter_by(user_id=user_id, landmark_id=landmark_id).first()

    def find_by_token(self, user_id: str, token: str) -> Optional[DiscoveryRecord]:
        return DiscoveryRecord.query.filter_by(user_id=user_id, idempotency_token=token).first()

    def record_if_absent(self, user_id: str, landmark_id: str, record: DiscoveryRecord) -> LedgerWrite:
        with self.locks.hold(("ledger", user_id, landmark_id)):
            existing = self.find(user_id, landmark_id)
            if existing:
                return LedgerWrite(inserted=False, existing=existing)

            db.session.add(record)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                winner = self.find(user_id, landmark_id)
                if winner is None:
                    raise
                return LedgerWrite(inserted=False, existing=winner)
        return LedgerWrite(inserted=True)

    def discovered_landmark_ids(self, user_id: str) -> List[str]:
        rows = (
            db.session.query(DiscoveryRecord.landmark_id)
            .filter(DiscoveryRecord.user_id == user_id)
            .order_by(DiscoveryRecord.discovered_at.asc())
            .all()
        )
        return [row.landmark_id for row in rows]

    def last_discovery(self, user_id: str, exclude_landmark_id: Optional[str] = None) -> Optional[DiscoveryRecord]:
        query = DiscoveryRecord.query.filter(DiscoveryRecord.user_id == user_id)
        if exclude_landmark_id:
            query = query.filter(DiscoveryRecord.landmark_id != exclude_landmark_id)
        return query.order_by(DiscoveryRecord.discovered_at.desc()).first()

    def get_progress(self, user_id: str, for_update: bool = False) -> Optional[UserProgress]:
        query = UserProgress.query.filter_by(user_id=user_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def badges_for(self, user_id: str) -> List[str]:
        rows = UserBadge.query.filter_by(user_id=user_id).order_by(UserBadge.awarded_at.asc(), UserBadge.id.asc()).all()
        return [row.badge_id for row in rows]

    def snapshot(self, user_id: str) -> ProgressSnapshot:
        progress = self.get_progress(user_id, for_update=True)
        badges = frozenset(self.badges_for(user_id))
        if progress is None:
            return ProgressSnapshot(badges=badges)
        return ProgressSnapshot(
            total_xp=progress.total_xp,
            streak_days=progress.streak_days,
            last_discovery_at=ensure_aware(progress.last_discovery_at),
            discovery_count=progress.discovery_count,
            first_discovery_count=progress.first_discovery_count,
            category_counts=dict(progress.category_counts or {}),
            achievement_progress=dict(progress.achievement_progress or {}),
            badges=badges,
        )

    def apply_reward(
        self,
        record: DiscoveryRecord,
        reward: RewardResult,
        is_first_global: bool,
        rank: int,
    ) -> UserProgress:
        """Write the reward into UserProgress/UserBadge and freeze it on the record."""
        discovered_at: datetime = record.discovered_at
        progress = self.get_progress(record.user_id, for_update=True)
        if progress is None:
            progress = UserProgress(user_id=record.user_id, first_discovery_at=discovered_at)
            db.session.add(progress)

        progress.total_xp = reward.total_xp
        progress.level = reward.level
        progress.streak_days = reward.streak_days
        progress.discovery_count = reward.discovery_count
        progress.first_discovery_count = reward.first_discovery_count
        # Reassign JSON columns so the change is tracked.
        progress.category_counts = dict(reward.category_counts)
        progress.achievement_progress = dict(reward.achievement_progress)
        progress.last_discovery_at = discovered_at
        if progress.first_discovery_at is None:
            progress.first_discovery_at = discovered_at

        for badge_id in reward.badges_awarded:
            db.session.add(UserBadge(user_id=record.user_id, badge_id=badge_id, awarded_at=discovered_at))

        record.xp_delta = reward.xp_delta
        record.total_xp = reward.total_xp
        record.leveled_up = reward.leveled_up
        record.new_level = reward.new_level
        record.badges_awarded = list(reward.badges_awarded)
        record.achievements_updated = [dict(entry) for entry in reward.achievements_updated]
        record.is_first_global = is_first_global
        record.rank_among_discoverers = rank
        db.session.flush()
        return progress


def completed_from_record(record: DiscoveryRecord, replayed: bool = True) -> Completed:
    return Completed(
        xp_delta=record.xp_delta,
        total_xp=record.total_xp,
        leveled_up=bool(record.leveled_up),
        new_level=record.new_level,
        badges_awarded=tuple(record.badges_awarded or ()),
        is_first_global_discovery=bool(record.is_first_global),
        rank_among_discoverers=record.rank_among_discoverers,
        achievements_updated=tuple(dict(entry) for entry in (record.achievements_updated or ())),
        replayed=replayed,
    )
