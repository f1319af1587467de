"""Global ranking and first-discoverer bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from extensions import db
from .locks import KeyedLocks
from .models import LandmarkDiscoverer, LandmarkStats, UserProgress, ensure_aware
from .rewards import level_for_xp

MAX_LEADERBOARD_SIZE = 100


@dataclass(frozen=True)
class RankResult:
    is_first_global: bool
    rank_among_discoverers: int


@dataclass(frozen=True)
class LeaderboardEntry:
    position: int
    user_id: str
    total_xp: int
    level: int
    discovery_count: int
    reached_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "user_id": self.user_id,
            "total_xp": self.total_xp,
            "level": self.level,
            "discovery_count": self.discovery_count,
            "reached_at": self.reached_at.isoformat() if self.reached_at else None,
        }


class LeaderboardIndex:
    """Owns LandmarkStats and LandmarkDiscoverer.

    The first-discoverer flag is a check-and-set under a per-landmark lock:
    only the transaction that creates the stats row is the first discoverer.
    """

    def __init__(self, locks: Optional[KeyedLocks] = None):
        self.locks = locks or KeyedLocks()

    def record_discoverer(self, landmark_id: str, user_id: str, timestamp: datetime) -> RankResult:
        with self.locks.hold(("landmark", landmark_id)):
            existing = LandmarkDiscoverer.query.filter_by(landmark_id=landmark_id, user_id=user_id).first()
            if existing:
                return RankResult(is_first_global=existing.rank == 1, rank_among_discoverers=existing.rank)

            stats = LandmarkStats.query.filter_by(landmark_id=landmark_id).with_for_update().first()
            if stats is None:
                stats = LandmarkStats(
                    landmark_id=landmark_id,
                    first_discoverer_id=user_id,
                    first_discovered_at=timestamp,
                    discoverer_count=0,
                )
                db.session.add(stats)
                is_first = True
            else:
                is_first = False
                # Ranks are handed out in lock order; keep their timestamps in that order too.
                latest = (
                    LandmarkDiscoverer.query.filter_by(landmark_id=landmark_id)
                    .order_by(LandmarkDiscoverer.rank.desc())
                    .first()
                )
                if latest is not None:
                    timestamp = max(timestamp, ensure_aware(latest.discovered_at))

            stats.discoverer_count = (stats.discoverer_count or 0) + 1
            rank = stats.discoverer_count
            db.session.add(
                LandmarkDiscoverer(
                    landmark_id=landmark_id,
                    user_id=user_id,
                    discovered_at=timestamp,
                    rank=rank,
                )
            )
            db.session.flush()
        return RankResult(is_first_global=is_first, rank_among_discoverers=rank)

    def top_explorers(self, n: int = 10) -> List[LeaderboardEntry]:
        """Highest XP first; ties go to whoever reached their score earliest, then user id."""
        limit = max(0, min(int(n), MAX_LEADERBOARD_SIZE))
        if not limit:
            return []
        rows = (
            UserProgress.query.order_by(
                UserProgress.total_xp.desc(),
                UserProgress.last_discovery_at.asc(),
                UserProgress.user_id.asc(),
            )
            .limit(limit)
            .all()
        )
        return [
            LeaderboardEntry(
                position=index,
                user_id=row.user_id,
                total_xp=row.total_xp,
                level=level_for_xp(row.total_xp),
                discovery_count=row.discovery_count,
                reached_at=ensure_aware(row.last_discovery_at),
            )
            for index, row in enumerate(rows, start=1)
        ]

    def stats_for(self, landmark_id: str) -> Dict[str, Any]:
        stats = db.session.get(LandmarkStats, landmark_id)
        discoverers = (
            LandmarkDiscoverer.query.filter_by(landmark_id=landmark_id)
            .order_by(LandmarkDiscoverer.rank.asc())
            .all()
        )
        first_at = ensure_aware(stats.first_discovered_at) if stats else None
        return {
            "landmark_id": landmark_id,
            "discoverer_count": stats.discoverer_count if stats else 0,
            "first_discoverer": stats.first_discoverer_id if stats else None,
            "first_discovered_at": first_at.isoformat() if first_at else None,
            "discoverers": [
                {
                    "rank": row.rank,
                    "user_id": row.user_id,
                    "discovered_at": ensure_aware(row.discovered_at).isoformat(),
                }
                for row in discoverers
            ],
        }
