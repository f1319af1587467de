"""Reward policy: XP, levels, badges, achievements and streaks.

Everything here is pure. The calculator works on a ``ProgressSnapshot`` and
returns a ``RewardResult``; persisting the result is the ledger's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from math import floor, isqrt
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
from zoneinfo import ZoneInfo

from .catalog import Landmark, RewardTable

XP_PER_LEVEL_STEP = 100


def level_for_xp(total_xp: int) -> int:
    """floor(sqrt(xp / 100)) + 1, computed on integers so it never drifts."""
    return isqrt(max(0, int(total_xp)) // XP_PER_LEVEL_STEP) + 1


def xp_for_level(level: int) -> int:
    """Smallest total XP that reaches ``level``."""
    return XP_PER_LEVEL_STEP * (max(1, level) - 1) ** 2


@dataclass(frozen=True)
class ProgressSnapshot:
    total_xp: int = 0
    streak_days: int = 0
    last_discovery_at: Optional[datetime] = None
    discovery_count: int = 0
    first_discovery_count: int = 0
    category_counts: Dict[str, int] = field(default_factory=dict)
    achievement_progress: Dict[str, int] = field(default_factory=dict)
    badges: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class RewardResult:
    xp_delta: int
    total_xp: int
    leveled_up: bool
    new_level: Optional[int]
    level: int
    badges_awarded: Tuple[str, ...]
    achievements_updated: Tuple[Dict[str, Any], ...]
    streak_days: int
    discovery_count: int
    first_discovery_count: int
    category_counts: Dict[str, int]
    achievement_progress: Dict[str, int]


class RewardCalculator:
    def __init__(self, table: RewardTable, first_bonus_xp: int = 25, timezone: str = "UTC"):
        self.table = table
        self.first_bonus_xp = first_bonus_xp
        self.tz = ZoneInfo(timezone)

    def xp_for(self, landmark: Landmark, is_first_global: bool) -> int:
        multiplier = self.table.difficulty_multipliers.get(landmark.difficulty, 1.0)
        xp = floor(landmark.xp_reward * multiplier)
        if is_first_global:
            xp += self.first_bonus_xp
        return xp

    def next_streak(self, snapshot: ProgressSnapshot, discovered_at: datetime) -> int:
        if snapshot.last_discovery_at is None or snapshot.streak_days <= 0:
            return 1
        gap = (self._day(discovered_at) - self._day(snapshot.last_discovery_at)).days
        if gap == 1:
            return snapshot.streak_days + 1
        if gap > 1:
            return 1
        # Same day, or a clock that went backwards.
        return snapshot.streak_days

    def apply(
        self,
        snapshot: ProgressSnapshot,
        landmark: Landmark,
        is_first_global: bool,
        discovered_at: datetime,
    ) -> RewardResult:
        xp_delta = self.xp_for(landmark, is_first_global)
        total_xp = snapshot.total_xp + xp_delta
        old_level = level_for_xp(snapshot.total_xp)
        level = level_for_xp(total_xp)

        streak = self.next_streak(snapshot, discovered_at)
        discovery_count = snapshot.discovery_count + 1
        first_count = snapshot.first_discovery_count + (1 if is_first_global else 0)
        category_counts = dict(snapshot.category_counts)
        category_counts[landmark.category] = category_counts.get(landmark.category, 0) + 1

        counters = {
            "discoveries": discovery_count,
            "first_discoveries": first_count,
            "streak": streak,
        }
        achievement_progress = dict(snapshot.achievement_progress)
        updated: List[Dict[str, Any]] = []
        candidates: List[str] = list(landmark.badges)
        category_badge = self.table.category_badges.get(landmark.category)
        if category_badge:
            candidates.append(category_badge)
        if is_first_global and self.table.first_discovery_badge:
            candidates.append(self.table.first_discovery_badge)

        for achievement in self.table.achievements:
            if achievement.kind == "category":
                value = category_counts.get(achievement.category or "", 0)
            else:
                value = counters.get(achievement.kind)
                if value is None:
                    continue
            previous = int(achievement_progress.get(achievement.id, 0))
            progress = min(achievement.target, max(previous, value))
            if progress == previous:
                continue
            achievement_progress[achievement.id] = progress
            completed = progress >= achievement.target
            updated.append(
                {
                    "id": achievement.id,
                    "title": achievement.title,
                    "progress": progress,
                    "target": achievement.target,
                    "completed": completed,
                }
            )
            if completed and achievement.badge:
                candidates.append(achievement.badge)

        awarded: List[str] = []
        for badge in candidates:
            if badge in snapshot.badges or badge in awarded:
                continue
            awarded.append(badge)

        return RewardResult(
            xp_delta=xp_delta,
            total_xp=total_xp,
            leveled_up=level > old_level,
            new_level=level if level > old_level else None,
            level=level,
            badges_awarded=tuple(awarded),
            achievements_updated=tuple(updated),
            streak_days=streak,
            discovery_count=discovery_count,
            first_discovery_count=first_count,
            category_counts=category_counts,
            achievement_progress=achievement_progress,
        )

    def _day(self, moment: datetime) -> date:
        return moment.astimezone(self.tz).date()
