from datetime import datetime, timedelta, timezone

import pytest

from discovery.catalog import AchievementDefinition, Landmark, RewardTable
from discovery.rewards import ProgressSnapshot, RewardCalculator, level_for_xp, xp_for_level

NOON = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)

TABLE = RewardTable(
    category_badges={"Historic": "history-buff"},
    first_discovery_badge="trailblazer",
    achievements=(
        AchievementDefinition(id="first-steps", title="First Steps", kind="discoveries", target=1),
        AchievementDefinition(id="history", title="History", kind="category", category="Historic", target=2, badge="historian"),
        AchievementDefinition(id="streak-3", title="Streak", kind="streak", target=3),
    ),
)


def _landmark(difficulty: str = "easy", xp: int = 50, category: str = "Historic", badges=()) -> Landmark:
    return Landmark(
        id=f"{category}-{difficulty}",
        name="Somewhere",
        latitude=63.43,
        longitude=10.39,
        radius_m=100,
        difficulty=difficulty,
        xp_reward=xp,
        category=category,
        badges=tuple(badges),
    )


@pytest.fixture
def calculator() -> RewardCalculator:
    return RewardCalculator(TABLE, first_bonus_xp=25, timezone="UTC")


def test_level_curve_is_monotonic() -> None:
    previous = level_for_xp(0)
    for xp in range(0, 20000, 7):
        level = level_for_xp(xp)
        assert level >= previous
        previous = level


@pytest.mark.parametrize(
    ("xp", "level"),
    [(0, 1), (99, 1), (100, 2), (399, 2), (400, 3), (900, 4), (-5, 1)],
)
def test_level_steps(xp: int, level: int) -> None:
    assert level_for_xp(xp) == level


def test_xp_for_level_is_the_threshold() -> None:
    for level in range(1, 12):
        assert level_for_xp(xp_for_level(level)) == level
        assert level_for_xp(xp_for_level(level) - 1) == max(1, level - 1)


@pytest.mark.parametrize(
    ("difficulty", "first", "expected"),
    [
        ("easy", False, 50),
        ("medium", False, 75),
        ("hard", False, 100),
        ("hard", True, 125),
    ],
)
def test_xp_formula(calculator: RewardCalculator, difficulty: str, first: bool, expected: int) -> None:
    assert calculator.xp_for(_landmark(difficulty), first) == expected


def test_first_reward(calculator: RewardCalculator) -> None:
    result = calculator.apply(ProgressSnapshot(), _landmark("hard", 80, badges=["pilgrim"]), True, NOON)

    assert result.xp_delta == 185
    assert result.total_xp == 185
    assert result.leveled_up is True
    assert result.new_level == 2
    assert result.badges_awarded == ("pilgrim", "history-buff", "trailblazer")
    assert [entry["id"] for entry in result.achievements_updated] == ["first-steps", "history", "streak-3"]
    assert result.achievements_updated[0]["completed"] is True
    assert result.streak_days == 1
    assert result.category_counts == {"Historic": 1}


def test_no_level_up_reports_no_new_level(calculator: RewardCalculator) -> None:
    result = calculator.apply(ProgressSnapshot(total_xp=10), _landmark(), False, NOON)
    assert result.leveled_up is False
    assert result.new_level is None
    assert result.level == 1


def test_held_badges_are_not_reawarded(calculator: RewardCalculator) -> None:
    snapshot = ProgressSnapshot(badges=frozenset({"history-buff"}))
    result = calculator.apply(snapshot, _landmark(), False, NOON)
    assert "history-buff" not in result.badges_awarded


def test_completed_achievement_awards_its_badge(calculator: RewardCalculator) -> None:
    snapshot = ProgressSnapshot(
        discovery_count=1,
        category_counts={"Historic": 1},
        achievement_progress={"first-steps": 1, "history": 1, "streak-3": 1},
        badges=frozenset({"history-buff"}),
        last_discovery_at=NOON,
        streak_days=1,
    )
    result = calculator.apply(snapshot, _landmark("medium"), False, NOON + timedelta(hours=1))

    assert result.badges_awarded == ("historian",)
    assert result.achievements_updated == (
        {"id": "history", "title": "History", "progress": 2, "target": 2, "completed": True},
    )


def test_streak_next_day_increments(calculator: RewardCalculator) -> None:
    snapshot = ProgressSnapshot(last_discovery_at=NOON, streak_days=2)
    assert calculator.next_streak(snapshot, NOON + timedelta(days=1)) == 3


def test_streak_skipped_day_resets(calculator: RewardCalculator) -> None:
    snapshot = ProgressSnapshot(last_discovery_at=NOON, streak_days=4)
    assert calculator.next_streak(snapshot, NOON + timedelta(days=2)) == 1


def test_streak_same_day_unchanged(calculator: RewardCalculator) -> None:
    snapshot = ProgressSnapshot(last_discovery_at=NOON, streak_days=4)
    assert calculator.next_streak(snapshot, NOON + timedelta(hours=11, minutes=59)) == 4


def test_streak_uses_calendar_days_in_configured_timezone() -> None:
    oslo = RewardCalculator(TABLE, timezone="Europe/Oslo")
    late = datetime(2026, 5, 4, 21, 30, tzinfo=timezone.utc)  # 23:30 in Oslo
    early = datetime(2026, 5, 4, 22, 30, tzinfo=timezone.utc)  # 00:30 next day in Oslo
    snapshot = ProgressSnapshot(last_discovery_at=late, streak_days=1)
    assert oslo.next_streak(snapshot, early) == 2


def test_achievement_progress_never_regresses(calculator: RewardCalculator) -> None:
    snapshot = ProgressSnapshot(
        last_discovery_at=NOON,
        streak_days=3,
        achievement_progress={"streak-3": 3, "first-steps": 1},
        discovery_count=3,
    )
    result = calculator.apply(snapshot, _landmark(category="Royal"), False, NOON + timedelta(days=5))
    assert result.streak_days == 1
    assert result.achievement_progress["streak-3"] == 3
    assert all(entry["id"] != "streak-3" for entry in result.achievements_updated)
