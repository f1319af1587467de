"""Landmark catalog and reward tables (edit discovery/config/*.json to tweak content)."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app, has_app_context

from .outcomes import DiscoveryServiceError

logger = logging.getLogger(__name__)

DIFFICULTIES = ("easy", "medium", "hard")
DEFAULT_CATALOG_BASENAME = "landmarks.json"
DEFAULT_REWARDS_BASENAME = "rewards.json"
SUPABASE_TABLE = "landmarks"
_CONFIG_DIR = Path(__file__).resolve().parent / "config"
_FILE_CACHE: Dict[str, Dict[str, Any]] = {}
_SUPABASE_CACHE: Dict[str, Any] = {"landmarks": None, "fetched_at": 0.0}


@dataclass(frozen=True)
class Landmark:
    id: str
    name: str
    latitude: float
    longitude: float
    radius_m: float
    difficulty: str
    xp_reward: int
    category: str
    badges: Tuple[str, ...] = ()
    year: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "difficulty": self.difficulty,
            "xp_reward": self.xp_reward,
            "year": self.year,
            "location": {
                "latitude": self.latitude,
                "longitude": self.longitude,
                "radius_m": self.radius_m,
            },
            "badges": list(self.badges),
        }


@dataclass(frozen=True)
class AchievementDefinition:
    id: str
    title: str
    kind: str
    target: int
    category: Optional[str] = None
    badge: Optional[str] = None


@dataclass(frozen=True)
class RewardTable:
    """Static reward policy: multipliers, category badges and achievements."""

    difficulty_multipliers: Dict[str, float] = field(
        default_factory=lambda: {"easy": 1.0, "medium": 1.5, "hard": 2.0}
    )
    category_badges: Dict[str, str] = field(default_factory=dict)
    first_discovery_badge: Optional[str] = None
    achievements: Tuple[AchievementDefinition, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RewardTable":
        multipliers = {"easy": 1.0, "medium": 1.5, "hard": 2.0}
        multipliers.update(
            {str(key): float(value) for key, value in (payload.get("difficulty_multipliers") or {}).items()}
        )
        achievements: List[AchievementDefinition] = []
        for entry in payload.get("achievements", []):
            try:
                achievements.append(
                    AchievementDefinition(
                        id=str(entry["id"]),
                        title=entry.get("title") or str(entry["id"]),
                        kind=str(entry["kind"]),
                        target=max(1, int(entry["target"])),
                        category=entry.get("category"),
                        badge=entry.get("badge"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed achievement definition: %r", entry)
        return cls(
            difficulty_multipliers=multipliers,
            category_badges={str(key): str(value) for key, value in (payload.get("category_badges") or {}).items()},
            first_discovery_badge=payload.get("first_discovery_badge"),
            achievements=tuple(achievements),
        )


class LandmarkCatalog:
    """Read-only id -> Landmark lookup."""

    def __init__(self, landmarks: List[Landmark], version: Optional[str] = None):
        self._landmarks = {landmark.id: landmark for landmark in landmarks}
        self.version = version

    def __len__(self) -> int:
        return len(self._landmarks)

    def __iter__(self):
        return iter(sorted(self._landmarks.values(), key=lambda landmark: landmark.id))

    def get(self, landmark_id: str) -> Optional[Landmark]:
        return self._landmarks.get(str(landmark_id))

    def require(self, landmark_id: str) -> Landmark:
        landmark = self.get(landmark_id)
        if landmark is None:
            raise DiscoveryServiceError(
                "Unknown landmark",
                status_code=404,
                payload={"error": "unknown_landmark", "detail": f"No landmark with id {landmark_id!r}"},
            )
        return landmark


def landmark_from_row(row: Dict[str, Any]) -> Optional[Landmark]:
    """Coerce a JSON/Supabase row into a Landmark; returns None for unusable rows."""
    landmark_id = row.get("id") or row.get("landmark_id")
    if landmark_id in (None, ""):
        return None
    try:
        latitude = float(row.get("latitude"))
        longitude = float(row.get("longitude"))
        radius = float(row.get("radius_m") or 100)
        xp_reward = int(row.get("xp_reward") or 50)
    except (TypeError, ValueError):
        return None
    difficulty = str(row.get("difficulty") or "easy").strip().lower()
    if difficulty not in DIFFICULTIES:
        return None
    badges = row.get("badges") or ()
    if isinstance(badges, str):
        badges = [value.strip() for value in badges.split(",") if value.strip()]
    return Landmark(
        id=str(landmark_id),
        name=row.get("name") or str(landmark_id),
        latitude=latitude,
        longitude=longitude,
        radius_m=radius,
        difficulty=difficulty,
        xp_reward=xp_reward,
        category=str(row.get("category") or "General"),
        badges=tuple(str(badge) for badge in badges),
        year=str(row["year"]) if row.get("year") else None,
    )


def load_landmark_catalog(force_refresh: bool = False) -> LandmarkCatalog:
    """Return the landmark catalog, preferring Supabase when it is enabled."""
    rows = _fetch_supabase_landmarks(force_refresh)
    version: Optional[str] = "supabase"
    if rows is None:
        payload = _load_json(_resolve_path("LANDMARK_CATALOG_PATH", DEFAULT_CATALOG_BASENAME), force_refresh)
        rows = payload.get("landmarks", [])
        version = str(payload.get("version")) if payload.get("version") is not None else None

    landmarks = []
    for row in rows:
        landmark = landmark_from_row(row)
        if landmark is None:
            logger.warning("Skipping malformed landmark row: %r", row)
            continue
        landmarks.append(landmark)
    return LandmarkCatalog(landmarks, version=version)


def load_reward_table(force_refresh: bool = False) -> RewardTable:
    payload = _load_json(_resolve_path("REWARD_TABLE_PATH", DEFAULT_REWARDS_BASENAME), force_refresh)
    return RewardTable.from_payload(payload)


def _load_json(path: Path, force_refresh: bool) -> Dict[str, Any]:
    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError as exc:
        raise DiscoveryServiceError(
            "Discovery config missing",
            status_code=500,
            payload={"error": "config_missing", "detail": str(path)},
        ) from exc

    cached = _FILE_CACHE.get(str(path))
    if not force_refresh and cached and cached["mtime"] == mtime:
        return cached["data"]

    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)

    _FILE_CACHE[str(path)] = {"data": payload, "mtime": mtime}
    return payload


def _resolve_path(key: str, default_basename: str) -> Path:
    value = None
    if has_app_context():
        value = current_app.config.get(key)
    value = value or os.environ.get(key)
    if not value:
        return _CONFIG_DIR / default_basename
    path = Path(value).expanduser()
    if not path.is_absolute() and has_app_context():
        path = Path(current_app.root_path) / path
    return path


def _fetch_supabase_landmarks(force_refresh: bool) -> Optional[List[Dict[str, Any]]]:
    if not has_app_context() or not current_app.config.get("USE_SUPABASE"):
        return None
    client = current_app.config.get("SUPABASE_CLIENT")
    if not client:
        return None

    max_age = int(current_app.config.get("LANDMARK_CATALOG_CACHE_SECONDS", 300))
    cached = _SUPABASE_CACHE.get("landmarks")
    if not force_refresh and cached is not None and time.monotonic() - _SUPABASE_CACHE["fetched_at"] < max_age:
        return cached

    try:
        resp = client.table(SUPABASE_TABLE).select("*").execute()
    except Exception as exc:  # pragma: no cover - external service dependency
        current_app.logger.warning("Landmark catalog Supabase fetch failed, using file: %s", exc)
        return None

    rows = getattr(resp, "data", None) or []
    _SUPABASE_CACHE.update({"landmarks": rows, "fetched_at": time.monotonic()})
    return rows
