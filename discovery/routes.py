from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import Blueprint, abort, current_app, jsonify, request

from . import catalog as catalog_service
from .coordinator import DiscoveryCoordinator, DiscoverySubmission
from .geo import distance_m, validate_coordinates
from .leaderboard import MAX_LEADERBOARD_SIZE
from .models import ensure_aware
from .outcomes import DiscoveryServiceError, Failed, malformed
from .rewards import level_for_xp, xp_for_level

EXTENSION_KEY = "discovery_coordinator"

discovery_bp = Blueprint(
    "discovery",
    __name__,
    url_prefix="/api/discovery",
)


@dataclass
class FeatureGate:
    flag_name: str = "USE_DISCOVERY_LEDGER"

    def enabled(self) -> bool:
        return bool(current_app.config.get(self.flag_name, False))

    def guard(self) -> None:
        if not self.enabled():
            abort(404)


feature_gate = FeatureGate()


def _coordinator() -> DiscoveryCoordinator:
    return current_app.extensions[EXTENSION_KEY]


@discovery_bp.errorhandler(DiscoveryServiceError)
def _service_error(exc: DiscoveryServiceError):
    return jsonify(Failed.from_error(exc).to_dict()), exc.status_code


@discovery_bp.get("/status")
def discovery_status():
    catalog = catalog_service.load_landmark_catalog()
    return jsonify(
        {
            "enabled": feature_gate.enabled(),
            "supabase": bool(current_app.config.get("USE_SUPABASE", False)),
            "catalog_version": catalog.version,
            "landmark_count": len(catalog),
        }
    )


@discovery_bp.post("/discoveries")
def submit_discovery():
    feature_gate.guard()
    image: Optional[bytes] = None
    if request.files:
        payload = request.form.to_dict()
        photo = request.files.get("photo")
        if photo and photo.filename:
            image = photo.read()
    else:
        payload = request.get_json(silent=True) or {}

    submission = DiscoverySubmission.from_payload(payload, image=image)
    outcome = _coordinator().submit(submission)
    return jsonify(outcome.to_dict()), outcome.http_status


@discovery_bp.get("/landmarks")
def list_landmarks():
    feature_gate.guard()
    user_id = _clean_or_none(request.args.get("user_id"))
    origin = _origin_from_args()
    catalog = catalog_service.load_landmark_catalog()
    discovered = set(_coordinator().ledger.discovered_landmark_ids(user_id)) if user_id else set()

    entries = []
    for landmark in catalog:
        entry = landmark.to_public_dict()
        entry["discovered"] = landmark.id in discovered
        if origin:
            entry["meters_away"] = round(distance_m(origin[0], origin[1], landmark.latitude, landmark.longitude))
        entries.append(entry)

    return jsonify(
        {
            "landmarks": entries,
            "discovered_count": len(discovered & {landmark.id for landmark in catalog}),
            "total_count": len(catalog),
        }
    )


@discovery_bp.get("/landmarks/nearest")
def nearest_undiscovered():
    feature_gate.guard()
    user_id = _clean_or_none(request.args.get("user_id"))
    origin = _origin_from_args()
    if not user_id or not origin:
        raise malformed("user_id, lat and lng are required")

    discovered = set(_coordinator().ledger.discovered_landmark_ids(user_id))
    candidates = [
        (distance_m(origin[0], origin[1], landmark.latitude, landmark.longitude), landmark)
        for landmark in catalog_service.load_landmark_catalog()
        if landmark.id not in discovered
    ]
    if not candidates:
        return jsonify({"landmark": None, "message": "Every landmark has been discovered"})

    meters, landmark = min(candidates, key=lambda pair: (pair[0], pair[1].id))
    entry = landmark.to_public_dict()
    entry["meters_away"] = round(meters)
    return jsonify({"landmark": entry})


@discovery_bp.get("/landmarks/<landmark_id>/discoverers")
def landmark_discoverers(landmark_id: str):
    feature_gate.guard()
    landmark = catalog_service.load_landmark_catalog().require(landmark_id)
    stats = _coordinator().leaderboard.stats_for(landmark.id)
    stats["name"] = landmark.name
    return jsonify(stats)


@discovery_bp.get("/users/<user_id>/progress")
def user_progress(user_id: str):
    feature_gate.guard()
    coordinator = _coordinator()
    ledger = coordinator.ledger
    progress = ledger.get_progress(user_id)
    total_xp = progress.total_xp if progress else 0
    level = level_for_xp(total_xp)
    last_at = ensure_aware(progress.last_discovery_at) if progress else None
    achievement_progress = (progress.achievement_progress or {}) if progress else {}

    achievements = [
        {
            "id": definition.id,
            "title": definition.title,
            "progress": int(achievement_progress.get(definition.id, 0)),
            "target": definition.target,
            "completed": int(achievement_progress.get(definition.id, 0)) >= definition.target,
        }
        for definition in coordinator.rewards.table.achievements
    ]

    return jsonify(
        {
            "user_id": user_id,
            "total_xp": total_xp,
            "level": level,
            "next_level_xp": xp_for_level(level + 1),
            "streak_days": progress.streak_days if progress else 0,
            "last_discovery_at": last_at.isoformat() if last_at else None,
            "badges": ledger.badges_for(user_id),
            "achievements": achievements,
            "discovered": ledger.discovered_landmark_ids(user_id),
        }
    )


@discovery_bp.get("/leaderboard")
def leaderboard():
    feature_gate.guard()
    try:
        limit = int(request.args.get("limit", 10))
    except (TypeError, ValueError):
        raise malformed("limit must be an integer")
    limit = max(1, min(limit, MAX_LEADERBOARD_SIZE))
    entries = _coordinator().leaderboard.top_explorers(limit)
    return jsonify({"entries": [entry.to_dict() for entry in entries]})


def _origin_from_args() -> Optional[tuple[float, float]]:
    lat = request.args.get("lat")
    lng = request.args.get("lng")
    if lat is None or lng is None:
        return None
    try:
        origin = (float(lat), float(lng))
    except ValueError:
        raise malformed("lat and lng must be numbers")
    validate_coordinates(*origin)
    return origin


def _clean_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None
