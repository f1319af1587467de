"""Runtime knobs for the discovery pipeline, read from the Flask config."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

DEFAULT_CONFIDENCE_THRESHOLDS = {"easy": 0.6, "medium": 0.7, "hard": 0.8}

DEFAULTS: Dict[str, Any] = {
    "DISCOVERY_GEO_SLACK_FACTOR": 1.0,
    "DISCOVERY_COOLDOWN_SECONDS": 30,
    "DISCOVERY_RATE_LIMIT": 10,
    "DISCOVERY_RATE_WINDOW_SECONDS": 60,
    "DISCOVERY_CLOCK_TOLERANCE_SECONDS": 120,
    "DISCOVERY_MAX_TRAVEL_KMH": 300.0,
    "DISCOVERY_FIRST_BONUS_XP": 25,
    "DISCOVERY_TIMEZONE": "UTC",
    "DISCOVERY_COMMIT_RETRIES": 3,
    "RECOGNITION_ORACLE_URL": None,
    "RECOGNITION_ORACLE_TIMEOUT": 10.0,
}


@dataclass(frozen=True)
class DiscoverySettings:
    geo_slack_factor: float = 1.0
    cooldown_seconds: int = 30
    rate_limit: int = 10
    rate_window_seconds: int = 60
    clock_tolerance_seconds: int = 120
    max_travel_kmh: float = 300.0
    first_bonus_xp: int = 25
    timezone: str = "UTC"
    commit_retries: int = 3
    confidence_thresholds: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CONFIDENCE_THRESHOLDS)
    )
    oracle_url: str | None = None
    oracle_timeout: float = 10.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "DiscoverySettings":
        """Build settings from a Flask config mapping, falling back to defaults."""

        def _get(key: str) -> Any:
            value = config.get(key)
            return DEFAULTS[key] if value is None else value

        thresholds = dict(DEFAULT_CONFIDENCE_THRESHOLDS)
        thresholds.update(config.get("DISCOVERY_CONFIDENCE_THRESHOLDS") or {})

        return cls(
            geo_slack_factor=float(_get("DISCOVERY_GEO_SLACK_FACTOR")),
            cooldown_seconds=int(_get("DISCOVERY_COOLDOWN_SECONDS")),
            rate_limit=int(_get("DISCOVERY_RATE_LIMIT")),
            rate_window_seconds=int(_get("DISCOVERY_RATE_WINDOW_SECONDS")),
            clock_tolerance_seconds=int(_get("DISCOVERY_CLOCK_TOLERANCE_SECONDS")),
            max_travel_kmh=float(_get("DISCOVERY_MAX_TRAVEL_KMH")),
            first_bonus_xp=int(_get("DISCOVERY_FIRST_BONUS_XP")),
            timezone=str(_get("DISCOVERY_TIMEZONE")),
            commit_retries=max(1, int(_get("DISCOVERY_COMMIT_RETRIES"))),
            confidence_thresholds={key: float(value) for key, value in thresholds.items()},
            oracle_url=_get("RECOGNITION_ORACLE_URL") or None,
            oracle_timeout=float(_get("RECOGNITION_ORACLE_TIMEOUT")),
        )
