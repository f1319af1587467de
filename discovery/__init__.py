"""Landmark discovery ledger: verification, rewards and leaderboard."""

from __future__ import annotations

from flask import Flask

from .catalog import load_landmark_catalog, load_reward_table
from .coordinator import DiscoveryCoordinator, DiscoverySubmission
from .recognition import HttpRecognitionOracle
from .routes import EXTENSION_KEY, discovery_bp
from .settings import DiscoverySettings


def init_discovery(app: Flask, clock=None) -> DiscoveryCoordinator:
    """Build the app-wide coordinator (one lock table per process) and register routes."""
    settings = DiscoverySettings.from_config(app.config)
    oracle = None
    if settings.oracle_url:
        oracle = HttpRecognitionOracle(settings.oracle_url, timeout=settings.oracle_timeout)

    with app.app_context():
        reward_table = load_reward_table()

    kwargs = {"oracle": oracle}
    if clock is not None:
        kwargs["clock"] = clock
    coordinator = DiscoveryCoordinator(settings, load_landmark_catalog, reward_table, **kwargs)
    app.extensions[EXTENSION_KEY] = coordinator
    app.register_blueprint(discovery_bp)
    return coordinator


__all__ = [
    "DiscoveryCoordinator",
    "DiscoverySubmission",
    "discovery_bp",
    "init_discovery",
]
