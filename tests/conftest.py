from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app import create_app
from discovery.coordinator import DiscoverySubmission
from discovery.routes import EXTENSION_KEY
from extensions import db

START = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)

# Landmarks from discovery/config/landmarks.json
BRIDGE = ("old-town-bridge", 63.4284, 10.4016)
ROCKHEIM = ("rockheim-museum", 63.4391, 10.4010)
CATHEDRAL = ("nidaros-cathedral", 63.4269, 10.3969)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def north_of(lat: float, metres: float) -> float:
    """Latitude `metres` due north of `lat` on the haversine sphere."""
    return lat + math.degrees(metres / 6371000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def make_app(tmp_path, clock):
    created = []

    def _make(**overrides):
        config = {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / f'ledger-{len(created)}.db'}",
            "USE_SUPABASE": False,
            "SUPABASE_CLIENT": None,
            "USE_DISCOVERY_LEDGER": True,
            "DISCOVERY_TIMEZONE": "UTC",
            "RECOGNITION_ORACLE_URL": None,
        }
        config.update(overrides)
        app = create_app(config, clock=clock)
        created.append(app)
        return app

    yield _make

    for app in created:
        with app.app_context():
            db.session.remove()
            db.engine.dispose()


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def coordinator(app):
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_submission(clock):
    def _make(landmark=BRIDGE, user_id="ingrid", **overrides) -> DiscoverySubmission:
        landmark_id, lat, lng = landmark
        fields = {
            "user_id": user_id,
            "landmark_id": landmark_id,
            "latitude": lat,
            "longitude": lng,
            "accuracy_m": 5.0,
            "client_timestamp": clock(),
            "idempotency_token": uuid.uuid4().hex,
            "confidence": 0.95,
        }
        fields.update(overrides)
        return DiscoverySubmission(**fields)

    return _make
