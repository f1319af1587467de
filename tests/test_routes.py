import io
import uuid

from PIL import Image

from conftest import BRIDGE, CATHEDRAL, START


def _payload(landmark=BRIDGE, user_id="ingrid", **overrides):
    landmark_id, lat, lng = landmark
    payload = {
        "user_id": user_id,
        "landmark_id": landmark_id,
        "latitude": lat,
        "longitude": lng,
        "accuracy_m": 5,
        "client_timestamp": START.isoformat(),
        "idempotency_token": uuid.uuid4().hex,
        "confidence": 0.95,
    }
    payload.update(overrides)
    return payload


def test_submit_discovery_json(client) -> None:
    response = client.post("/api/discovery/discoveries", json=_payload())
    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "completed"
    assert body["xp_delta"] == 75
    assert body["is_first_global_discovery"] is True
    assert body["rank_among_discoverers"] == 1
    assert body["badges_awarded"] == ["gate-of-happiness", "bridge-walker", "trailblazer"]
    assert body["replayed"] is False


def test_resubmitting_the_same_token_is_idempotent(client) -> None:
    payload = _payload()
    first = client.post("/api/discovery/discoveries", json=payload).get_json()
    second = client.post("/api/discovery/discoveries", json=payload)
    assert second.status_code == 200
    body = second.get_json()
    assert body["replayed"] is True
    assert body["xp_delta"] == first["xp_delta"]
    assert body["total_xp"] == first["total_xp"]


def test_rejection_is_a_conflict(client) -> None:
    response = client.post("/api/discovery/discoveries", json=_payload(CATHEDRAL, confidence=0.5))
    assert response.status_code == 409
    body = response.get_json()
    assert body == {"status": "rejected", "reason": "low_confidence", "threshold": 0.8}


def test_malformed_payload_is_bad_request(client) -> None:
    response = client.post("/api/discovery/discoveries", json=_payload(latitude="north-ish"))
    assert response.status_code == 400
    assert response.get_json()["cause"] == "malformed_input"

    response = client.post("/api/discovery/discoveries", json={"landmark_id": "old-town-bridge"})
    assert response.status_code == 400


def test_non_object_body_is_bad_request(client) -> None:
    for body in ([1, 2], "bridge", 42):
        response = client.post("/api/discovery/discoveries", json=body)
        assert response.status_code == 400
        assert response.get_json() == {
            "status": "failed",
            "cause": "malformed_input",
            "detail": "Request body must be a JSON object",
        }


def test_unknown_landmark_is_not_found(client) -> None:
    response = client.post("/api/discovery/discoveries", json=_payload(landmark_id="atlantis"))
    assert response.status_code == 404
    assert response.get_json()["cause"] == "unknown_landmark"


def test_photo_without_oracle_is_unavailable(client) -> None:
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32)).save(buffer, format="PNG")
    form = _payload()
    del form["confidence"]
    form = {key: str(value) for key, value in form.items()}
    form["photo"] = (io.BytesIO(buffer.getvalue()), "bridge.png")

    response = client.post("/api/discovery/discoveries", data=form, content_type="multipart/form-data")
    assert response.status_code == 503
    assert response.get_json()["cause"] == "recognition_unavailable"


def test_user_progress(client) -> None:
    client.post("/api/discovery/discoveries", json=_payload())

    body = client.get("/api/discovery/users/ingrid/progress").get_json()
    assert body["total_xp"] == 75
    assert body["level"] == 1
    assert body["next_level_xp"] == 100
    assert body["streak_days"] == 1
    assert body["badges"] == ["gate-of-happiness", "bridge-walker", "trailblazer"]
    assert body["discovered"] == ["old-town-bridge"]
    first_steps = next(entry for entry in body["achievements"] if entry["id"] == "first-steps")
    assert first_steps["completed"] is True

    empty = client.get("/api/discovery/users/nobody/progress").get_json()
    assert empty["total_xp"] == 0
    assert empty["level"] == 1
    assert empty["badges"] == []


def test_leaderboard(client, clock) -> None:
    client.post("/api/discovery/discoveries", json=_payload(user_id="ingrid"))
    clock.advance(seconds=2)
    client.post(
        "/api/discovery/discoveries",
        json=_payload(CATHEDRAL, user_id="ola", client_timestamp=clock().isoformat()),
    )

    body = client.get("/api/discovery/leaderboard?limit=5").get_json()
    assert [entry["user_id"] for entry in body["entries"]] == ["ola", "ingrid"]
    assert body["entries"][0]["position"] == 1
    assert body["entries"][0]["level"] == 2

    assert client.get("/api/discovery/leaderboard?limit=abc").status_code == 400


def test_landmarks_list_marks_discoveries(client) -> None:
    client.post("/api/discovery/discoveries", json=_payload())
    _, lat, lng = BRIDGE

    body = client.get(f"/api/discovery/landmarks?user_id=ingrid&lat={lat}&lng={lng}").get_json()
    assert body["total_count"] == 5
    assert body["discovered_count"] == 1
    by_id = {entry["id"]: entry for entry in body["landmarks"]}
    assert by_id["old-town-bridge"]["discovered"] is True
    assert by_id["old-town-bridge"]["meters_away"] == 0
    assert by_id["rockheim-museum"]["discovered"] is False


def test_nearest_undiscovered(client) -> None:
    client.post("/api/discovery/discoveries", json=_payload())
    _, lat, lng = BRIDGE

    body = client.get(f"/api/discovery/landmarks/nearest?user_id=ingrid&lat={lat}&lng={lng}").get_json()
    assert body["landmark"]["id"] == "nidaros-cathedral"
    assert client.get("/api/discovery/landmarks/nearest?user_id=ingrid").status_code == 400


def test_landmark_discoverers(client, clock) -> None:
    client.post("/api/discovery/discoveries", json=_payload(user_id="ingrid"))
    clock.advance(seconds=3)
    client.post(
        "/api/discovery/discoveries",
        json=_payload(user_id="ola", client_timestamp=clock().isoformat()),
    )

    body = client.get("/api/discovery/landmarks/old-town-bridge/discoverers").get_json()
    assert body["first_discoverer"] == "ingrid"
    assert body["discoverer_count"] == 2
    assert [row["user_id"] for row in body["discoverers"]] == ["ingrid", "ola"]
    assert client.get("/api/discovery/landmarks/atlantis/discoverers").status_code == 404


def test_status(client) -> None:
    body = client.get("/api/discovery/status").get_json()
    assert body["enabled"] is True
    assert body["landmark_count"] == 5


def test_feature_gate_hides_endpoints(make_app) -> None:
    client = make_app(USE_DISCOVERY_LEDGER=False).test_client()
    assert client.post("/api/discovery/discoveries", json=_payload()).status_code == 404
    assert client.get("/api/discovery/leaderboard").status_code == 404
    assert client.get("/api/discovery/status").get_json()["enabled"] is False


def test_healthz(client) -> None:
    assert client.get("/healthz").get_json()["status"] == "ok"
