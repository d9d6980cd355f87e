"""HTTP contract: response envelope, status codes and payload shapes."""

import pytest


def assert_api_envelope(resp, *, expect_success=None):
    data = resp.get_json()
    assert isinstance(data, dict), "Response must be JSON object"
    assert "success" in data, "Missing success field"
    assert "timestamp" in data, "Missing timestamp"
    assert "request_id" in data, "Missing request_id"
    assert data["timestamp"].endswith("Z")
    assert resp.headers["X-Request-ID"] == data["request_id"]
    if expect_success is not None:
        assert data["success"] is expect_success, f"Expected success={expect_success} got {data}"
    if not data["success"]:
        assert "message" in data, "Error responses must contain message"
        assert "error_code" in data, "Error responses must contain error_code"
    return data


def submit(client, feature="music", user="bob", payload="spotify:track:a", **extra):
    resp = client.post(f"/api/{feature}/submit", json={"userId": user, "payload": payload, **extra})
    return resp, resp.get_json()


# -------- Health & status --------

def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True


def test_status_reports_process_and_scheduler(client):
    data = assert_api_envelope(client.get("/api/status"), expect_success=True)["data"]
    assert data["process"]["memory_mb"] > 0
    assert data["presence"]["present_count"] == 4
    assert data["features"] == {"music": "queue", "frames": "queue", "patterns": "leaderboard", "leds": "queue"}
    assert "running" in data["scheduler"]


def test_services_health(client):
    health = assert_api_envelope(client.get("/api/services/health"), expect_success=True)["data"]
    assert health["total_services"] == 4
    assert health["overall_healthy"] is True


def test_rate_limiting_status_and_reset(client):
    data = assert_api_envelope(client.get("/api/rate-limiting/status"), expect_success=True)["data"]
    assert {"api_general", "votes", "config_changes", "status_check"} <= set(data["rate_limiting"]["rules"])
    assert_api_envelope(client.post("/api/rate-limiting/reset"), expect_success=True)


# -------- Submissions --------

def test_submit_assigns_to_target(client):
    resp, data = submit(client)
    assert resp.status_code == 201
    assert_api_envelope(resp, expect_success=True)
    assert data["data"]["assigned"] is True
    assert data["data"]["targetId"] == "speaker"
    assert data["data"]["item"]["status"] == "active"


def test_submit_unmatched_classification_is_held(client):
    resp, data = submit(client, "frames", payload="https://media/square.jpg", classification="square")
    assert resp.status_code == 201
    assert data["data"]["assigned"] is False
    assert "square" in data["data"]["reason"]

    holding = client.get("/api/frames/holding").get_json()["data"]
    assert [h["payload"] for h in holding] == ["https://media/square.jpg"]


def test_submit_requires_payload(client):
    resp = client.post("/api/music/submit", json={"userId": "bob"})
    data = assert_api_envelope(resp, expect_success=False)
    assert resp.status_code == 400
    assert data["error_code"] == "validation_error"


def test_submit_requires_presence(client):
    resp, _ = submit(client, user="mallory")
    assert resp.status_code == 403
    assert assert_api_envelope(resp, expect_success=False)["error_code"] == "not_present"
    assert client.get("/api/music/queue").get_json()["data"]["targets"][0]["queue"] == []


def test_unknown_feature(client):
    resp = client.post("/api/toaster/submit", json={"userId": "bob", "payload": "x"})
    assert resp.status_code == 404
    assert assert_api_envelope(resp, expect_success=False)["error_code"] == "not_found"


def test_unknown_route_uses_envelope(client):
    resp = client.get("/api/music/queue/extra/segments")
    assert resp.status_code == 404
    assert_api_envelope(resp, expect_success=False)


# -------- Voting --------

def test_vote_and_withdraw(client):
    _, data = submit(client)
    subject = data["data"]["item"]["id"]

    resp = client.post("/api/music/vote", json={"subjectId": subject, "voterId": "alice", "direction": "up"})
    voted = assert_api_envelope(resp, expect_success=True)["data"]
    assert voted["netVotes"] == 1
    assert voted["quorum"] == 2
    assert voted["markedForThreshold"] is False

    queue = client.get("/api/music/queue?userId=alice").get_json()["data"]
    assert queue["targets"][0]["queue"][0]["userVote"] == "up"

    resp = client.delete("/api/music/vote", json={"subjectId": subject, "voterId": "alice"})
    assert assert_api_envelope(resp, expect_success=True)["data"]["netVotes"] == 0


def test_quorum_skip_through_api(client, actuator):
    _, first = submit(client, payload="spotify:track:a")
    submit(client, payload="spotify:track:b")
    subject = first["data"]["item"]["id"]

    client.post("/api/music/vote", json={"subjectId": subject, "voterId": "alice", "direction": "down"})
    resp = client.post("/api/music/vote", json={"subjectId": subject, "voterId": "bob", "direction": "down"})

    transition = resp.get_json()["data"]["transition"]
    assert transition["kind"] == "skip"
    assert transition["subjectId"] == subject
    assert actuator.current_payload("speaker") == "spotify:track:b"

    history = client.get("/api/music/history").get_json()["data"]
    assert history[0]["id"] == subject
    assert history[0]["removalReason"] == "skipped"


def test_absent_voter_is_forbidden(client):
    _, data = submit(client)
    resp = client.post(
        "/api/music/vote",
        json={"subjectId": data["data"]["item"]["id"], "voterId": "eve", "direction": "down"},
    )
    assert resp.status_code == 403
    assert assert_api_envelope(resp, expect_success=False)["error_code"] == "not_present"


def test_vote_on_unknown_subject(client):
    resp = client.post("/api/music/vote", json={"subjectId": "nope", "voterId": "alice", "direction": "down"})
    assert resp.status_code == 404


@pytest.mark.parametrize("direction", ["sideways", None])
def test_invalid_direction(client, direction):
    _, data = submit(client)
    resp = client.post(
        "/api/music/vote",
        json={"subjectId": data["data"]["item"]["id"], "voterId": "alice", "direction": direction},
    )
    assert resp.status_code == 400


def test_leaderboard_rejects_down_vote(client):
    _, data = submit(client, "patterns", payload="pattern:waves")
    resp = client.post(
        "/api/patterns/vote",
        json={"subjectId": data["data"]["item"]["id"], "voterId": "alice", "direction": "down"},
    )
    assert resp.status_code == 400


# -------- Trash --------

def test_trash_quota_over_http(client):
    subjects = []
    for n in range(5):
        _, data = submit(client, payload=f"spotify:track:{n}")
        subjects.append(data["data"]["item"]["id"])

    results = [client.post(f"/api/music/{subject}/trash", json={"userId": "alice"}) for subject in subjects[1:]]

    assert [r.status_code for r in results] == [200, 200, 200, 429]
    assert results[0].get_json()["data"]["remaining"] == 2
    assert "warning" in results[1].get_json()["data"]

    limited = assert_api_envelope(results[3], expect_success=False)
    assert limited["error_code"] == "rate_limited"
    assert limited["data"]["resetsInSeconds"] > 0
    assert "thumbs down" in limited["message"]
    assert int(results[3].headers["Retry-After"]) >= 1

    limit = client.get("/api/music/trash-limit/alice").get_json()["data"]
    assert limit["used"] == 3
    assert limit["remaining"] == 0
    assert limit["resetsIn"] > 0


def test_remove_own_submission(client):
    _, data = submit(client, user="bob")
    subject = data["data"]["item"]["id"]

    resp = client.delete(f"/api/music/{subject}", json={"userId": "alice"})
    assert resp.status_code == 403
    assert resp.get_json()["error_code"] == "not_owner"

    resp = client.delete(f"/api/music/{subject}", json={"userId": "bob"})
    assert assert_api_envelope(resp, expect_success=True)["data"] == {"removed": subject}


# -------- Settings & targets --------

def test_update_settings(client):
    resp = client.put("/api/frames/settings", json={"queueLimit": 12, "displayTime": 20})
    data = assert_api_envelope(resp, expect_success=True)["data"]
    assert data["queue_limit"] == 12
    assert data["display_time"] == 20


@pytest.mark.parametrize("body", [{"mode": "leaderboard"}, {"queueLimit": -1}, {"unknown": 1}, {}])
def test_update_settings_rejects_bad_input(client, body):
    resp = client.put("/api/frames/settings", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["error_code"] == "validation_error"


def test_rotate_frame_and_redistribute(client):
    submit(client, "frames", payload="https://media/square.jpg", classification="square")

    resp = client.post("/api/frames/redistribute")
    assert assert_api_envelope(resp, expect_success=True)["data"] == {"distributed": 0, "remaining": 1}

    resp = client.put("/api/frames/targets/4/classification", json={"orientation": "square"})
    assert assert_api_envelope(resp, expect_success=True)["data"] == {"distributed": 1, "remaining": 0}
    assert client.get("/api/frames/holding").get_json()["data"] == []


def test_finished_signal_advances(client):
    _, data = submit(client, "frames", payload="https://media/a.jpg", classification="horizontal")
    item_id = data["data"]["item"]["id"]
    target_id = data["data"]["targetId"]

    resp = client.post(f"/api/frames/targets/{target_id}/finished", json={"itemId": item_id})
    transition = assert_api_envelope(resp, expect_success=True)["data"]["transition"]
    assert transition["kind"] == "finished"

    stale = client.post(f"/api/frames/targets/{target_id}/finished", json={"itemId": "old"})
    assert stale.get_json()["data"]["transition"] is None


def test_stats(client):
    submit(client)
    stats = assert_api_envelope(client.get("/api/music/stats"), expect_success=True)["data"]
    assert stats["counters"]["submitted"] == 1
    assert stats["targets"]["speaker"]["length"] == 1


# -------- Presence --------

def test_presence_webhook_updates_quorum(client, presence):
    resp = client.post("/api/presence/changed", json={"users": ["alice", "bob"]})
    data = assert_api_envelope(resp, expect_success=True)["data"]
    assert data["presentCount"] == 2
    assert data["quorum"]["music"] == 1

    client.post("/api/presence/changed", json={"userId": "carol", "status": "in"})
    assert presence.is_user_eligible("carol")
    client.post("/api/presence/changed", json={"userId": "carol", "status": "out"})
    assert not presence.is_user_eligible("carol")


def test_presence_drop_fires_pending_skip(client):
    _, first = submit(client, payload="spotify:track:a")
    submit(client, payload="spotify:track:b")
    subject = first["data"]["item"]["id"]
    client.post("/api/music/vote", json={"subjectId": subject, "voterId": "alice", "direction": "down"})

    client.post("/api/presence/changed", json={"users": ["alice", "bob"]})

    history = client.get("/api/music/history").get_json()["data"]
    assert [h["id"] for h in history] == [subject]


def test_presence_webhook_validation(client):
    resp = client.post("/api/presence/changed", json={"users": "alice"})
    assert resp.status_code == 400
    resp = client.post("/api/presence/changed", json={"userId": "alice", "status": "maybe"})
    assert resp.status_code == 400
