from datetime import timedelta

from app import ensure_default_admin
from config import TestingConfig
from models import User
from tests.conftest import PASSWORD


def _drain(app, clock, seconds=3):
    clock.advance(seconds=seconds)
    with app.app_context():
        return app.extensions["portal"].queue.run_due()


# -----------------------------
# Auth
# -----------------------------
def test_health(client):
    body = client.get("/api/health").get_json()
    assert body["status"] == "OK"
    assert body["timestamp"] == "2024-03-11T09:00:00"


def test_register_rejects_outside_domain(client):
    response = client.post("/api/auth/register", json={
        "email": "someone@gmail.com",
        "password": "abc",
        "firstName": "",
        "lastName": "Cruz",
        "yearLevel": 7,
    })
    body = response.get_json()
    assert response.status_code == 400
    assert body["error"] == "validation_error"
    assert len(body["errors"]) == 4


def test_register_duplicate_email_conflicts(student_client, client):
    response = client.post("/api/auth/register", json={
        "email": "JUAN@ust-legazpi.edu.ph",
        "password": PASSWORD,
        "firstName": "Juan",
        "lastName": "Again",
    })
    assert response.status_code == 409
    assert response.get_json()["error"] == "conflict"


def test_login_logout_verify(student_client, client):
    bad = client.post("/api/auth/login", json={
        "email": "juan@ust-legazpi.edu.ph", "password": "wrong-password",
    })
    assert bad.status_code == 401

    profile = student_client.get("/api/auth/verify").get_json()["data"]["user"]
    assert profile["firstName"] == "Juan"
    assert profile["profile"]["yearLevel"] == 2

    assert student_client.post("/api/auth/logout").status_code == 200
    assert student_client.get("/api/auth/verify").status_code == 401


def test_login_stamps_last_login(client, student_client, clock):
    clock.advance(hours=1)
    response = client.post("/api/auth/login", json={
        "email": "juan@ust-legazpi.edu.ph", "password": PASSWORD,
    })
    assert response.get_json()["data"]["user"]["lastLogin"] == clock.now.isoformat()


def test_anonymous_and_wrong_role_are_rejected(client, student_client, admin_client):
    assert client.get("/api/mood/stats").status_code == 401
    assert student_client.get("/api/admin/stats").status_code == 403
    assert admin_client.post("/api/mood/log", json={"mood": "good"}).status_code == 403


def test_unknown_route_is_json(client):
    response = client.get("/api/nowhere")
    assert response.status_code == 404
    assert response.get_json()["success"] is False


# -----------------------------
# Users
# -----------------------------
def test_update_profile_and_stats(student_client):
    response = student_client.put("/api/users/profile", json={
        "course": "BS Nursing",
        "yearLevel": 3,
        "emergencyContact": {"name": "Maria", "phone": "0917"},
    })
    profile = response.get_json()["data"]["user"]["profile"]
    assert profile["course"] == "BS Nursing"
    assert profile["yearLevel"] == 3
    assert profile["emergencyContact"]["name"] == "Maria"

    student_client.post("/api/mood/log", json={"mood": "good"})
    student_client.post("/api/resources/dr-tan-clinic/bookmark")
    stats = student_client.get("/api/users/stats").get_json()["data"]
    assert stats == {"counselingSessions": 0, "resourcesBookmarked": 1, "moodLogs": 1}


def test_change_password(student_client, client):
    wrong = student_client.put("/api/users/change-password", json={
        "currentPassword": "nope", "newPassword": "another1",
    })
    assert wrong.status_code == 400

    ok = student_client.put("/api/users/change-password", json={
        "currentPassword": PASSWORD, "newPassword": "another1",
    })
    assert ok.status_code == 200
    login = client.post("/api/auth/login", json={
        "email": "juan@ust-legazpi.edu.ph", "password": "another1",
    })
    assert login.status_code == 200


def test_deactivated_account_cannot_log_in(student_client, client):
    assert student_client.delete("/api/users/account").status_code == 200
    response = client.post("/api/auth/login", json={
        "email": "juan@ust-legazpi.edu.ph", "password": PASSWORD,
    })
    assert response.status_code == 401


# -----------------------------
# Mood
# -----------------------------
def test_mood_flow(student_client, clock):
    created = student_client.post("/api/mood/log", json={"mood": "difficult", "notes": "tired"})
    assert created.status_code == 201
    entry = created.get_json()["data"]["moodLog"]
    assert entry["needsSupport"] is True

    again = student_client.post("/api/mood/log", json={"mood": "good"})
    assert again.status_code == 409

    yesterday = (clock.now - timedelta(days=1)).isoformat()
    student_client.post("/api/mood/log", json={"mood": "good", "date": yesterday})

    history = student_client.get("/api/mood/history?limit=1").get_json()["data"]
    assert history["pagination"]["total"] == 2
    assert history["moodLogs"][0]["mood"] == "difficult"

    stats = student_client.get("/api/mood/stats?days=7").get_json()["data"]["stats"]
    assert stats["total"] == 2
    assert stats["averageScore"] == 3

    updated = student_client.put(f"/api/mood/log/{entry['id']}", json={"notes": "better"})
    assert updated.get_json()["data"]["moodLog"]["notes"] == "better"

    assert student_client.delete(f"/api/mood/log/{entry['id']}").status_code == 200
    assert student_client.delete(f"/api/mood/log/{entry['id']}").status_code == 404


def test_mood_query_args_are_validated(student_client):
    assert student_client.get("/api/mood/history?page=zero").status_code == 400
    assert student_client.get("/api/mood/stats?days=0").status_code == 400


def test_mood_report_pdf(student_client):
    student_client.post("/api/mood/log", json={"mood": "okay", "notes": "<b>exams</b> & stuff"})
    response = student_client.get("/api/mood/report.pdf")
    assert response.status_code == 200
    assert response.mimetype == "application/pdf"
    assert response.data.startswith(b"%PDF")


# -----------------------------
# Counseling
# -----------------------------
def test_counseling_flow(app, student_client, clock):
    created = student_client.post("/api/counseling/request", json={"category": "Academic Stress"})
    assert created.status_code == 201
    session_id = created.get_json()["data"]["session"]["id"]

    early = student_client.post(
        f"/api/counseling/sessions/{session_id}/message", json={"message": "hello"}
    )
    assert early.status_code == 404

    duplicate = student_client.post("/api/counseling/request", json={"category": "Life Transitions"})
    assert duplicate.status_code == 409

    _drain(app, clock, seconds=2)
    current = student_client.get("/api/counseling/current").get_json()["data"]["session"]
    assert current["status"] == "active"

    sent = student_client.post(
        f"/api/counseling/sessions/{session_id}/message",
        json={"message": "I want to end it all"},
    ).get_json()["data"]
    assert sent["crisisDetected"] is True
    assert sent["supportPrompt"]["advisory"] is True

    assert _drain(app, clock) == 1

    bad_rating = student_client.post(
        f"/api/counseling/sessions/{session_id}/end", json={"rating": 6}
    )
    assert bad_rating.status_code == 400

    clock.advance(minutes=20)
    ended = student_client.post(
        f"/api/counseling/sessions/{session_id}/end",
        json={"rating": "4", "feedback": "helpful"},
    ).get_json()["data"]["session"]
    assert ended["status"] == "completed"
    assert ended["rating"] == 4
    assert [m["sender"] for m in ended["messages"]] == ["user", "counselor"]
    assert ended["duration"] > 0

    again = student_client.post(f"/api/counseling/sessions/{session_id}/end", json={})
    assert again.status_code == 409
    assert again.get_json()["error"] == "invalid_state"
    assert again.get_json()["message"].startswith("Active session not found")

    sessions = student_client.get("/api/counseling/sessions?status=completed").get_json()["data"]
    assert sessions["pagination"]["total"] == 1
    assert student_client.get("/api/users/stats").get_json()["data"]["counselingSessions"] == 1


def test_cancel_session(app, student_client, clock):
    created = student_client.post("/api/counseling/request", json={
        "category": "Social Anxiety", "urgency": "low",
    })
    session_id = created.get_json()["data"]["session"]["id"]

    cancelled = student_client.post(f"/api/counseling/sessions/{session_id}/cancel")
    assert cancelled.get_json()["data"]["session"]["status"] == "cancelled"
    assert _drain(app, clock) == 0
    assert student_client.get("/api/counseling/current").get_json()["data"]["session"] is None


# -----------------------------
# Resources
# -----------------------------
def test_resources_are_public(client):
    body = client.get("/api/resources", query_string={"type": "Private Practice"}).get_json()["data"]
    assert [r["id"] for r in body["resources"]] == ["dr-tan-clinic"]
    assert client.get("/api/resources/types/list").get_json()["data"]["types"]
    assert client.get("/api/resources/unknown").status_code == 404
    assert client.post("/api/resources/dr-tan-clinic/bookmark").status_code == 401


def test_bookmark_toggle(student_client):
    added = student_client.post("/api/resources/ustl-guidance-office/bookmark").get_json()
    assert added["message"] == "Resource bookmark added successfully"
    assert added["data"] == {"isBookmarked": True, "totalBookmarked": 1}

    detail = student_client.get("/api/resources/ustl-guidance-office").get_json()["data"]
    assert detail["resource"]["isBookmarked"] is True

    listed = student_client.get("/api/resources/bookmarks/list").get_json()["data"]
    assert listed["total"] == 1

    removed = student_client.post("/api/resources/ustl-guidance-office/bookmark").get_json()
    assert removed["data"]["isBookmarked"] is False


# -----------------------------
# Admin
# -----------------------------
def test_admin_endpoints(app, admin_client, student_client, clock):
    student_client.post("/api/mood/log", json={"mood": "struggling"})
    student_client.post("/api/counseling/request", json={"category": "Depression & Mood"})

    stats = admin_client.get("/api/admin/stats").get_json()["data"]["stats"]
    assert stats["totalUsers"] == 1
    assert stats["strugglingUsers"] == 1
    assert stats["todayMoodLogs"] == 1

    users = admin_client.get("/api/admin/users?type=student").get_json()["data"]["users"]
    student_id = users[0]["id"]
    assert users[0]["stats"]["moodLogs"] == 1

    sessions = admin_client.get("/api/admin/sessions?status=pending").get_json()["data"]
    assert sessions["sessions"][0]["userEmail"] == "juan@ust-legazpi.edu.ph"

    analytics = admin_client.get("/api/admin/analytics/mood?days=7").get_json()["data"]
    assert analytics["usersNeedingSupport"][0]["userId"] == student_id

    assert admin_client.put(f"/api/admin/users/{student_id}/deactivate").status_code == 200
    assert student_client.get("/api/auth/verify").status_code == 401
    assert admin_client.put(f"/api/admin/users/{student_id}/reactivate").status_code == 200
    assert admin_client.put("/api/admin/users/999/reactivate").status_code == 404


def test_default_admin_is_seeded_once(app):
    with app.app_context():
        ensure_default_admin(app.config)
        admins = User.query.filter_by(role="admin").all()
        assert [a.email for a in admins] == [TestingConfig.ADMIN_EMAIL]


def test_ending_a_pending_session_says_it_is_not_active(student_client):
    created = student_client.post("/api/counseling/request", json={"category": "Academic Stress"})
    session_id = created.get_json()["data"]["session"]["id"]

    response = student_client.post(f"/api/counseling/sessions/{session_id}/end", json={"rating": 5})

    body = response.get_json()
    assert response.status_code == 409
    assert body["error"] == "invalid_state"
    assert body["message"] == "Active session not found: session is pending, not active"
