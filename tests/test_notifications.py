import notifications
from notifications import notify_users, send_push as fcm_send_push


class FakeResponse:
    def __init__(self, ok):
        self.ok = ok
        self.text = "" if ok else "UNREGISTERED"


class FakeSession:
    def __init__(self, rejected=()):
        self.rejected = set(rejected)
        self.posted = []

    def post(self, url, json=None, timeout=None):
        self.posted.append((url, json))
        return FakeResponse(json["message"]["token"] not in self.rejected)


def test_no_tokens_is_a_successful_no_op(db, make_user, pushes):
    student = make_user()
    result = notify_users(db, "Hello", "World", target_users=[student["_id"]])
    assert result == {"success": True, "message": "No valid notification tokens found", "tokens_count": 0, "sent_count": 0, "failed_count": 0}
    assert pushes == []
    assert db["notification"].count_documents({"user": student["_id"]}) == 1


def test_pushes_to_every_token(db, make_user, pushes):
    a, b = make_user(fcm_token="tok-a"), make_user(fcm_token="tok-b")
    result = notify_users(db, "Hi", "There", data={"id": 7}, target_users=[a["_id"], str(b["_id"])])
    assert result["tokens_count"] == 2
    assert result["sent_count"] == 2
    assert sorted(pushes[0]["tokens"]) == ["tok-a", "tok-b"]
    assert pushes[0]["data"] == {"id": "7"}


def test_audience_resolution(db, make_user, pushes):
    make_user(fcm_token="tok-cse")
    make_user(branch="ECE", fcm_token="tok-ece")
    make_user(role="teacher", fcm_token="tok-teacher")
    notify_users(db, "Lab", "Moved", target_audience={"branch": "ECE", "year": "All", "semester": "All", "role": "All"})
    assert pushes[0]["tokens"] == ["tok-ece"]


def test_dispatch_failures_are_reported_not_raised(db, make_user, monkeypatch):
    def broken(*args):
        raise RuntimeError("Missing Firebase configuration")

    monkeypatch.setattr(notifications, "send_push", broken)
    result = notify_users(db, "Hi", "There", target_users=[make_user(fcm_token="tok")["_id"]])
    assert result["success"] is False
    assert "Missing Firebase configuration" in result["error"]


def test_send_push_counts_rejections(monkeypatch):
    session = FakeSession(rejected={"stale"})
    monkeypatch.setattr(notifications, "_fcm_session", lambda: (session, "campus-hub"))
    assert fcm_send_push(["good", "stale"], "T", "B", {"type": "x"}) == (1, 1)
    url, message = session.posted[0]
    assert url == "https://fcm.googleapis.com/v1/projects/campus-hub/messages:send"
    assert message["message"]["notification"] == {"title": "T", "body": "B"}


def test_truncate():
    assert notifications.truncate("short", 10) == "short"
    assert notifications.truncate("a" * 12, 10) == "a" * 10 + "..."


def test_notification_routes(client, db, make_user, auth):
    student, other = make_user(), make_user()
    notify_users(db, "First", "one", target_users=[student["_id"]])
    notify_users(db, "Second", "two", target_users=[student["_id"]])
    notify_users(db, "Theirs", "three", target_users=[other["_id"]])

    listing = client.get("/api/notifications?unread_only=true", headers=auth(student)).json()
    assert sorted(n["title"] for n in listing["data"]) == ["First", "Second"]

    first = next(n for n in listing["data"] if n["title"] == "First")
    assert client.put(f"/api/notifications/{first['id']}/read", headers=auth(student)).json()["read"] is True
    assert client.put(f"/api/notifications/{first['id']}/read", headers=auth(other)).status_code == 404

    assert client.put("/api/notifications/read-all", headers=auth(student)).json() == {"updated": 1}
    assert client.get("/api/notifications?unread_only=true", headers=auth(student)).json()["data"] == []
