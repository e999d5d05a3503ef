import json
from datetime import timedelta

from database import now


def post_announcement(client, auth, user, title="Mid-sem schedule", audience=None, **form):
    data = {"title": title, "content": "Exams start next Monday", **form}
    if audience is not None:
        data["target_audience"] = json.dumps(audience)
    return client.post("/api/announcements", data=data, headers=auth(user))


def titles(res):
    return sorted(a["title"] for a in res.json()["data"])


def test_only_admins_manage_announcements(client, make_user, auth):
    admin, teacher = make_user(role="admin"), make_user(role="teacher")
    assert post_announcement(client, auth, make_user()).status_code == 403
    assert post_announcement(client, auth, teacher).status_code == 403

    announcement = post_announcement(client, auth, admin).json()
    url = f"/api/announcements/{announcement['id']}"
    assert client.put(url, data={"title": "Hijacked"}, headers=auth(teacher)).status_code == 403
    assert client.delete(url, headers=auth(teacher)).status_code == 403


def test_announcement_audience_targeting(client, make_user, auth, pushes):
    admin, teacher = make_user(role="admin"), make_user(role="teacher")
    cse, ece = make_user(fcm_token="tok-cse"), make_user(branch="ECE", fcm_token="tok-ece")

    res = post_announcement(client, auth, admin, "CSE only", audience={"branch": "CSE"})
    assert res.status_code == 201
    assert res.json()["target_audience"] == {"branch": "CSE", "year": "All", "semester": "All", "role": "All"}
    post_announcement(client, auth, admin, "Everyone")
    post_announcement(client, auth, admin, "Staff meeting", audience={"role": "teacher"})

    assert titles(client.get("/api/announcements", headers=auth(cse))) == ["CSE only", "Everyone"]
    assert titles(client.get("/api/announcements", headers=auth(ece))) == ["Everyone"]
    assert titles(client.get("/api/announcements", headers=auth(teacher))) == ["CSE only", "Everyone", "Staff meeting"]
    assert pushes[0]["tokens"] == ["tok-cse"]
    assert pushes[0]["title"] == "New Announcement: CSE only"


def test_expired_announcements_are_hidden(client, db, make_user, auth):
    admin, student = make_user(role="admin"), make_user()
    past = (now() - timedelta(days=1)).isoformat()
    future = (now() + timedelta(days=1)).isoformat()
    post_announcement(client, auth, admin, "Old", expires_at=past)
    post_announcement(client, auth, admin, "Current", expires_at=future)

    assert titles(client.get("/api/announcements", headers=auth(student))) == ["Current"]
    assert db["announcement"].count_documents({}) == 2
    admin_view = client.get("/api/admin/announcements", headers=auth(admin))
    assert titles(admin_view) == ["Current", "Old"]


def test_invalid_target_audience_is_rejected(client, make_user, auth):
    res = post_announcement(client, auth, make_user(role="admin"), audience={"branch": "Mining"})
    assert res.status_code == 422


def test_admin_edits_and_deletes_announcement(client, db, make_user, auth):
    poster, other = make_user(role="admin"), make_user(role="admin")
    announcement = post_announcement(client, auth, poster).json()
    url = f"/api/announcements/{announcement['id']}"

    res = client.put(url, data={"priority": "Urgent"}, headers=auth(other))
    assert res.json()["priority"] == "Urgent"
    assert res.json()["title"] == "Mid-sem schedule"
    assert client.delete(url, headers=auth(poster)).status_code == 200
    assert db["announcement"].count_documents({}) == 0


def test_announcement_attachment_limit(client, make_user, auth):
    files = [("attachments", (f"a{i}.png", b"\x89PNG", "image/png")) for i in range(4)]
    res = client.post(
        "/api/announcements",
        data={"title": "Photos", "content": "Fest pictures"},
        files=files,
        headers=auth(make_user(role="admin")),
    )
    assert res.status_code == 400


def test_last_admin_is_protected(client, make_user, auth):
    admin = make_user(role="admin")
    assert client.delete(f"/api/admin/users/{admin['_id']}", headers=auth(admin)).status_code == 409
    demote = {"profile": {"role": "teacher"}}
    assert client.put(f"/api/admin/users/{admin['_id']}", json=demote, headers=auth(admin)).status_code == 409

    second = make_user(role="admin")
    assert client.delete(f"/api/admin/users/{second['_id']}", headers=auth(admin)).status_code == 200


def test_admin_routes_require_admin(client, make_user, auth):
    teacher = make_user(role="teacher")
    assert client.get("/api/admin/stats", headers=auth(teacher)).status_code == 403
    assert client.get("/api/admin/users", headers=auth(teacher)).status_code == 403


def test_subject_codes_are_unique(client, make_user, auth):
    admin = make_user(role="admin")
    body = {
        "name": "Operating Systems",
        "code": "cs301",
        "description": "Processes, memory and file systems",
        "branch": "CSE",
        "year": 3,
        "semester": 5,
        "credits": 4,
    }
    res = client.post("/api/admin/subjects", json=body, headers=auth(admin))
    assert res.status_code == 201
    assert res.json()["code"] == "CS301"
    assert client.post("/api/admin/subjects", json=dict(body, code="CS301"), headers=auth(admin)).status_code == 409


def test_referenced_subject_cannot_be_deleted(client, make_user, auth, subject, upload_note):
    admin = make_user(role="admin")
    upload_note(make_user())
    res = client.delete(f"/api/admin/subjects/{subject['_id']}", headers=auth(admin))
    assert res.status_code == 409
    assert "1 notes" in res.json()["detail"]


def test_unreferenced_subject_is_deleted(client, db, make_user, auth, subject):
    res = client.delete(f"/api/admin/subjects/{subject['_id']}", headers=auth(make_user(role="admin")))
    assert res.status_code == 200
    assert db["subject"].count_documents({}) == 0


def test_assign_teachers(client, db, make_user, auth, subject):
    admin, teacher, student = make_user(role="admin"), make_user(role="teacher"), make_user()
    url = f"/api/admin/subjects/{subject['_id']}/teachers"

    assert client.put(url, json={"teachers": [str(student["_id"])]}, headers=auth(admin)).status_code == 400
    res = client.put(url, json={"teachers": [str(teacher["_id"])]}, headers=auth(admin))
    assert res.json()["teachers"] == [str(teacher["_id"])]
    assert db["user"].find_one({"_id": teacher["_id"]})["subjects"] == [subject["_id"]]

    detail = client.get(f"/api/subjects/{subject['_id']}", headers=auth(student)).json()
    assert [t["name"] for t in detail["teachers"]] == [teacher["name"]]


def test_subjects_are_listed_for_everyone(client, make_user, auth, subject):
    res = client.get("/api/subjects?branch=CSE", headers=auth(make_user()))
    assert [s["code"] for s in res.json()["data"]] == ["CS201"]
    assert client.get("/api/subjects?branch=ECE", headers=auth(make_user())).json()["data"] == []


def test_stats_counts(client, make_user, auth, subject, upload_note):
    admin = make_user(role="admin")
    upload_note(make_user())
    upload_note(make_user(role="teacher"))
    counts = client.get("/api/admin/stats", headers=auth(admin)).json()["counts"]
    assert counts["notes"] == 2
    assert counts["pending_content"] == 1
    assert counts["verified_content"] == 1
    assert counts["students"] == 1
    assert counts["subjects"] == 1
