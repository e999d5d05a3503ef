import main
from auth import hash_token, pwd_context

STUDENT_PROFILE = {"role": "student", "branch": "CSE", "year": 2, "semester": 3}


def register(client, email="asha@campus.edu", profile=STUDENT_PROFILE):
    return client.post(
        "/api/auth/register",
        json={"name": "Asha", "email": email, "password": "secret123", "profile": profile},
    )


def test_register_creates_unverified_student(client, db):
    res = register(client)
    assert res.status_code == 201
    body = res.json()
    assert body["token"]
    assert body["user"]["role"] == "student"
    assert body["user"]["is_verified"] is False
    assert "password" not in body["user"] and "otp" not in body["user"]
    stored = db["user"].find_one({"email": "asha@campus.edu"})
    assert stored["otp"] and stored["otp_expiry"]


def test_register_rejects_staff_profiles(client):
    assert register(client, profile={"role": "teacher"}).status_code == 400


def test_student_profile_requires_cohort(client):
    assert register(client, profile={"role": "student", "branch": "CSE"}).status_code == 422


def test_duplicate_email_conflicts(client):
    register(client)
    assert register(client).status_code == 409


def test_verify_otp(client, db, monkeypatch):
    monkeypatch.setattr(main, "issue_otp", lambda: ("123456", pwd_context.hash("123456")))
    token = register(client).json()["token"]
    headers = {"Authorization": f"Bearer {token}"}

    assert client.post("/api/auth/verify-otp", json={"otp": "654321"}, headers=headers).status_code == 400
    assert client.post("/api/auth/verify-otp", json={"otp": "123456"}, headers=headers).status_code == 200
    user = db["user"].find_one({"email": "asha@campus.edu"})
    assert user["is_verified"] is True
    assert "otp" not in user


def test_login_and_me(client, make_user):
    user = make_user(email="ravi@campus.edu", password="pass1234")
    assert client.post("/api/auth/login", json={"email": "ravi@campus.edu", "password": "nope"}).status_code == 401

    res = client.post("/api/auth/login", json={"email": "ravi@campus.edu", "password": "pass1234", "fcm_token": "tok-1"})
    assert res.status_code == 200
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {res.json()['token']}"}).json()
    assert me["id"] == str(user["_id"])
    assert me["fcm_token"] == "tok-1"


def test_session_cookie_is_accepted(client, make_user):
    make_user(email="cookie@campus.edu", password="pass1234")
    client.post("/api/auth/login", json={"email": "cookie@campus.edu", "password": "pass1234"})
    assert client.get("/api/auth/me").status_code == 200


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_unverified_users_cannot_update_details(client, make_user, auth):
    user = make_user(verified=False)
    assert client.put("/api/auth/update-details", json={"name": "New"}, headers=auth(user)).status_code == 403


def test_unverified_users_are_kept_out_of_content_and_chat(client, make_user, auth, upload_note):
    pending = make_user(verified=False)
    peer = make_user()
    headers = auth(pending)

    assert upload_note(pending).status_code == 403
    assert client.get("/api/notes", headers=headers).status_code == 403
    assert client.get("/api/videos", headers=headers).status_code == 403
    assert client.get("/api/pyq", headers=headers).status_code == 403
    assert client.get("/api/syllabus", headers=headers).status_code == 403
    assert client.post("/api/community/chats", json={"user_id": str(peer["_id"])}, headers=headers).status_code == 403
    assert client.get("/api/community/unread", headers=headers).status_code == 403
    assert client.post("/api/chatbot/ask", json={"query": "Explain stacks"}, headers=headers).status_code == 403

    assert client.get("/api/auth/me", headers=headers).status_code == 200
    assert client.get("/api/notifications", headers=headers).status_code == 200


def test_update_details_ignores_cohort_for_staff(client, make_user, auth):
    teacher = make_user(role="teacher")
    body = client.put("/api/auth/update-details", json={"name": "Dr. T", "branch": "ECE"}, headers=auth(teacher)).json()
    assert body["name"] == "Dr. T"
    assert body["branch"] is None


def test_forgot_and_reset_password(client, make_user, monkeypatch):
    make_user(email="forgot@campus.edu", password="oldpass1")
    monkeypatch.setattr(main, "issue_reset_token", lambda: ("raw-token", hash_token("raw-token")))
    assert client.post("/api/auth/forgot-password", json={"email": "forgot@campus.edu"}).status_code == 200

    assert client.put("/api/auth/reset-password/wrong", json={"password": "newpass1"}).status_code == 400
    assert client.put("/api/auth/reset-password/raw-token", json={"password": "newpass1"}).status_code == 200
    res = client.post("/api/auth/login", json={"email": "forgot@campus.edu", "password": "newpass1"})
    assert res.status_code == 200


def test_google_login_needs_profile_for_new_users(client, db, monkeypatch):
    info = {"email": "g@campus.edu", "name": "G User", "picture": None, "sub": "google-1"}
    monkeypatch.setattr(main, "verify_google_token", lambda token: info)

    assert client.post("/api/auth/google", json={"id_token": "x"}).status_code == 400
    res = client.post("/api/auth/google", json={"id_token": "x", "profile": STUDENT_PROFILE})
    assert res.status_code == 200
    assert res.json()["user"]["is_verified"] is True

    # second login finds the same user without a profile
    again = client.post("/api/auth/google", json={"id_token": "x"})
    assert again.json()["user"]["id"] == res.json()["user"]["id"]
    assert db["user"].count_documents({"email": "g@campus.edu"}) == 1


def test_logout_clears_push_token(client, db, make_user, auth):
    user = make_user(fcm_token="device")
    assert client.get("/api/auth/logout", headers=auth(user)).status_code == 200
    assert db["user"].find_one({"_id": user["_id"]})["fcm_token"] is None
