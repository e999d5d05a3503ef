import mongomock
import pytest
from fastapi.testclient import TestClient

import main
import notifications
import settings
from auth import create_access_token, hash_password
from database import get_db, now


@pytest.fixture
def db():
    return mongomock.MongoClient()["campus_test"]


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture(autouse=True)
def pushes(monkeypatch):
    """Every push that would have gone to FCM."""
    sent = []

    def fake_send(tokens, title, body, data):
        sent.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        return len(tokens), 0

    monkeypatch.setattr(notifications, "send_push", fake_send)
    return sent


@pytest.fixture
def client(db):
    main.app.dependency_overrides[get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="student", branch="CSE", year=2, semester=3, verified=True, password="secret123", **extra):
        counter["n"] += 1
        doc = {
            "name": extra.pop("name", f"{role.title()} {counter['n']}"),
            "email": extra.pop("email", f"{role}{counter['n']}@campus.edu"),
            "password": hash_password(password),
            "role": role,
            "branch": branch if role == "student" else None,
            "year": year if role == "student" else None,
            "semester": semester if role == "student" else None,
            "avatar": "default-avatar.png",
            "is_verified": verified,
            "fcm_token": None,
            "subjects": [],
            "created_at": now(),
            "updated_at": now(),
        }
        doc.update(extra)
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def auth():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user['_id'])}"}

    return _headers


@pytest.fixture
def subject(db):
    doc = {
        "name": "Data Structures",
        "code": "CS201",
        "description": "Linear and non-linear data structures",
        "branch": "CSE",
        "year": 2,
        "semester": 3,
        "credits": 4,
        "teachers": [],
        "syllabus": None,
        "is_elective": False,
        "is_active": True,
        "created_at": now(),
        "updated_at": now(),
    }
    doc["_id"] = db["subject"].insert_one(doc).inserted_id
    return doc


@pytest.fixture
def upload_note(client, auth, subject):
    def _upload(user, title="Stacks and queues", branch="CSE", year=2, semester=3, filename="stacks.pdf"):
        data = {
            "title": title,
            "description": "Lecture notes",
            "subject": str(subject["_id"]),
            "branch": branch,
            "year": str(year),
            "semester": str(semester),
        }
        files = {"file": (filename, b"%PDF-1.4 notes", "application/pdf")}
        return client.post("/api/notes", data=data, files=files, headers=auth(user))

    return _upload
