from datetime import timedelta

from bson import ObjectId

from database import now
from visibility import (
    announcement_visibility_filter,
    audience_user_filter,
    build_visibility_filter,
    pagination_meta,
    run_listing,
    sort_spec,
)

STUDENT = {"_id": ObjectId(), "role": "student", "branch": "CSE", "year": 2, "semester": 3}
TEACHER = {"_id": ObjectId(), "role": "teacher", "branch": None, "year": None, "semester": None}


def test_student_defaults_to_own_cohort():
    assert build_visibility_filter(STUDENT, {}) == {"branch": "CSE", "year": 2, "semester": 3}


def test_explicit_query_overrides_student_cohort():
    flt = build_visibility_filter(STUDENT, {"branch": "ECE", "year": None})
    assert flt == {"branch": "ECE", "year": 2, "semester": 3}


def test_staff_only_get_explicit_filters():
    assert build_visibility_filter(TEACHER, {}) == {}
    assert build_visibility_filter(TEACHER, {"semester": 5}) == {"semester": 5}


def test_subject_is_additive():
    subject_id = ObjectId()
    flt = build_visibility_filter(STUDENT, {"subject": str(subject_id)})
    assert flt["subject"] == subject_id
    assert flt["branch"] == "CSE"


def test_sort_spec():
    assert sort_spec("-views,title") == [("views", -1), ("title", 1)]
    assert sort_spec(None) == [("created_at", -1)]


def test_pagination_meta():
    meta = pagination_meta(total=51, page=2, limit=25)
    assert meta["total_pages"] == 3
    assert meta["has_next_page"] and meta["has_prev_page"]


def test_run_listing_pages_and_hides_fields(db):
    db["item"].insert_many([{"n": i, "secret": "x", "created_at": now() + timedelta(seconds=i)} for i in range(5)])
    result = run_listing(db["item"], {}, page=2, limit=2, sort="n", hidden=("secret",))
    assert [d["n"] for d in result["data"]] == [2, 3]
    assert "secret" not in result["data"][0]
    assert result["pagination"]["total"] == 5


def test_announcement_visibility(db):
    current = now()
    db["announcement"].insert_many(
        [
            {"title": "all", "is_active": True, "expires_at": None, "target_audience": {"branch": "All", "year": "All", "semester": "All", "role": "All"}},
            {"title": "cse-2", "is_active": True, "expires_at": current + timedelta(days=1), "target_audience": {"branch": "CSE", "year": "2", "semester": "All", "role": "student"}},
            {"title": "ece", "is_active": True, "expires_at": None, "target_audience": {"branch": "ECE", "year": "All", "semester": "All", "role": "All"}},
            {"title": "expired", "is_active": True, "expires_at": current - timedelta(days=1), "target_audience": {"branch": "All", "year": "All", "semester": "All", "role": "All"}},
            {"title": "inactive", "is_active": False, "expires_at": None, "target_audience": {"branch": "All", "year": "All", "semester": "All", "role": "All"}},
            {"title": "teachers", "is_active": True, "expires_at": None, "target_audience": {"branch": "All", "year": "All", "semester": "All", "role": "teacher"}},
        ]
    )
    seen = {a["title"] for a in db["announcement"].find(announcement_visibility_filter(STUDENT, current))}
    assert seen == {"all", "cse-2"}

    seen = {a["title"] for a in db["announcement"].find(announcement_visibility_filter(TEACHER, current))}
    assert seen == {"all", "ece", "teachers"}

    admin = {"_id": ObjectId(), "role": "admin"}
    seen = {a["title"] for a in db["announcement"].find(announcement_visibility_filter(admin, current))}
    assert seen == {"all", "cse-2", "ece", "teachers"}


def test_audience_user_filter():
    assert audience_user_filter({"branch": "CSE", "year": "2", "semester": "All", "role": "student"}) == {
        "branch": "CSE",
        "year": 2,
        "role": "student",
    }
    assert audience_user_filter(None) == {}
