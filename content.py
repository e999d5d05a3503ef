"""
Notes, syllabi, videos and previous-year papers.

The four kinds share one set of operations. Each kind is a ContentKind
object that knows its collection, upload category, schema and how to
describe one of its documents to the assistant; operations never switch on
the kind's name.
"""

import re
from typing import Any, Dict, List, Optional, Tuple, Type

from fastapi import HTTPException
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

import storage
from database import clean, create_document, get_or_404, now, oid
from policy import can_modify, can_verify, enforce, same_id
from schemas import PYQ, STAFF_ROLES, Comment, ContentItem, Note, Rating, Syllabus, Video
from visibility import build_visibility_filter, run_listing

# Fields the update operation never writes: ownership, verification and engagement.
PROTECTED_FIELDS = {
    "_id", "uploaded_by", "is_verified", "verified_by", "verified_at", "views", "downloads",
    "likes", "users_liked", "ratings", "average_rating", "comments", "created_at",
}
FILE_PATH_FIELDS = ("file_path", "solution_file_path")


class ContentKind:
    name = ""
    label = ""
    plural = ""
    collection = ""
    category = ""
    schema: Type[ContentItem] = ContentItem
    likeable = False
    rateable = False
    commentable = False

    def owner_ref(self, doc: dict):
        return doc.get("uploaded_by")

    def subject_ref(self, doc: dict):
        return doc.get("subject")

    def stored_paths(self, doc: dict) -> List[str]:
        return [doc[f] for f in FILE_PATH_FIELDS if doc.get(f)]

    def describe_for_prompt(self, doc: dict, subject: Optional[dict]) -> str:
        return f'{self.label}: "{doc.get("title")}" for {subject_label(subject)}'


class NoteKind(ContentKind):
    name, label, plural = "note", "Note", "notes"
    collection, category = "note", "notes"
    schema = Note
    rateable = True


class SyllabusKind(ContentKind):
    name, label, plural = "syllabus", "Syllabus", "syllabi"
    collection, category = "syllabus", "syllabus"
    schema = Syllabus

    def describe_for_prompt(self, doc: dict, subject: Optional[dict]) -> str:
        text = f"Syllabus for {subject_label(subject)}"
        units = doc.get("units") or []
        if units:
            text += "\nUnits:\n"
            for index, unit in enumerate(units, start=1):
                text += f"Unit {index}: {unit.get('title')} - {unit.get('description')}\n"
        return text


class VideoKind(ContentKind):
    name, label, plural = "video", "Video", "videos"
    collection, category = "video", "videos"
    schema = Video
    likeable = True
    commentable = True

    def stored_paths(self, doc: dict) -> List[str]:
        if doc.get("is_youtube_video"):
            return []
        return super().stored_paths(doc)

    def describe_for_prompt(self, doc: dict, subject: Optional[dict]) -> str:
        return f'Video lecture "{doc.get("title")}" for {subject_label(subject)}'


class PYQKind(ContentKind):
    name, label, plural = "pyq", "PYQ", "pyqs"
    collection, category = "pyq", "pyqs"
    schema = PYQ

    def describe_for_prompt(self, doc: dict, subject: Optional[dict]) -> str:
        return (
            f"Previous year question paper from the {doc.get('exam_year')} {doc.get('exam_type')} exam "
            f"for {subject_label(subject)}"
        )


NOTE, SYLLABUS, VIDEO, PYQ_KIND = NoteKind(), SyllabusKind(), VideoKind(), PYQKind()
KINDS: Dict[str, ContentKind] = {k.name: k for k in (NOTE, SYLLABUS, VIDEO, PYQ_KIND)}


def kind_for(name: Optional[str]) -> ContentKind:
    kind = KINDS.get((name or "").lower())
    if kind is None:
        raise HTTPException(status_code=400, detail=f"Invalid content type: {name}")
    return kind


def subject_label(subject: Optional[dict]) -> str:
    if not subject:
        return "an unknown subject"
    return f"{subject.get('name')} ({subject.get('code')})"


def load_subject(db: Database, subject_id: Any) -> Optional[dict]:
    if subject_id is None:
        return None
    return db["subject"].find_one({"_id": oid(subject_id)})


def validation_error(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False, include_input=False))


# ----------------------
# YouTube links
# ----------------------
YOUTUBE_ID_RE = re.compile(r"(?:youtube\.com/(?:[^/\n\s]+/\S+/|(?:v|e(?:mbed)?|shorts)/|\S*?[?&]v=)|youtu\.be/)([a-zA-Z0-9_-]{11})")


def extract_youtube_id(url: str) -> Optional[str]:
    match = YOUTUBE_ID_RE.search(url or "")
    return match.group(1) if match else None


def youtube_fields(url: str) -> Dict[str, Any]:
    video_id = extract_youtube_id(url)
    if not video_id:
        raise HTTPException(status_code=400, detail="Invalid YouTube URL")
    return {
        "is_youtube_video": True,
        "video_url": url,
        "youtube_id": video_id,
        "thumbnail_url": f"https://img.youtube.com/vi/{video_id}/hqdefault.jpg",
        "file_path": None,
    }


# ----------------------
# CRUD
# ----------------------
def list_items(
    db: Database,
    kind: ContentKind,
    actor: dict,
    query: Dict[str, Any],
    extra: Optional[Dict[str, Any]] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    sort: Optional[str] = None,
    select: Optional[str] = None,
) -> Dict[str, Any]:
    flt = build_visibility_filter(actor, query)
    flt.update(extra or {})
    return run_listing(db[kind.collection], flt, page=page, limit=limit, sort=sort, select=select)


def get_item(db: Database, kind: ContentKind, item_id: Any) -> dict:
    return get_or_404(db, kind.collection, item_id, kind.label)


def create_item(db: Database, kind: ContentKind, actor: dict, fields: Dict[str, Any]) -> dict:
    """Student uploads start unverified; staff uploads are verified on arrival."""
    if load_subject(db, fields.get("subject")) is None:
        raise HTTPException(status_code=400, detail=f"Subject not found with id of {fields.get('subject')}")
    data = dict(fields)
    data["subject"] = oid(data["subject"])
    data["uploaded_by"] = actor["_id"]
    data["is_verified"] = actor.get("role") in STAFF_ROLES
    try:
        doc = kind.schema(**data)
    except ValidationError as exc:
        raise validation_error(exc)
    new_id = create_document(db, kind.collection, doc.model_dump(by_alias=True))
    return db[kind.collection].find_one({"_id": new_id})


def authorize_change(db: Database, kind: ContentKind, actor: dict, item_id: Any) -> dict:
    doc = get_item(db, kind, item_id)
    enforce(can_modify(actor, doc, "uploaded_by", kind.name))
    return doc


def update_item(db: Database, kind: ContentKind, doc: dict, changes: Dict[str, Any]) -> dict:
    """Apply ``changes`` to an already-authorized document.

    Files replaced by the change are removed from storage once the row is updated.
    """
    changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}
    if "subject" in changes:
        if load_subject(db, changes["subject"]) is None:
            raise HTTPException(status_code=400, detail=f"Subject not found with id of {changes['subject']}")
        changes["subject"] = oid(changes["subject"])
    if not changes:
        return doc

    merged = {k: v for k, v in doc.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update(changes)
    try:
        validated = kind.schema(**merged).model_dump(by_alias=True)
    except ValidationError as exc:
        raise validation_error(exc)
    to_set = {k: validated[k] for k in changes if k in validated}
    to_set["updated_at"] = now()

    updated = db[kind.collection].find_one_and_update(
        {"_id": doc["_id"]}, {"$set": to_set}, return_document=ReturnDocument.AFTER
    )
    for field in FILE_PATH_FIELDS:
        old_path = doc.get(field)
        if field in changes and old_path and old_path != changes[field]:
            storage.delete_file(old_path)
    return updated


def delete_item(db: Database, kind: ContentKind, doc: dict) -> None:
    db[kind.collection].delete_one({"_id": doc["_id"]})
    for path in kind.stored_paths(doc):
        storage.delete_file(path)


# ----------------------
# Verification
# ----------------------
def verify_item(db: Database, kind: ContentKind, actor: dict, item_id: Any, dispatcher) -> Dict[str, Any]:
    """One-way unverified -> verified. The uploader is notified only on the transition."""
    enforce(can_verify(actor))
    doc = get_item(db, kind, item_id)
    result = db[kind.collection].update_one(
        {"_id": doc["_id"], "is_verified": False},
        {"$set": {"is_verified": True, "verified_by": actor["_id"], "verified_at": now(), "updated_at": now()}},
    )
    changed = result.modified_count == 1
    owner = kind.owner_ref(doc)
    if changed and owner is not None:
        dispatcher.notify(
            f"Your {kind.name} has been verified",
            f"{doc.get('title')} has been verified and is now available to all users.",
            data={"type": kind.name, "id": str(doc["_id"])},
            target_users=[owner],
        )
    return {"success": True, "verified": True, "changed": changed, "message": f"{kind.label} verified successfully"}


def pending_items(db: Database) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    total = 0
    for kind in KINDS.values():
        docs = [clean(d) for d in db[kind.collection].find({"is_verified": False}).sort("created_at", -1)]
        result[kind.plural] = docs
        total += len(docs)
    result["total"] = total
    return result


# ----------------------
# Engagement
# ----------------------
def _bump(db: Database, kind: ContentKind, item_id: Any, field: str) -> dict:
    doc = db[kind.collection].find_one_and_update(
        {"_id": oid(item_id)}, {"$inc": {field: 1}}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise HTTPException(status_code=404, detail=f"{kind.label} not found with id of {item_id}")
    return doc


def record_view(db: Database, kind: ContentKind, item_id: Any) -> dict:
    return _bump(db, kind, item_id, "views")


def record_download(db: Database, kind: ContentKind, item_id: Any) -> dict:
    return _bump(db, kind, item_id, "downloads")


def _require(capable: bool, kind: ContentKind, action: str) -> None:
    if not capable:
        raise HTTPException(status_code=400, detail=f"{kind.label} does not support {action}")


def toggle_like(db: Database, kind: ContentKind, actor: dict, item_id: Any) -> Tuple[int, bool]:
    """``users_liked`` is the source of truth; ``likes`` follows it and never goes below zero."""
    _require(kind.likeable, kind, "likes")
    doc = get_item(db, kind, item_id)
    users_liked = doc.get("users_liked", [])
    already = any(same_id(u, actor["_id"]) for u in users_liked)
    if already:
        users_liked = [u for u in users_liked if not same_id(u, actor["_id"])]
        likes = max(0, doc.get("likes", 0) - 1)
    else:
        users_liked = users_liked + [actor["_id"]]
        likes = doc.get("likes", 0) + 1
    db[kind.collection].update_one({"_id": doc["_id"]}, {"$set": {"likes": likes, "users_liked": users_liked}})
    return likes, not already


def rate_item(db: Database, kind: ContentKind, actor: dict, item_id: Any, rating: int, comment: Optional[str] = None) -> Dict[str, Any]:
    """One rating per user; a repeat overwrites it. ``average_rating`` is the mean of what is stored."""
    _require(kind.rateable, kind, "ratings")
    try:
        entry = Rating(user=actor["_id"], rating=rating, comment=comment, created_at=now())
    except ValidationError as exc:
        raise validation_error(exc)
    doc = get_item(db, kind, item_id)
    ratings = list(doc.get("ratings", []))
    for existing in ratings:
        if same_id(existing.get("user"), actor["_id"]):
            existing["rating"] = entry.rating
            if comment:
                existing["comment"] = comment
            existing["created_at"] = entry.created_at
            break
    else:
        ratings.append(entry.model_dump())
    average = sum(r["rating"] for r in ratings) / len(ratings)
    db[kind.collection].update_one({"_id": doc["_id"]}, {"$set": {"ratings": ratings, "average_rating": average}})
    return {"success": True, "average_rating": average, "total_ratings": len(ratings)}


def add_comment(db: Database, kind: ContentKind, actor: dict, item_id: Any, text: str) -> List[dict]:
    _require(kind.commentable, kind, "comments")
    try:
        comment = Comment(text=text, user=actor["_id"], created_at=now())
    except ValidationError as exc:
        raise validation_error(exc)
    doc = get_item(db, kind, item_id)
    updated = db[kind.collection].find_one_and_update(
        {"_id": doc["_id"]},
        {"$push": {"comments": comment.model_dump(by_alias=True)}},
        return_document=ReturnDocument.AFTER,
    )
    return updated.get("comments", [])


def delete_comment(db: Database, kind: ContentKind, actor: dict, item_id: Any, comment_id: Any) -> None:
    _require(kind.commentable, kind, "comments")
    doc = get_item(db, kind, item_id)
    comment = next((c for c in doc.get("comments", []) if same_id(c.get("_id"), comment_id)), None)
    if comment is None:
        raise HTTPException(status_code=404, detail=f"Comment not found with id of {comment_id}")
    enforce(can_modify(actor, comment, "user", "comment"))
    db[kind.collection].update_one({"_id": doc["_id"]}, {"$pull": {"comments": {"_id": comment["_id"]}}})
