"""
Chats and messages.

Membership changes go through the group rules in ``policy``; set operations
on ``users`` and ``read_by`` use ``$addToSet``/``$pull`` so each one is a
single atomic document update.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database

import storage
from database import clean, create_document, get_or_404, now, oid
from notifications import truncate
from policy import (
    can_access_chat,
    can_join_group,
    can_leave_group,
    can_manage_group,
    can_modify,
    can_remove_member,
    can_transfer_ownership,
    enforce,
    same_id,
)
from schemas import Chat, Message
from visibility import page_params, pagination_meta

logger = logging.getLogger(__name__)

MESSAGE_PAGE_SIZE = 50
USER_SUMMARY = {"name": 1, "email": 1, "avatar": 1, "role": 1, "last_active": 1}


def _validation_error(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False, include_input=False))


def _user_summaries(db: Database, ids: List[Any]) -> List[dict]:
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": list(ids)}}, USER_SUMMARY)}
    return [clean(users[i]) for i in ids if i in users]


def present_chat(db: Database, chat: dict) -> dict:
    """Chat with member summaries and the latest message inlined."""
    out = clean(chat)
    out["users"] = _user_summaries(db, chat.get("users", []))
    if chat.get("latest_message"):
        latest = db["message"].find_one({"_id": chat["latest_message"]})
        out["latest_message"] = clean(latest) if latest else None
    return out


def get_chat(db: Database, chat_id: Any) -> dict:
    return get_or_404(db, "chat", chat_id, "Chat")


def get_member_chat(db: Database, actor: dict, chat_id: Any) -> dict:
    chat = get_chat(db, chat_id)
    enforce(can_access_chat(actor, chat))
    return chat


def _reload(db: Database, chat_id) -> dict:
    return db["chat"].find_one({"_id": chat_id})


# ----------------------
# Chats
# ----------------------
def list_chats(db: Database, actor: dict) -> List[dict]:
    chats = db["chat"].find({"users": actor["_id"]}).sort("updated_at", -1)
    return [present_chat(db, c) for c in chats]


def access_chat(db: Database, actor: dict, user_id: Any) -> dict:
    """Return the direct chat between the actor and ``user_id``, creating it on first access."""
    other_id = oid(user_id)
    if same_id(other_id, actor["_id"]):
        raise HTTPException(status_code=400, detail="Cannot start a chat with yourself")
    get_or_404(db, "user", other_id, "User")

    existing = db["chat"].find_one({"is_group_chat": False, "users": {"$all": [actor["_id"], other_id]}})
    if existing:
        return existing
    new_id = create_document(db, "chat", Chat(chat_name="sender", is_group_chat=False, users=[actor["_id"], other_id]))
    return _reload(db, new_id)


def create_group(
    db: Database,
    actor: dict,
    name: str,
    user_ids: List[Any],
    is_public: bool = False,
    subject: Optional[Any] = None,
    branch: Optional[str] = None,
    year: Optional[int] = None,
    semester: Optional[int] = None,
) -> dict:
    members = []
    for uid in [actor["_id"]] + [oid(u) for u in user_ids]:
        if not any(same_id(uid, m) for m in members):
            members.append(uid)
    if len(members) < 2 and not is_public:
        raise HTTPException(status_code=400, detail="More than 1 user is required to form a private group chat")
    if subject is not None:
        get_or_404(db, "subject", subject, "Subject")
    try:
        chat = Chat(
            chat_name=name,
            is_group_chat=True,
            users=members,
            group_admin=actor["_id"],
            is_public=is_public,
            subject=oid(subject) if subject is not None else None,
            branch=branch,
            year=year,
            semester=semester,
        )
    except ValidationError as exc:
        raise _validation_error(exc)
    new_id = create_document(db, "chat", chat)
    return _reload(db, new_id)


def update_group(db: Database, actor: dict, chat_id: Any, changes: Dict[str, Any]) -> dict:
    chat = get_chat(db, chat_id)
    enforce(can_manage_group(actor, chat))
    allowed = {k: v for k, v in changes.items() if k in ("chat_name", "is_public", "subject", "branch", "year", "semester")}
    if allowed.get("subject") is not None:
        allowed["subject"] = get_or_404(db, "subject", allowed["subject"], "Subject")["_id"]
    merged = {k: v for k, v in chat.items() if k in Chat.model_fields}
    merged.update(allowed)
    try:
        Chat(**merged)
    except ValidationError as exc:
        raise _validation_error(exc)
    allowed["updated_at"] = now()
    return db["chat"].find_one_and_update({"_id": chat["_id"]}, {"$set": allowed}, return_document=ReturnDocument.AFTER)


def add_members(db: Database, actor: dict, chat_id: Any, user_ids: List[Any], dispatcher) -> dict:
    """Set union: users already in the group are left as they are."""
    chat = get_chat(db, chat_id)
    enforce(can_manage_group(actor, chat))
    ids = [oid(u) for u in user_ids]
    found = db["user"].count_documents({"_id": {"$in": ids}})
    if found != len(set(ids)):
        raise HTTPException(status_code=404, detail="One or more users not found")
    new_members = [i for i in ids if not any(same_id(i, m) for m in chat.get("users", []))]
    updated = db["chat"].find_one_and_update(
        {"_id": chat["_id"]},
        {"$addToSet": {"users": {"$each": ids}}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if new_members:
        dispatcher.notify(
            "Added to group",
            f"You were added to {chat.get('chat_name')}",
            data={"type": "group_added", "chat_id": str(chat["_id"])},
            target_users=new_members,
        )
    return updated


def remove_member(db: Database, actor: dict, chat_id: Any, user_id: Any) -> dict:
    chat = get_chat(db, chat_id)
    target = oid(user_id)
    enforce(can_remove_member(actor, chat, target))
    update: Dict[str, Any] = {"$pull": {"users": target}, "$set": {"updated_at": now()}}
    if same_id(target, chat.get("group_admin")):
        # Only an app admin gets here; the oldest remaining member inherits the group.
        remaining = [u for u in chat.get("users", []) if not same_id(u, target)]
        if not remaining:
            raise HTTPException(status_code=409, detail="Cannot remove the last member of a group")
        update["$set"]["group_admin"] = remaining[0]
    return db["chat"].find_one_and_update({"_id": chat["_id"]}, update, return_document=ReturnDocument.AFTER)


def join_group(db: Database, actor: dict, chat_id: Any, dispatcher) -> dict:
    chat = get_chat(db, chat_id)
    enforce(can_join_group(actor, chat))
    updated = db["chat"].find_one_and_update(
        {"_id": chat["_id"]},
        {"$addToSet": {"users": actor["_id"]}, "$set": {"updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    dispatcher.notify(
        "New group member",
        f"{actor.get('name')} joined {chat.get('chat_name')}",
        data={"type": "group_join", "chat_id": str(chat["_id"])},
        target_users=[chat["group_admin"]],
    )
    return updated


def leave_group(db: Database, actor: dict, chat_id: Any) -> None:
    chat = get_chat(db, chat_id)
    enforce(can_leave_group(actor, chat))
    db["chat"].update_one({"_id": chat["_id"]}, {"$pull": {"users": actor["_id"]}, "$set": {"updated_at": now()}})


def transfer_ownership(db: Database, actor: dict, chat_id: Any, new_admin_id: Any, dispatcher) -> dict:
    chat = get_chat(db, chat_id)
    new_admin = oid(new_admin_id)
    enforce(can_transfer_ownership(actor, chat, new_admin))
    updated = db["chat"].find_one_and_update(
        {"_id": chat["_id"]},
        {"$set": {"group_admin": new_admin, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    dispatcher.notify(
        "Group ownership transferred",
        f"You are now the admin of {chat.get('chat_name')}",
        data={"type": "group_ownership", "chat_id": str(chat["_id"])},
        target_users=[new_admin],
    )
    return updated


def list_public_groups(
    db: Database,
    query: Dict[str, Any],
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    flt: Dict[str, Any] = {"is_group_chat": True, "is_public": True}
    for field in ("branch", "year", "semester"):
        if query.get(field) not in (None, ""):
            flt[field] = query[field]
    if query.get("subject"):
        flt["subject"] = oid(query["subject"])
    page, limit, skip = page_params(page, limit)
    chats = db["chat"].find(flt).sort("updated_at", -1).skip(skip).limit(limit)
    data = [present_chat(db, c) for c in chats]
    total = db["chat"].count_documents(flt)
    return {"count": len(data), "pagination": pagination_meta(total, page, limit), "data": data}


# ----------------------
# Messages
# ----------------------
def get_messages(db: Database, actor: dict, chat_id: Any, page: Optional[int] = None, limit: Optional[int] = None) -> Dict[str, Any]:
    """One page of messages, oldest first. Fetching marks the whole chat read by the actor."""
    chat = get_member_chat(db, actor, chat_id)
    page, limit, skip = page_params(page, limit, MESSAGE_PAGE_SIZE)
    cursor = db["message"].find({"chat": chat["_id"]}).sort([("created_at", -1), ("_id", -1)]).skip(skip).limit(limit)
    messages = list(cursor)
    messages.reverse()
    total = db["message"].count_documents({"chat": chat["_id"]})

    db["message"].update_many(
        {"chat": chat["_id"], "read_by": {"$ne": actor["_id"]}},
        {"$addToSet": {"read_by": actor["_id"]}},
    )
    senders = {s["id"]: s for s in _user_summaries(db, list({m["sender"] for m in messages}))}
    data = []
    for m in messages:
        out = clean(m)
        out["sender"] = senders.get(str(m["sender"]), {"id": str(m["sender"])})
        data.append(out)
    return {"count": len(data), "pagination": pagination_meta(total, page, limit), "data": data}


def send_message(db: Database, actor: dict, chat_id: Any, text: str, attachments: List[dict], dispatcher) -> dict:
    chat = get_member_chat(db, actor, chat_id)
    try:
        message = Message(sender=actor["_id"], content=text, chat=chat["_id"], read_by=[actor["_id"]], attachments=attachments)
    except ValidationError as exc:
        for attachment in attachments:
            storage.delete_file(attachment.get("file_path"))
        raise _validation_error(exc)
    new_id = create_document(db, "message", message)
    db["chat"].update_one({"_id": chat["_id"]}, {"$set": {"latest_message": new_id, "updated_at": now()}})

    others = [u for u in chat.get("users", []) if not same_id(u, actor["_id"])]
    if others:
        title = chat.get("chat_name") if chat.get("is_group_chat") else actor.get("name")
        dispatcher.notify(
            f"New message from {title}",
            truncate(text, 100),
            data={"type": "new_message", "chat_id": str(chat["_id"]), "message_id": str(new_id)},
            target_users=others,
        )
    return db["message"].find_one({"_id": new_id})


def delete_message(db: Database, actor: dict, message_id: Any) -> dict:
    """Soft delete: the row stays as a tombstone and its files are removed."""
    message = get_or_404(db, "message", message_id, "Message")
    enforce(can_modify(actor, message, "sender", "message"))
    attachments = message.get("attachments", [])
    tombstone = "[Attachments removed]" if attachments else "[Message deleted]"
    for attachment in attachments:
        storage.delete_file(attachment.get("file_path"))
    return db["message"].find_one_and_update(
        {"_id": message["_id"]},
        {"$set": {"is_deleted": True, "content": tombstone, "attachments": [], "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )


def mark_read(db: Database, actor: dict, chat_id: Any) -> int:
    chat = get_member_chat(db, actor, chat_id)
    result = db["message"].update_many(
        {"chat": chat["_id"], "read_by": {"$ne": actor["_id"]}},
        {"$addToSet": {"read_by": actor["_id"]}},
    )
    return result.modified_count


def unread_counts(db: Database, actor: dict) -> Dict[str, Any]:
    """Recomputed from the message set on every call."""
    chat_ids = [c["_id"] for c in db["chat"].find({"users": actor["_id"]}, {"_id": 1})]
    if not chat_ids:
        return {"total_unread": 0, "unread_by_chat": {}}
    pipeline = [
        {
            "$match": {
                "chat": {"$in": chat_ids},
                "sender": {"$ne": actor["_id"]},
                "read_by": {"$ne": actor["_id"]},
                "is_deleted": {"$ne": True},
            }
        },
        {"$group": {"_id": "$chat", "count": {"$sum": 1}}},
    ]
    by_chat = {str(row["_id"]): row["count"] for row in db["message"].aggregate(pipeline)}
    return {"total_unread": sum(by_chat.values()), "unread_by_chat": by_chat}
