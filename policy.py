"""
Authorization decisions.

Every function here is pure: it looks at the acting user and the resource
documents it is given and returns a Decision. Callers apply the decision
with ``enforce`` before touching the database.
"""

from typing import Any, NamedTuple, Optional

from fastapi import HTTPException

from schemas import STAFF_ROLES


class Decision(NamedTuple):
    allowed: bool
    reason: str = ""
    status_code: int = 403


ALLOW = Decision(True)


def deny(reason: str, status_code: int = 403) -> Decision:
    return Decision(False, reason, status_code)


def enforce(decision: Decision) -> None:
    if not decision.allowed:
        raise HTTPException(status_code=decision.status_code, detail=decision.reason)


def same_id(a: Any, b: Any) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def is_admin(actor: dict) -> bool:
    return actor.get("role") == "admin"


def is_staff(actor: dict) -> bool:
    return actor.get("role") in STAFF_ROLES


# ----------------------
# Ownership and roles
# ----------------------
def can_modify(actor: dict, resource: dict, owner_field: str = "uploaded_by", label: str = "resource") -> Decision:
    """Owner or app admin may update/delete content, messages, comments and announcements."""
    if is_admin(actor) or same_id(actor.get("_id"), resource.get(owner_field)):
        return ALLOW
    return deny(f"User {actor.get('_id')} is not authorized to modify this {label}")


def require_role(actor: dict, *roles: str) -> Decision:
    if actor.get("role") in roles:
        return ALLOW
    return deny(f"User role {actor.get('role')} is not authorized to access this route")


def can_verify(actor: dict) -> Decision:
    return require_role(actor, *STAFF_ROLES)


def can_delete_user(target: dict, admin_count: int) -> Decision:
    if target.get("role") == "admin" and admin_count <= 1:
        return deny("Cannot delete the last admin user", 409)
    return ALLOW


def can_change_role(target: dict, new_role: str, admin_count: int) -> Decision:
    if target.get("role") == "admin" and new_role != "admin" and admin_count <= 1:
        return deny("Cannot demote the last admin user", 409)
    return ALLOW


# ----------------------
# Group chats
# ----------------------
def is_member(chat: dict, user_id: Any) -> bool:
    return any(same_id(member, user_id) for member in chat.get("users", []))


def is_group_admin(actor: dict, chat: dict) -> bool:
    return same_id(chat.get("group_admin"), actor.get("_id"))


def can_access_chat(actor: dict, chat: dict) -> Decision:
    if is_member(chat, actor.get("_id")):
        return ALLOW
    return deny("Not authorized to access this chat")


def can_manage_group(actor: dict, chat: dict) -> Decision:
    """Rename, re-scope, add members, transfer ownership."""
    if not chat.get("is_group_chat"):
        return deny("This is not a group chat", 400)
    if is_group_admin(actor, chat) or is_admin(actor):
        return ALLOW
    return deny("Not authorized to manage this group")


def can_remove_member(actor: dict, chat: dict, target_id: Any) -> Decision:
    if not chat.get("is_group_chat"):
        return deny("This is not a group chat", 400)
    self_removal = same_id(actor.get("_id"), target_id)
    if not (self_removal or is_group_admin(actor, chat) or is_admin(actor)):
        return deny("Not authorized to remove users from this group")
    if same_id(target_id, chat.get("group_admin")) and not is_admin(actor):
        return deny("Cannot remove the group admin")
    return ALLOW


def can_join_group(actor: dict, chat: dict) -> Decision:
    if not (chat.get("is_public") and chat.get("is_group_chat")):
        return deny("This chat is not a public group", 400)
    if is_member(chat, actor.get("_id")):
        return deny("You are already a member of this group", 409)
    return ALLOW


def can_leave_group(actor: dict, chat: dict) -> Decision:
    if not chat.get("is_group_chat"):
        return deny("This is not a group chat", 400)
    if not is_member(chat, actor.get("_id")):
        return deny("You are not a member of this group", 400)
    if is_group_admin(actor, chat):
        return deny("Group admin cannot leave. Transfer ownership first", 409)
    return ALLOW


def can_transfer_ownership(actor: dict, chat: dict, target_id: Optional[Any]) -> Decision:
    decision = can_manage_group(actor, chat)
    if not decision.allowed:
        return decision
    if not is_member(chat, target_id):
        return deny("Target user is not a member of this group", 400)
    return ALLOW
