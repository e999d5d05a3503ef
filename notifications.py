"""
Push notifications.

Recipients are resolved to device tokens from the user collection and sent
through the Firebase Cloud Messaging HTTP v1 API. Every dispatch is also
stored in the ``notification`` collection so users can page through it.
Dispatch is best-effort: failures are logged and reported in the result,
never raised to the caller.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import BackgroundTasks
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account
from pymongo.database import Database

import settings
from database import now, oid
from schemas import Notification
from visibility import audience_user_filter

logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

_session: Optional[AuthorizedSession] = None
_project_id: Optional[str] = None


def _fcm_session() -> Tuple[AuthorizedSession, str]:
    global _session, _project_id
    if _session is None:
        if settings.FIREBASE_CREDENTIALS:
            credentials = service_account.Credentials.from_service_account_file(
                settings.FIREBASE_CREDENTIALS, scopes=[FCM_SCOPE]
            )
        elif settings.FIREBASE_CLIENT_EMAIL and settings.FIREBASE_PRIVATE_KEY:
            credentials = service_account.Credentials.from_service_account_info(
                {
                    "project_id": settings.FIREBASE_PROJECT_ID,
                    "client_email": settings.FIREBASE_CLIENT_EMAIL,
                    "private_key": settings.FIREBASE_PRIVATE_KEY,
                    "token_uri": "https://oauth2.googleapis.com/token",
                },
                scopes=[FCM_SCOPE],
            )
        else:
            raise RuntimeError("Missing Firebase configuration. Set FIREBASE_CREDENTIALS or the FIREBASE_* variables.")
        _project_id = settings.FIREBASE_PROJECT_ID or credentials.project_id
        _session = AuthorizedSession(credentials)
    return _session, _project_id


def send_push(tokens: List[str], title: str, body: str, data: Dict[str, str]) -> Tuple[int, int]:
    """Send one message per token. Returns (sent, failed)."""
    session, project_id = _fcm_session()
    url = FCM_SEND_URL.format(project_id=project_id)
    sent = failed = 0
    for token in tokens:
        message = {"message": {"token": token, "notification": {"title": title, "body": body}, "data": data}}
        response = session.post(url, json=message, timeout=10)
        if response.ok:
            sent += 1
        else:
            failed += 1
            logger.warning("FCM rejected token %s...: %s", token[:12], response.text[:200])
    return sent, failed


def _recipients(db: Database, target_users: Optional[Iterable[Any]], target_audience: Optional[Dict[str, Any]]) -> List[dict]:
    if target_users:
        ids = [oid(u) for u in target_users]
        return list(db["user"].find({"_id": {"$in": ids}}, {"fcm_token": 1}))
    if target_audience is not None:
        return list(db["user"].find(audience_user_filter(target_audience), {"fcm_token": 1}))
    return []


def notify_users(
    db: Database,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    target_users: Optional[Iterable[Any]] = None,
    target_audience: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload = {k: str(v) for k, v in (data or {}).items()}
    try:
        users = _recipients(db, target_users, target_audience)
        if users:
            created = now()
            db["notification"].insert_many(
                [
                    {**Notification(user=u["_id"], title=title, body=body, data=payload).model_dump(), "created_at": created, "updated_at": created}
                    for u in users
                ]
            )

        tokens = [u["fcm_token"] for u in users if u.get("fcm_token")]
        if not tokens:
            return {"success": True, "message": "No valid notification tokens found", "tokens_count": 0, "sent_count": 0, "failed_count": 0}

        sent, failed = send_push(tokens, title, body, payload)
        return {"success": failed == 0, "tokens_count": len(tokens), "sent_count": sent, "failed_count": failed}
    except Exception as exc:
        logger.exception("Notification dispatch failed: %s", title)
        return {"success": False, "error": str(exc)}


class Dispatcher:
    """Queues notifications to run after the response has been sent."""

    def __init__(self, db: Database, background_tasks: BackgroundTasks):
        self.db = db
        self.background_tasks = background_tasks

    def notify(
        self,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        target_users: Optional[Iterable[Any]] = None,
        target_audience: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.background_tasks.add_task(
            notify_users,
            self.db,
            title,
            body,
            data,
            list(target_users) if target_users is not None else None,
            target_audience,
        )


def truncate(text: str, length: int) -> str:
    return text[:length] + "..." if len(text) > length else text
