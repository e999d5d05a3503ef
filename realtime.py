"""
WebSocket fan-out for chats: message delivery, typing indicators, read
receipts and presence.

Everything here lives in process memory. A client that is not connected
misses events and catches up through the REST message listing.
"""

import logging
import uuid
from typing import Any, Dict, Optional, Set

from fastapi import HTTPException, WebSocket, WebSocketDisconnect
from pymongo.database import Database

from auth import decode_access_token
from database import clean, oid
from policy import can_access_chat

logger = logging.getLogger(__name__)


def room_for(chat_id: Any) -> str:
    return f"chat:{chat_id}"


class ChatHub:
    def __init__(self):
        self.connections: Dict[str, WebSocket] = {}
        self.rooms: Dict[str, Set[str]] = {}
        # connection id -> user id; advisory only
        self.presence: Dict[str, str] = {}

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        conn_id = uuid.uuid4().hex
        self.connections[conn_id] = websocket
        await self.send(conn_id, "connected", {"connection_id": conn_id})
        return conn_id

    async def disconnect(self, conn_id: str):
        if self.connections.pop(conn_id, None) is None:
            return
        for members in self.rooms.values():
            members.discard(conn_id)
        self.rooms = {room: members for room, members in self.rooms.items() if members}
        user_id = self.presence.pop(conn_id, None)
        if user_id and user_id not in self.presence.values():
            await self.broadcast("user_offline", {"user_id": user_id})

    def online_users(self) -> Set[str]:
        return set(self.presence.values())

    async def send(self, conn_id: str, event: str, data: Dict[str, Any]):
        websocket = self.connections.get(conn_id)
        if websocket is None:
            return
        try:
            await websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.info("Dropping connection %s: %s", conn_id, exc)
            await self.disconnect(conn_id)

    async def broadcast(self, event: str, data: Dict[str, Any], exclude: Optional[str] = None):
        for conn_id in list(self.connections):
            if conn_id != exclude:
                await self.send(conn_id, event, data)

    async def emit_to_room(self, room: str, event: str, data: Dict[str, Any], exclude: Optional[str] = None):
        for conn_id in list(self.rooms.get(room, ())):
            if conn_id != exclude:
                await self.send(conn_id, event, data)

    async def publish_message(self, message: dict):
        """Deliver a stored message to everyone viewing its chat."""
        payload = clean(message)
        await self.emit_to_room(room_for(payload["chat"]), "message_received", payload)

    # ----------------------
    # Client events
    # ----------------------
    async def handle(self, conn_id: str, message: Dict[str, Any], db: Database):
        event = message.get("event")
        data = message.get("data") or {}
        if event == "authenticate":
            await self._authenticate(conn_id, data, db)
            return

        user_id = self.presence.get(conn_id)
        if user_id is None:
            await self.send(conn_id, "error", {"message": "Not authenticated"})
            return

        chat_id = str(data.get("chat_id", ""))
        room = room_for(chat_id)
        if event == "join_chat":
            chat = self._member_chat(db, user_id, chat_id)
            if chat is None:
                await self.send(conn_id, "error", {"message": "Not authorized to access this chat"})
                return
            self.rooms.setdefault(room, set()).add(conn_id)
            await self.send(conn_id, "joined_chat", {"chat_id": chat_id})
        elif event == "leave_chat":
            self.rooms.get(room, set()).discard(conn_id)
        elif event in ("typing", "stop_typing"):
            if conn_id in self.rooms.get(room, ()):
                outgoing = "user_typing" if event == "typing" else "user_stopped_typing"
                await self.emit_to_room(room, outgoing, {"chat_id": chat_id, "user_id": user_id}, exclude=conn_id)
        elif event == "message_read":
            chat = self._member_chat(db, user_id, chat_id)
            if chat is None:
                return
            db["message"].update_many(
                {"chat": chat["_id"], "read_by": {"$ne": oid(user_id)}},
                {"$addToSet": {"read_by": oid(user_id)}},
            )
            await self.emit_to_room(room, "message_read_update", {"chat_id": chat_id, "user_id": user_id}, exclude=conn_id)
        else:
            await self.send(conn_id, "error", {"message": f"Unknown event: {event}"})

    async def _authenticate(self, conn_id: str, data: Dict[str, Any], db: Database):
        user_id = decode_access_token(str(data.get("token", "")))
        user = None
        if user_id:
            try:
                user = db["user"].find_one({"_id": oid(user_id)}, {"_id": 1, "is_verified": 1})
            except HTTPException:
                user = None
        if user is None:
            await self.send(conn_id, "error", {"message": "Authentication failed"})
            return
        if not user.get("is_verified"):
            await self.send(conn_id, "error", {"message": "Please verify your account first"})
            return
        user_id = str(user["_id"])
        was_online = user_id in self.presence.values()
        self.presence[conn_id] = user_id
        await self.send(conn_id, "authenticated", {"user_id": user_id})
        if not was_online:
            await self.broadcast("user_online", {"user_id": user_id}, exclude=conn_id)

    def _member_chat(self, db: Database, user_id: str, chat_id: str) -> Optional[dict]:
        try:
            chat = db["chat"].find_one({"_id": oid(chat_id)})
        except HTTPException:
            return None
        if chat is None or not can_access_chat({"_id": user_id}, chat).allowed:
            return None
        return chat


hub = ChatHub()
