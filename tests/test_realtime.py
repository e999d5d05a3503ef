import asyncio

import pytest
from fastapi import WebSocketDisconnect

import main
from auth import create_access_token
from realtime import ChatHub, room_for


class FakeSocket:
    def __init__(self):
        self.sent = []
        self.closed = False

    async def accept(self):
        pass

    async def send_json(self, payload):
        if self.closed:
            raise WebSocketDisconnect()
        self.sent.append(payload)

    def events(self):
        return [m["event"] for m in self.sent]

    def last(self, event):
        return [m["data"] for m in self.sent if m["event"] == event][-1]


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def hub(monkeypatch):
    fresh = ChatHub()
    monkeypatch.setattr(main, "hub", fresh)
    return fresh


@pytest.fixture
def direct_chat(db, make_user):
    x, y = make_user(), make_user()
    chat_id = db["chat"].insert_one({"chat_name": "sender", "is_group_chat": False, "users": [x["_id"], y["_id"]]}).inserted_id
    return x, y, str(chat_id)


def connect_as(hub, db, user):
    socket = FakeSocket()
    conn_id = run(hub.connect(socket))
    run(hub.handle(conn_id, {"event": "authenticate", "data": {"token": create_access_token(user["_id"])}}, db))
    return conn_id, socket


def test_presence_is_announced(hub, db, make_user):
    x, y = make_user(), make_user()
    first, first_socket = connect_as(hub, db, x)
    second, second_socket = connect_as(hub, db, y)

    assert first_socket.events() == ["connected", "authenticated", "user_online"]
    assert first_socket.last("user_online") == {"user_id": str(y["_id"])}
    assert hub.online_users() == {str(x["_id"]), str(y["_id"])}

    run(hub.disconnect(second))
    assert first_socket.last("user_offline") == {"user_id": str(y["_id"])}
    assert hub.online_users() == {str(x["_id"])}


def test_second_connection_of_same_user_is_not_reannounced(hub, db, make_user):
    x, y = make_user(), make_user()
    _, watcher = connect_as(hub, db, y)
    phone, _ = connect_as(hub, db, x)
    connect_as(hub, db, x)
    assert watcher.events().count("user_online") == 1

    run(hub.disconnect(phone))
    assert "user_offline" not in watcher.events()


def test_events_require_authentication(hub, db, direct_chat):
    socket = FakeSocket()
    conn_id = run(hub.connect(socket))
    run(hub.handle(conn_id, {"event": "join_chat", "data": {"chat_id": direct_chat[2]}}, db))
    assert socket.last("error") == {"message": "Not authenticated"}

    run(hub.handle(conn_id, {"event": "authenticate", "data": {"token": "garbage"}}, db))
    assert socket.last("error") == {"message": "Authentication failed"}


def test_typing_reaches_other_members_only(hub, db, make_user, direct_chat):
    x, y, chat_id = direct_chat
    x_conn, x_socket = connect_as(hub, db, x)
    y_conn, y_socket = connect_as(hub, db, y)
    outsider_conn, outsider_socket = connect_as(hub, db, make_user())

    for conn_id in (x_conn, y_conn, outsider_conn):
        run(hub.handle(conn_id, {"event": "join_chat", "data": {"chat_id": chat_id}}, db))
    assert outsider_socket.last("error") == {"message": "Not authorized to access this chat"}
    assert hub.rooms[room_for(chat_id)] == {x_conn, y_conn}

    run(hub.handle(x_conn, {"event": "typing", "data": {"chat_id": chat_id}}, db))
    assert y_socket.last("user_typing") == {"chat_id": chat_id, "user_id": str(x["_id"])}
    assert "user_typing" not in x_socket.events()
    assert "user_typing" not in outsider_socket.events()


def test_message_read_updates_receipts(hub, db, direct_chat):
    x, y, chat_id = direct_chat
    chat = db["chat"].find_one()
    db["message"].insert_one({"chat": chat["_id"], "sender": x["_id"], "content": "hi", "read_by": [x["_id"]], "is_deleted": False})
    x_conn, x_socket = connect_as(hub, db, x)
    y_conn, _ = connect_as(hub, db, y)
    for conn_id in (x_conn, y_conn):
        run(hub.handle(conn_id, {"event": "join_chat", "data": {"chat_id": chat_id}}, db))

    run(hub.handle(y_conn, {"event": "message_read", "data": {"chat_id": chat_id}}, db))
    assert db["message"].find_one()["read_by"] == [x["_id"], y["_id"]]
    assert x_socket.last("message_read_update") == {"chat_id": chat_id, "user_id": str(y["_id"])}


def test_published_messages_go_to_the_room(hub, db, direct_chat):
    x, y, chat_id = direct_chat
    y_conn, y_socket = connect_as(hub, db, y)
    run(hub.handle(y_conn, {"event": "join_chat", "data": {"chat_id": chat_id}}, db))
    message = {"_id": db["message"].insert_one({}).inserted_id, "chat": db["chat"].find_one()["_id"], "content": "hello"}

    run(hub.publish_message(message))
    assert y_socket.last("message_received")["content"] == "hello"


def test_dead_connections_are_dropped(hub, db, make_user, direct_chat):
    x, y, chat_id = direct_chat
    _, watcher = connect_as(hub, db, x)
    conn_id, socket = connect_as(hub, db, y)
    run(hub.handle(conn_id, {"event": "join_chat", "data": {"chat_id": chat_id}}, db))

    socket.closed = True
    run(hub.send(conn_id, "ping", {}))
    assert conn_id not in hub.connections
    assert room_for(chat_id) not in hub.rooms
    assert hub.online_users() == {str(x["_id"])}
    assert watcher.last("user_offline") == {"user_id": str(y["_id"])}

    run(hub.disconnect(conn_id))
    assert watcher.events().count("user_offline") == 1


def test_unverified_accounts_cannot_join_the_socket(hub, db, make_user):
    socket = FakeSocket()
    conn_id = run(hub.connect(socket))
    token = create_access_token(make_user(verified=False)["_id"])
    run(hub.handle(conn_id, {"event": "authenticate", "data": {"token": token}}, db))
    assert socket.last("error") == {"message": "Please verify your account first"}
    assert hub.online_users() == set()


def test_websocket_endpoint(client, hub, make_user):
    user = make_user()
    with client.websocket_connect("/ws/chat") as ws:
        assert ws.receive_json()["event"] == "connected"
        ws.send_text("not json")
        assert ws.receive_json() == {"event": "error", "data": {"message": "Invalid JSON"}}
        ws.send_json({"event": "authenticate", "data": {"token": create_access_token(user["_id"])}})
        assert ws.receive_json() == {"event": "authenticated", "data": {"user_id": str(user["_id"])}}
        ws.send_json({"event": "shout", "data": {}})
        assert ws.receive_json()["data"] == {"message": "Unknown event: shout"}
    assert hub.online_users() == set()
