from datetime import datetime, timedelta, timezone

import anyio
import pytest
from pymongo.errors import PyMongoError
from starlette.websockets import WebSocketDisconnect

import realtime
from schemas import User

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_online_users_uses_two_minute_window():
    users = [
        User(_id="1", email="zed@example.com", last_active=NOW - timedelta(seconds=30)),
        User(_id="2", display_name="amy", last_active=NOW - timedelta(minutes=1)),
        User(_id="3", email="old@example.com", last_active=NOW - timedelta(minutes=3)),
        User(_id="4", email="never@example.com"),
    ]

    online = realtime.online_users(users, now=NOW)

    assert [u["display_name"] for u in online] == ["amy", "zed"]


def test_snapshot_digest_tracks_content():
    items = [{"id": "1", "amount": 5}]

    assert realtime.snapshot_digest(items) == realtime.snapshot_digest([{"amount": 5, "id": "1"}])
    assert realtime.snapshot_digest(items) != realtime.snapshot_digest([{"id": "1", "amount": 6}])


def test_collection_snapshot_hides_secrets(db, make_user):
    make_user("Alice", password_hash="x")

    items = realtime.collection_snapshot("users")

    assert items[0]["name"] == "Alice"
    assert isinstance(items[0]["_id"], str)
    assert "password_hash" not in items[0]


def test_unknown_collection_subscription():
    with pytest.raises(ValueError):
        realtime.SnapshotSubscription(None, "sessions")


def test_presence_session_marks_user_offline_on_exit(db, make_user):
    user_id = make_user("Alice")

    async def session():
        async with realtime.PresenceSession(user_id):
            assert db["users"].find_one()["is_online"] is True

    anyio.run(session)

    user = db["users"].find_one()
    assert user["is_online"] is False
    assert user["last_active"] is not None


def test_collection_socket_sends_snapshot(client, admin, make_user, add_deposit):
    add_deposit(make_user("Bob"), 120, datetime(2024, 1, 1))

    with client.websocket_connect(f"/ws/deposits?token={admin['token']}") as ws:
        frame = ws.receive_json()

    assert frame["collection"] == "deposits"
    assert [d["amount"] for d in frame["items"]] == [120]


def test_chat_socket_marks_user_online(client, make_user, login, db):
    user_id = make_user("Alice")
    token = login(user_id)["Authorization"].split()[1]

    with client.websocket_connect(f"/ws/chat?token={token}") as ws:
        frame = ws.receive_json()
        assert frame == {"collection": "messages", "items": []}
        assert db["users"].find_one({"name": "Alice"})["is_online"] is True
        ws.send_text("heartbeat")


@pytest.mark.parametrize("path", ["/ws/deposits?token=bad", "/ws/chat", "/ws/sessions?token={token}"])
def test_sockets_reject_invalid_requests(client, admin, path):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(path.format(token=admin["token"])) as ws:
            ws.receive_json()


def test_member_can_not_subscribe_to_admin_collections(client, make_user, login):
    token = login(make_user("Alice"))["Authorization"].split()[1]

    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/users?token={token}") as ws:
            ws.receive_json()


def test_snapshot_push_survives_backend_errors(client, admin, monkeypatch):
    calls = []
    real_snapshot = realtime.collection_snapshot

    def flaky_snapshot(collection_name):
        calls.append(collection_name)
        if len(calls) == 1:
            raise PyMongoError("connection reset")
        return real_snapshot(collection_name)

    monkeypatch.setattr(realtime, "collection_snapshot", flaky_snapshot)
    monkeypatch.setattr(realtime, "POLL_INTERVAL", 0.01)

    with client.websocket_connect(f"/ws/loans?token={admin['token']}") as ws:
        frame = ws.receive_json()

    assert frame == {"collection": "loans", "items": []}
    assert len(calls) >= 2


def test_heartbeat_errors_keep_presence_session_open(db, make_user, monkeypatch):
    user_id = make_user("Alice")

    async def session():
        async with realtime.PresenceSession(user_id) as presence:
            monkeypatch.setattr(realtime, "set_presence", failing_presence)
            await presence.heartbeat("ping")

    def failing_presence(*args):
        raise PyMongoError("connection reset")

    anyio.run(session)
