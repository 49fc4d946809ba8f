"""
Realtime snapshots and presence over WebSockets

A subscription belongs to exactly one WebSocket: it polls its collection and
pushes the full current snapshot whenever the content changes, and it ends
when the socket disconnects. Presence is held by a `PresenceSession` for as
long as the chat socket is open.
"""
import hashlib
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

import anyio
from bson import ObjectId
from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

from approvals import id_filter
from database import db
from schemas import User

logger = logging.getLogger(__name__)

ONLINE_WINDOW = timedelta(minutes=2)
POLL_INTERVAL = float(os.getenv("SNAPSHOT_POLL_INTERVAL", "2.0"))

# collection -> sort applied to every snapshot
SNAPSHOT_SORTS: Dict[str, list] = {
    "users": [("created_at", DESCENDING)],
    "messages": [("timestamp", ASCENDING)],
    "loans": [("timestamp", DESCENDING)],
    "deposits": [("timestamp", DESCENDING)],
}

HIDDEN_FIELDS = {"password_hash", "password_salt"}


# ----------------------
# Presence
# ----------------------

def is_user_online(last_active: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if last_active is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - last_active < ONLINE_WINDOW


def display_name(user: User) -> str:
    if user.display_name:
        return user.display_name
    if user.email:
        return user.email.split("@")[0]
    return "Unknown"


def online_users(users: Iterable[User], now: Optional[datetime] = None) -> List[dict]:
    """Users active within the last two minutes, sorted by display name."""
    result = [
        {
            "id": u.id,
            "display_name": display_name(u),
            "is_online": u.is_online,
            "last_active": u.last_active,
        }
        for u in users if is_user_online(u.last_active, now)
    ]
    return sorted(result, key=lambda u: u["display_name"].lower())


def set_presence(user_id: str, online: Optional[bool]) -> None:
    """Refresh last_active; also flip is_online unless `online` is None."""
    update = {"last_active": datetime.now(timezone.utc)}
    if online is not None:
        update["is_online"] = online
    db["users"].update_one(id_filter(user_id), {"$set": update})


class PresenceSession:
    """Marks a user online on enter and offline on exit."""

    def __init__(self, user_id: str):
        self.user_id = user_id

    async def __aenter__(self) -> "PresenceSession":
        await anyio.to_thread.run_sync(set_presence, self.user_id, True)
        return self

    async def heartbeat(self, _message: Optional[str] = None) -> None:
        try:
            await anyio.to_thread.run_sync(set_presence, self.user_id, None)
        except PyMongoError as e:
            logger.error("Error refreshing presence of %s: %s", self.user_id, e)

    async def __aexit__(self, *exc_info) -> None:
        try:
            await anyio.to_thread.run_sync(set_presence, self.user_id, False)
        except Exception:
            logger.exception("Error setting user %s offline", self.user_id)


# ----------------------
# Snapshots
# ----------------------

def _clean(doc: dict) -> dict:
    return {k: v for k, v in doc.items() if k not in HIDDEN_FIELDS}


def collection_snapshot(collection_name: str) -> List[dict]:
    sort = SNAPSHOT_SORTS[collection_name]
    docs = db[collection_name].find({}).sort(sort)
    return jsonable_encoder([_clean(d) for d in docs], custom_encoder={ObjectId: str})


def snapshot_digest(items: List[dict]) -> str:
    return hashlib.sha256(json.dumps(items, sort_keys=True, default=str).encode()).hexdigest()


class SnapshotSubscription:
    """Pushes `{"collection", "items"}` frames to one WebSocket until it closes.

    Incoming text frames are passed to `on_message` (used as presence
    heartbeats by the chat socket).
    """

    def __init__(self, websocket: WebSocket, collection_name: str,
                 on_message: Optional[Callable[[str], Awaitable[None]]] = None,
                 poll_interval: Optional[float] = None):
        if collection_name not in SNAPSHOT_SORTS:
            raise ValueError(f"Unknown collection {collection_name}")
        self.websocket = websocket
        self.collection_name = collection_name
        self.on_message = on_message
        self.poll_interval = POLL_INTERVAL if poll_interval is None else poll_interval
        self._last_digest: Optional[str] = None

    async def _push_changes(self, cancel_scope) -> None:
        try:
            while True:
                try:
                    items = await anyio.to_thread.run_sync(collection_snapshot, self.collection_name)
                except PyMongoError as e:
                    logger.error("Error loading %s snapshot, retrying: %s", self.collection_name, e)
                else:
                    digest = snapshot_digest(items)
                    if digest != self._last_digest:
                        self._last_digest = digest
                        await self.websocket.send_json({"collection": self.collection_name, "items": items})
                await anyio.sleep(self.poll_interval)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Stopped pushing %s: %s", self.collection_name, e)
            cancel_scope.cancel()

    async def _receive(self, cancel_scope) -> None:
        try:
            while True:
                message = await self.websocket.receive_text()
                if self.on_message is not None:
                    await self.on_message(message)
        except WebSocketDisconnect:
            logger.debug("Subscriber to %s disconnected", self.collection_name)
        finally:
            cancel_scope.cancel()

    async def run(self) -> None:
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._push_changes, tg.cancel_scope)
            tg.start_soon(self._receive, tg.cancel_scope)
