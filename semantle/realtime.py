"""
In-process realtime primitives: a per-room change feed for store writes and
a per-room presence channel for live membership.

Both deliver by awaiting each subscriber's handler in turn on the running
event loop. A handler that raises is logged and skipped so one broken
subscriber never blocks the rest of the room.
"""
from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .logging_utils import get_logger

logger = get_logger("semantle.realtime")

FeedHandler = Callable[[dict], Awaitable[None]]
SyncHandler = Callable[[List[dict]], Awaitable[None]]

_sub_ids = itertools.count(1)


class Subscription:
    def __init__(self, on_close: Callable[[], None]):
        self.id = next(_sub_ids)
        self._on_close: Optional[Callable[[], None]] = on_close

    @property
    def closed(self) -> bool:
        return self._on_close is None

    def unsubscribe(self) -> None:
        if self._on_close is not None:
            cb, self._on_close = self._on_close, None
            cb()


class RoomFeed:
    """Publish/subscribe change feed keyed by room id."""

    def __init__(self):
        self._subs: Dict[str, Dict[int, FeedHandler]] = {}

    def subscribe(self, room_id: str, handler: FeedHandler) -> Subscription:
        holder: Dict[str, int] = {}

        def _close():
            subs = self._subs.get(room_id)
            if subs is not None:
                subs.pop(holder["id"], None)
                if not subs:
                    self._subs.pop(room_id, None)

        sub = Subscription(_close)
        holder["id"] = sub.id
        self._subs.setdefault(room_id, {})[sub.id] = handler
        return sub

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subs.get(room_id, {}))

    async def publish(self, room_id: str, event: dict) -> None:
        # snapshot: handlers may unsubscribe while we iterate
        handlers = list(self._subs.get(room_id, {}).values())
        logger.debug("feed_publish", extra={"room_id": room_id, "members": len(handlers)})
        for handler in handlers:
            try:
                await handler(event)
            except Exception as exc:
                logger.warning("feed_handler_failed", extra={"room_id": room_id, "error": str(exc)}, exc_info=True)


class PresenceChannel:
    """Live membership of one room.

    Subscribers are keyed by identity; ``track`` publishes the caller's
    presence entry and every change emits the full membership list.
    """

    def __init__(self, room_id: str, on_empty: Optional[Callable[[str], None]] = None):
        self.room_id = room_id
        self._subscribers: Dict[str, SyncHandler] = {}
        self._members: Dict[str, dict] = {}
        self._on_empty = on_empty

    def members(self) -> List[dict]:
        return sorted(self._members.values(), key=lambda m: m["online_at"])

    def subscribe(self, key: str, on_sync: SyncHandler) -> None:
        self._subscribers[key] = on_sync

    async def track(self, key: str, meta: Dict[str, Any]) -> None:
        entry = dict(meta)
        entry["key"] = key
        prev = self._members.get(key)
        entry["online_at"] = prev["online_at"] if prev else datetime.now(timezone.utc).isoformat()
        self._members[key] = entry
        await self._sync()

    async def untrack(self, key: str) -> None:
        if self._members.pop(key, None) is not None:
            await self._sync()

    async def unsubscribe(self, key: str) -> None:
        self._subscribers.pop(key, None)
        await self.untrack(key)
        if not self._subscribers and not self._members and self._on_empty:
            self._on_empty(self.room_id)

    async def _sync(self) -> None:
        state = self.members()
        logger.debug("presence_sync", extra={"room_id": self.room_id, "members": len(state)})
        for key, handler in list(self._subscribers.items()):
            try:
                await handler([dict(m) for m in state])
            except Exception as exc:
                logger.warning("presence_handler_failed", extra={"room_id": self.room_id, "identity": key, "error": str(exc)}, exc_info=True)


class PresenceHub:
    def __init__(self):
        self._channels: Dict[str, PresenceChannel] = {}

    def channel(self, room_id: str) -> PresenceChannel:
        ch = self._channels.get(room_id)
        if ch is None:
            ch = PresenceChannel(room_id, on_empty=self._drop)
            self._channels[room_id] = ch
        return ch

    def get(self, room_id: str) -> Optional[PresenceChannel]:
        return self._channels.get(room_id)

    def _drop(self, room_id: str) -> None:
        self._channels.pop(room_id, None)

    def channel_count(self) -> int:
        return len(self._channels)
