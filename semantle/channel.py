from typing import Awaitable, Callable, List, Optional

from .guest import Identity
from .logging_utils import get_logger
from .realtime import PresenceHub, RoomFeed, Subscription

logger = get_logger("semantle.channel")


class RoomChannel:
    """One participant's realtime link to a room.

    Bundles the room's change-feed subscription with the participant's
    presence subscription. ``subscribe`` announces the participant and then
    calls ``on_subscribed``; ``close`` tears everything down and is safe to
    call repeatedly.
    """

    def __init__(
        self,
        room_id: str,
        identity: Identity,
        feed: RoomFeed,
        hub: PresenceHub,
        on_feed_event: Callable[[dict], Awaitable[None]],
        on_presence_sync: Callable[[List[dict]], Awaitable[None]],
        on_subscribed: Optional[Callable[[str], None]] = None,
    ):
        self.room_id = room_id
        self.identity = identity
        self._feed = feed
        self._hub = hub
        self._on_feed_event = on_feed_event
        self._on_presence_sync = on_presence_sync
        self._on_subscribed = on_subscribed
        self._feed_sub: Optional[Subscription] = None
        self._meta: Optional[dict] = None
        self.closed = False

    async def subscribe(self, player_id: str, nickname: str) -> None:
        if self.closed:
            return
        self._feed_sub = self._feed.subscribe(self.room_id, self._on_feed_event)
        self._hub.channel(self.room_id).subscribe(self.identity.key, self._on_presence_sync)
        logger.debug("channel_subscribed", extra={"room_id": self.room_id, "identity": self.identity.key})
        if self._on_subscribed is not None:
            self._on_subscribed(self.room_id)
        self._meta = {"player_id": player_id, "nickname": nickname}
        await self.track()

    async def track(self) -> None:
        """(Re)announce this participant, e.g. after a websocket reconnect."""
        if self.closed or self._meta is None:
            return
        await self._hub.channel(self.room_id).track(self.identity.key, self._meta)

    async def untrack(self) -> None:
        if self.closed:
            return
        ch = self._hub.get(self.room_id)
        if ch is not None:
            await ch.untrack(self.identity.key)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._feed_sub is not None:
            self._feed_sub.unsubscribe()
            self._feed_sub = None
        ch = self._hub.get(self.room_id)
        if ch is not None:
            await ch.unsubscribe(self.identity.key)
        logger.debug("channel_closed", extra={"room_id": self.room_id, "identity": self.identity.key})
