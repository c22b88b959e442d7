from typing import Dict, Optional

from .guest import Identity
from .logging_utils import get_logger
from .realtime import PresenceHub
from .session import RoomSessionController
from .similarity import SimilarityGateway
from .store import RoomStore

logger = get_logger("semantle.registry")


class SessionRegistry:
    """One session controller per participant, sharing store, gateway and presence hub."""

    def __init__(
        self,
        store: RoomStore,
        gateway: SimilarityGateway,
        hub: Optional[PresenceHub] = None,
        inactivity_timeout: Optional[float] = None,
        correct_threshold: Optional[float] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.hub = hub or PresenceHub()
        self.inactivity_timeout = inactivity_timeout
        self.correct_threshold = correct_threshold
        self._controllers: Dict[str, RoomSessionController] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def get(self, key: str) -> Optional[RoomSessionController]:
        return self._controllers.get(key)

    def get_or_create(self, identity: Identity) -> RoomSessionController:
        ctl = self._controllers.get(identity.key)
        if ctl is None:
            ctl = RoomSessionController(
                identity,
                self.store,
                self.gateway,
                self.hub,
                inactivity_timeout=self.inactivity_timeout,
                correct_threshold=self.correct_threshold,
            )
            self._controllers[identity.key] = ctl
            logger.debug("controller_created", extra={"identity": identity.key})
        return ctl

    async def reconnect(self, key: str) -> None:
        ctl = self._controllers.get(key)
        if ctl is not None:
            await ctl.reannounce()

    async def disconnect(self, key: str) -> None:
        # connection dropped: presence goes away, the player row is reconciled by the room
        ctl = self._controllers.get(key)
        if ctl is not None:
            await ctl.drop_presence()
            logger.info("participant_disconnected", extra={"identity": key, "room_id": ctl.active_room_id})

    async def discard(self, key: str) -> None:
        ctl = self._controllers.pop(key, None)
        if ctl is not None:
            await ctl.cleanup()

    async def close_all(self) -> None:
        for key in list(self._controllers):
            await self.discard(key)
