import asyncio
from typing import Awaitable, Callable, Optional

from .logging_utils import get_logger

logger = get_logger("semantle.timer")


class InactivityTimer:
    """Single re-armable idle timer.

    ``reset(room_id)`` always cancels a pending fire before arming a new one,
    so at most one expiry is ever scheduled per timer. Must be used from a
    running event loop.
    """

    def __init__(self, timeout_seconds: float, on_expire: Callable[[str], Awaitable[None]]):
        self.timeout_seconds = timeout_seconds
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._room_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    def reset(self, room_id: str) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._room_id = room_id
        self._handle = loop.call_later(self.timeout_seconds, self._fire, room_id)
        logger.debug("inactivity_timer_armed", extra={"room_id": room_id, "timeout_s": self.timeout_seconds})

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._room_id = None

    def _fire(self, room_id: str) -> None:
        self._handle = None
        self._room_id = None
        logger.info("inactivity_timeout", extra={"room_id": room_id, "timeout_s": self.timeout_seconds})
        self._task = asyncio.get_running_loop().create_task(self._run(room_id))

    async def _run(self, room_id: str) -> None:
        try:
            await self._on_expire(room_id)
        except Exception as exc:
            logger.exception("inactivity_handler_failed", extra={"room_id": room_id, "error": str(exc)})

    async def wait_fired(self) -> None:
        """Await the most recent expiry handler, if one was started."""
        if self._task is not None:
            await self._task
