"""
Async facade over the room tables.

Each call opens its own database session through ``crud`` and returns plain
dicts, so callers never hold ORM objects across an ``await``. Writes that
other participants need to see are announced on the room's change feed once
committed.
"""
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from . import crud
from .errors import CollaboratorError, RoomError, RoomNotFoundError
from .guest import Identity
from .logging_utils import get_logger
from .realtime import RoomFeed

logger = get_logger("semantle.store")


class RoomStore:
    def __init__(self, engine=None, feed: Optional[RoomFeed] = None):
        self._engine = engine
        self.feed = feed or RoomFeed()

    @property
    def engine(self):
        # fall back to the engine installed at startup
        return self._engine if self._engine is not None else crud.engine

    async def _run(self, op, *args, **kwargs):
        # sessions block, so they run on the threadpool and keep the loop free
        def call():
            with Session(self.engine) as session:
                return op(session, *args, **kwargs)

        try:
            return await run_in_threadpool(call)
        except RoomError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("store_error", extra={"error": str(exc)})
            raise CollaboratorError("Database error, please try again") from exc

    # ---- words ----

    async def active_word_for_date(self, date: str) -> Optional[str]:
        return await self._run(crud.get_active_word_for_date, date)

    # ---- rooms ----

    async def generate_room_code(self) -> str:
        return await self._run(crud.generate_room_code)

    async def create_room(self, code: str, word_date: str, creator: Identity, max_players: Optional[int] = None) -> dict:
        def op(session):
            return crud.create_room(session, code, word_date, creator, max_players).model_dump()
        return await self._run(op)

    async def get_room_by_code(self, code: str) -> Optional[dict]:
        def op(session):
            room = crud.get_room_by_code(session, code)
            return room.model_dump() if room else None
        return await self._run(op)

    async def get_room(self, room_id: str) -> Optional[dict]:
        def op(session):
            room = crud.get_room(session, room_id)
            return room.model_dump() if room else None
        return await self._run(op)

    async def deactivate_room(self, room_id: str, reason: Optional[str] = None) -> bool:
        flipped = await self._run(crud.deactivate_room, room_id)
        if flipped:
            logger.info("room_deactivated", extra={"room_id": room_id, "reason": reason})
            await self.feed.publish(room_id, {"type": "room_closed", "room_id": room_id, "reason": reason})
        return flipped

    # ---- players ----

    async def upsert_player(self, room_id: str, identity: Identity, nickname: str) -> dict:
        def op(session):
            room = crud.get_room(session, room_id)
            if room is None:
                raise RoomNotFoundError()
            return crud.upsert_player(session, room, identity, nickname).model_dump()
        return await self._run(op)

    async def set_player_active(self, player_id: str, active: bool) -> Optional[dict]:
        def op(session):
            p = crud.set_player_active(session, player_id, active)
            return p.model_dump() if p else None
        return await self._run(op)

    async def list_players(self, room_id: str, active_only: bool = False) -> List[dict]:
        def op(session):
            return [p.model_dump() for p in crud.list_players(session, room_id, active_only)]
        return await self._run(op)

    async def count_active_players(self, room_id: str) -> int:
        return await self._run(crud.count_active_players, room_id)

    async def reconcile_player_activity(self, room_id: str, present_keys: Iterable[str]) -> List[dict]:
        keys = list(present_keys)

        def op(session):
            return [p.model_dump() for p in crud.reconcile_player_activity(session, room_id, keys)]
        changed = await self._run(op)
        if changed:
            logger.info("players_reconciled", extra={"room_id": room_id, "members": len(keys)})
        return changed

    # ---- guesses ----

    async def find_guess_by_word(self, room_id: str, word: str) -> Optional[dict]:
        def op(session):
            row = crud.find_guess_by_word(session, room_id, word)
            if row is None:
                return None
            guess, nickname = row
            d = guess.model_dump()
            d["player_nickname"] = nickname
            return d
        return await self._run(op)

    async def insert_guess(
        self,
        room_id: str,
        player_id: str,
        word: str,
        similarity: float,
        rank: Optional[int],
        is_correct: bool,
    ) -> dict:
        def op(session):
            return crud.insert_guess(session, room_id, player_id, word, similarity, rank, is_correct).model_dump()
        guess = await self._run(op)
        logger.info("guess_inserted", extra={"room_id": room_id, "player_id": player_id, "guess_order": guess["guess_order"]})
        await self.feed.publish(room_id, {"type": "guess_inserted", "room_id": room_id, "guess": guess})
        return guess

    async def list_guesses(self, room_id: str) -> List[dict]:
        return await self._run(crud.list_guesses, room_id)
