"""
Room session controller: one participant's view of one multiplayer room.

The controller owns the participant's session state and is the only thing
that mutates it. State is rebuilt from scratch on every create/join and
thrown away by ``cleanup()``, which every error path and the explicit leave
path go through.

Realtime callbacks (presence sync, change-feed events, the inactivity timer)
and the tails of async operations can complete after the session they
belong to was torn down. Each of them captures the session generation and
room id when it starts and checks ``_is_current`` before touching state;
stale results are dropped without telling the player.
"""
import asyncio
import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Set

from . import config
from .channel import RoomChannel
from .errors import (
    CollaboratorError,
    DuplicateGuessError,
    NoActiveRoomError,
    RoomCompleteError,
    RoomError,
    RoomNotFoundError,
    StaleSessionError,
    ValidationError,
    WordNotFoundError,
)
from .guest import Identity
from .logging_utils import get_logger
from .realtime import PresenceHub
from .similarity import SimilarityGateway
from .store import RoomStore
from .timer import InactivityTimer
from .words import is_correct, is_valid_date, normalize_word, today_str

logger = get_logger("semantle.session")

INACTIVITY_NOTICE = "The room was closed due to inactivity"
ROOM_CLOSED_NOTICE = "The room was closed"

Listener = Callable[[str, dict], None]


class Phase(str, Enum):
    NO_ROOM = "no_room"
    JOINING = "joining"
    ACTIVE = "active"
    COMPLETE = "complete"


@dataclass(frozen=True)
class SessionState:
    room: Optional[dict] = None
    players: List[dict] = field(default_factory=list)
    guesses: List[dict] = field(default_factory=list)
    current_player: Optional[dict] = None
    is_complete: bool = False
    current_word: Optional[str] = None
    phase: Phase = Phase.NO_ROOM

    @property
    def room_id(self) -> Optional[str]:
        return self.room["id"] if self.room else None

    def to_dict(self, reveal_word: bool = False) -> dict:
        d = dataclasses.asdict(self)
        d["phase"] = self.phase.value
        # the target word stays hidden until someone finds it
        if not (reveal_word or self.is_complete):
            d["current_word"] = None
        return d


def _presence_entry(player: dict, key: str) -> dict:
    return {"key": key, "player_id": player["id"], "nickname": player["nickname"], "online_at": None}


class RoomSessionController:
    def __init__(
        self,
        identity: Identity,
        store: RoomStore,
        gateway: SimilarityGateway,
        hub: PresenceHub,
        inactivity_timeout: Optional[float] = None,
        correct_threshold: Optional[float] = None,
    ):
        self.identity = identity
        self.store = store
        self.gateway = gateway
        self.hub = hub
        self.correct_threshold = config.CORRECT_SIMILARITY_THRESHOLD if correct_threshold is None else correct_threshold
        self.state = SessionState()
        self.is_loading = False
        self.last_notice: Optional[dict] = None
        self._channel: Optional[RoomChannel] = None
        self._timer = InactivityTimer(
            config.INACTIVITY_TIMEOUT_SECONDS if inactivity_timeout is None else inactivity_timeout,
            self._on_inactivity,
        )
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []

    # ---- observers ----

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def _emit(self, kind: str, payload: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, payload)
            except Exception as exc:
                logger.warning("listener_failed", extra={"identity": self.identity.key, "error": str(exc)})

    def snapshot(self) -> dict:
        return {"state": self.state.to_dict(), "is_loading": self.is_loading}

    def _set_state(self, state: SessionState) -> None:
        self.state = state
        self._emit("state", self.snapshot())

    def _notice(self, level: str, message: str, room_id: Optional[str] = None) -> None:
        self.last_notice = {"level": level, "message": message, "room_id": room_id}
        self._emit("notice", dict(self.last_notice))

    # ---- introspection ----

    @property
    def active_room_id(self) -> Optional[str]:
        return self.state.room_id

    @property
    def channel(self) -> Optional[RoomChannel]:
        return self._channel

    @property
    def timer(self) -> InactivityTimer:
        return self._timer

    def _is_current(self, generation: int, room_id: Optional[str] = None) -> bool:
        if generation != self._generation:
            return False
        return room_id is None or self.active_room_id == room_id

    def _ensure_current(self, generation: int, room_id: Optional[str] = None) -> None:
        if not self._is_current(generation, room_id):
            raise StaleSessionError(room_id)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background refreshes started by this controller."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---- validation ----

    @staticmethod
    def _clean_nickname(nickname: str) -> str:
        nick = (nickname or "").strip()
        if not nick:
            raise ValidationError("Please enter a nickname")
        if len(nick) > config.NICKNAME_MAX_LENGTH:
            raise ValidationError(f"Nickname is too long (max {config.NICKNAME_MAX_LENGTH} characters)")
        return nick

    async def _resolve_word(self, word_date: str) -> str:
        word = await self.store.active_word_for_date(word_date)
        if not word:
            raise WordNotFoundError(word_date)
        return word

    def _begin(self) -> int:
        self.is_loading = True
        self._set_state(SessionState(phase=Phase.JOINING))
        return self._generation

    # ---- operations ----

    async def create_room(self, nickname: str, word_date: Optional[str] = None) -> Optional[str]:
        """Create a room for ``word_date`` and join it as its first player.

        Returns the shareable room code, or None when the attempt was
        superseded by another create/join/reset before it finished.
        """
        nick = self._clean_nickname(nickname)
        word_date = word_date or today_str()
        if not is_valid_date(word_date):
            raise ValidationError("Date must be in YYYY-MM-DD format")

        await self.cleanup()
        gen = self._begin()
        try:
            code = await self.store.generate_room_code()
            self._ensure_current(gen)
            room = await self.store.create_room(code, word_date, self.identity)
            self._ensure_current(gen)
            player = await self.store.upsert_player(room["id"], self.identity, nick)
            self._ensure_current(gen)
            word = await self._resolve_word(word_date)
            self._ensure_current(gen)

            self._set_state(SessionState(
                room=room,
                players=[_presence_entry(player, self.identity.key)],
                guesses=[],
                current_player=player,
                is_complete=False,
                current_word=word,
                phase=Phase.ACTIVE,
            ))
            await self._open_channel(room["id"], player, gen)
            logger.info("room_created", extra={"room_id": room["id"], "room_code": room["room_code"], "word_date": word_date, "identity": self.identity.key})
            return room["room_code"]
        except StaleSessionError:
            logger.info("create_room_superseded", extra={"identity": self.identity.key})
            return None
        except RoomError as exc:
            await self._fail(gen, "create_room_failed", exc)
            raise
        except Exception as exc:
            await self._fail(gen, "create_room_failed", exc)
            raise CollaboratorError("Could not create the room, please try again") from exc
        finally:
            self._finish(gen)

    async def join_room(self, room_code: str, nickname: str) -> None:
        """Join an active room by its code.

        The player list and guess history are filled in afterwards by the
        presence sync and a background store query.
        """
        nick = self._clean_nickname(nickname)
        code = (room_code or "").strip()
        if not code:
            raise ValidationError("Please enter a room code")

        await self.cleanup()
        gen = self._begin()
        try:
            room = await self.store.get_room_by_code(code)
            self._ensure_current(gen)
            if room is None or not room["is_active"]:
                raise RoomNotFoundError()
            player = await self.store.upsert_player(room["id"], self.identity, nick)
            self._ensure_current(gen)
            word = await self._resolve_word(room["word_date"])
            self._ensure_current(gen)

            self._set_state(SessionState(
                room=room,
                players=[],
                guesses=[],
                current_player=player,
                current_word=word,
                phase=Phase.ACTIVE,
            ))
            await self._open_channel(room["id"], player, gen)
            self._spawn(self._refresh_guesses(room["id"], gen))
            logger.info("room_joined", extra={"room_id": room["id"], "room_code": room["room_code"], "player_id": player["id"], "identity": self.identity.key})
        except StaleSessionError:
            logger.info("join_room_superseded", extra={"room_code": code, "identity": self.identity.key})
        except RoomError as exc:
            await self._fail(gen, "join_room_failed", exc)
            raise
        except Exception as exc:
            await self._fail(gen, "join_room_failed", exc)
            raise CollaboratorError("Could not join the room, please try again") from exc
        finally:
            self._finish(gen)

    async def make_guess(self, word: str) -> None:
        """Score ``word`` and record it for the room.

        The local guess list is not touched here: the insert comes back
        through the change feed like everyone else's guesses.
        """
        state = self.state
        if state.room is None or state.current_player is None or self._channel is None:
            raise NoActiveRoomError()
        if state.is_complete:
            raise RoomCompleteError()
        word = (word or "").strip()
        if not word:
            raise ValidationError("Please enter a word")

        room_id = state.room["id"]
        gen = self._generation
        norm = normalize_word(word)

        earlier = next((g for g in state.guesses if normalize_word(g["guess_word"]) == norm), None)
        if earlier is None:
            earlier = await self.store.find_guess_by_word(room_id, word)
            if not self._is_current(gen, room_id):
                return
        if earlier is not None:
            logger.info("guess_rejected_duplicate", extra={"room_id": room_id, "word": word})
            raise DuplicateGuessError(word, earlier.get("player_nickname"))

        target = state.current_word
        if not target:
            raise WordNotFoundError(state.room["word_date"])

        result = await self.gateway.similarity(target, word)
        if not self._is_current(gen, room_id):
            logger.info("guess_result_discarded", extra={"room_id": room_id, "word": word})
            return

        correct = is_correct(word, target, result.similarity, self.correct_threshold)
        await self.store.insert_guess(
            room_id,
            state.current_player["id"],
            word,
            result.similarity,
            result.rank,
            correct,
        )
        if self._is_current(gen, room_id):
            self._timer.reset(room_id)

    async def leave_room(self) -> None:
        player = self.state.current_player
        channel = self._channel
        if player is None or channel is None:
            return
        room_id = channel.room_id
        try:
            await channel.untrack()
            await self.store.set_player_active(player["id"], False)
        except RoomError as exc:
            logger.warning("leave_room_store_failed", extra={"room_id": room_id, "player_id": player["id"], "error": exc.message})
        finally:
            await self.cleanup()
        logger.info("room_left", extra={"room_id": room_id, "player_id": player["id"]})

        try:
            if await self.store.count_active_players(room_id) == 0:
                await self.store.deactivate_room(room_id)
        except RoomError as exc:
            logger.warning("room_close_failed", extra={"room_id": room_id, "error": exc.message})

    async def cleanup(self) -> None:
        """Drop the current session: timer, channel and all local state."""
        self._generation += 1
        self._timer.cancel()
        channel, self._channel = self._channel, None
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if channel is not None:
            await channel.close()
        self.is_loading = False
        self._set_state(SessionState())

    reset_session = cleanup

    # ---- internals ----

    async def _fail(self, gen: int, event: str, exc: Exception) -> None:
        if self._generation == gen:
            await self.cleanup()
        message = exc.message if isinstance(exc, RoomError) else "unexpected error"
        if isinstance(exc, RoomError):
            logger.warning(event, extra={"identity": self.identity.key, "error": message})
        else:
            logger.exception(event, extra={"identity": self.identity.key, "error": str(exc)})
        self._notice("error", message)

    def _finish(self, gen: int) -> None:
        if self._generation == gen and self.is_loading:
            self.is_loading = False
            self._emit("state", self.snapshot())

    async def _open_channel(self, room_id: str, player: dict, gen: int) -> None:
        async def on_feed_event(event: dict) -> None:
            await self._on_feed_event(room_id, gen, event)

        async def on_presence_sync(members: List[dict]) -> None:
            await self._on_presence_sync(room_id, gen, members)

        channel = RoomChannel(
            room_id,
            self.identity,
            self.store.feed,
            self.hub,
            on_feed_event=on_feed_event,
            on_presence_sync=on_presence_sync,
            on_subscribed=self._timer.reset,
        )
        self._channel = channel
        await channel.subscribe(player["id"], player["nickname"])
        self._ensure_current(gen, room_id)

    async def reannounce(self) -> None:
        """Track presence again after the participant reconnects."""
        if self._channel is not None:
            await self._channel.track()

    async def drop_presence(self) -> None:
        """Connection lost without leaving: disappear from presence only."""
        if self._channel is not None:
            await self._channel.untrack()

    async def _on_presence_sync(self, room_id: str, gen: int, members: List[dict]) -> None:
        if not self._is_current(gen, room_id):
            return
        known = {p.get("key") for p in self.state.players}
        self._set_state(dataclasses.replace(self.state, players=list(members)))
        if any(m["key"] not in known for m in members):
            self._timer.reset(room_id)

        # the longest-connected member keeps store activity in line with presence
        if not members or members[0]["key"] == self.identity.key:
            try:
                await self.store.reconcile_player_activity(room_id, [m["key"] for m in members])
            except RoomError as exc:
                logger.warning("reconcile_failed", extra={"room_id": room_id, "error": exc.message})

    async def _on_feed_event(self, room_id: str, gen: int, event: dict) -> None:
        if not self._is_current(gen, room_id):
            return
        kind = event.get("type")
        if kind == "guess_inserted":
            self._timer.reset(room_id)
            await self._refresh_guesses(room_id, gen)
        elif kind == "room_closed":
            reason = event.get("reason")
            await self._close_session(room_id, gen, INACTIVITY_NOTICE if reason == "inactivity" else ROOM_CLOSED_NOTICE)

    async def _refresh_guesses(self, room_id: str, gen: int) -> None:
        try:
            guesses = await self.store.list_guesses(room_id)
        except RoomError as exc:
            logger.warning("guess_refresh_failed", extra={"room_id": room_id, "error": exc.message})
            return
        if not self._is_current(gen, room_id):
            return
        was_complete = self.state.is_complete
        complete = was_complete or any(g["is_correct"] for g in guesses)
        phase = Phase.COMPLETE if complete else self.state.phase
        self._set_state(dataclasses.replace(self.state, guesses=guesses, is_complete=complete, phase=phase))
        if complete and not was_complete:
            winner = next((g for g in guesses if g["is_correct"]), None)
            who = winner.get("player_nickname") if winner else None
            logger.info("room_completed", extra={"room_id": room_id, "nickname": who})
            self._notice("success", f"{who} found the word!" if who else "The word was found!", room_id)

    async def _close_session(self, room_id: str, gen: int, message: str) -> None:
        if not self._is_current(gen, room_id):
            return
        await self.cleanup()
        self._notice("info", message, room_id)

    async def _on_inactivity(self, room_id: str) -> None:
        gen = self._generation
        try:
            await self.store.deactivate_room(room_id, reason="inactivity")
        except RoomError as exc:
            logger.warning("room_close_failed", extra={"room_id": room_id, "error": exc.message})
        await self._close_session(room_id, gen, INACTIVITY_NOTICE)
