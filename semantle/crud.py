from sqlmodel import Session, select
from sqlalchemy import func, desc
from sqlalchemy.exc import IntegrityError
from passlib.context import CryptContext
from datetime import datetime, timezone
from typing import Iterable, List, Optional
import json
import secrets

from . import models, config
from .errors import CollaboratorError, DuplicateGuessError, RoomClosedError, RoomCompleteError, RoomFullError
from .guest import Identity
from .words import normalize_word
from .logging_utils import get_logger

logger = get_logger("semantle.crud")

pwd = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
engine = None

# no 0/O/1/I so codes survive being read aloud
_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _new_code(length: int) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


# ---- word of the day ----

def get_active_word_for_date(session: Session, date: str) -> Optional[str]:
    """Return the active target word for ``date`` or None."""
    from .cache import get_cached_daily_word, cache_daily_word

    cached = get_cached_daily_word(date)
    if cached is not None:
        return cached
    row = session.exec(
        select(models.DailyWord)
        .where(models.DailyWord.date == date)
        .where(models.DailyWord.is_active == True)  # noqa: E712
        .order_by(desc(models.DailyWord.created_at), desc(models.DailyWord.id))
    ).first()
    if row is None:
        return None
    cache_daily_word(date, row.word)
    return row.word


def set_daily_word(session: Session, date: str, word: str, hints: Optional[List[str]] = None) -> models.DailyWord:
    """Make ``word`` the only active word for ``date``."""
    from .cache import invalidate_daily_word

    previous = session.exec(
        select(models.DailyWord)
        .where(models.DailyWord.date == date)
        .where(models.DailyWord.is_active == True)  # noqa: E712
    ).all()
    for dw in previous:
        dw.is_active = False
        session.add(dw)
    dw = models.DailyWord(
        date=date,
        word=word.strip(),
        hints_json=json.dumps(hints, ensure_ascii=False) if hints else None,
        is_active=True,
    )
    session.add(dw)
    session.commit()
    session.refresh(dw)
    invalidate_daily_word(date)
    return dw


# ---- rooms ----

def generate_room_code(session: Session, length: Optional[int] = None, attempts: int = 20) -> str:
    length = length or config.ROOM_CODE_LENGTH
    for _ in range(attempts):
        code = _new_code(length)
        taken = session.exec(select(models.Room.id).where(models.Room.room_code == code)).first()
        if taken is None:
            return code
    raise CollaboratorError("Could not allocate a room code, please try again")


def create_room(
    session: Session,
    code: str,
    word_date: str,
    creator: Identity,
    max_players: Optional[int] = None,
) -> models.Room:
    room = models.Room(
        room_code=normalize_code(code),
        word_date=word_date,
        created_by_user=creator.user_id,
        created_by_guest=creator.guest_id,
        max_players=max_players or config.DEFAULT_MAX_PLAYERS,
    )
    session.add(room)
    session.commit()
    session.refresh(room)
    return room


def get_room(session: Session, room_id: str) -> Optional[models.Room]:
    return session.get(models.Room, room_id)


def get_room_by_code(session: Session, code: str) -> Optional[models.Room]:
    return session.exec(
        select(models.Room).where(models.Room.room_code == normalize_code(code))
    ).first()


def deactivate_room(session: Session, room_id: str) -> bool:
    """Mark a room inactive. Returns True only when this call flipped the flag."""
    room = session.get(models.Room, room_id)
    if room is None or not room.is_active:
        return False
    room.is_active = False
    session.add(room)
    session.commit()
    return True


# ---- players ----

def count_active_players(session: Session, room_id: str) -> int:
    return session.exec(
        select(func.count(models.RoomPlayer.id))
        .where(models.RoomPlayer.room_id == room_id)
        .where(models.RoomPlayer.is_active == True)  # noqa: E712
    ).one()


def upsert_player(session: Session, room: models.Room, identity: Identity, nickname: str) -> models.RoomPlayer:
    """Insert the player, or refresh nickname/activity on (room, identity) conflict."""
    existing = session.exec(
        select(models.RoomPlayer)
        .where(models.RoomPlayer.room_id == room.id)
        .where(models.RoomPlayer.identity_key == identity.key)
    ).first()
    if existing is not None:
        existing.nickname = nickname
        existing.is_active = True
        session.add(existing)
        session.commit()
        session.refresh(existing)
        return existing

    if count_active_players(session, room.id) >= room.max_players:
        raise RoomFullError(room.max_players)

    player = models.RoomPlayer(
        room_id=room.id,
        user_id=identity.user_id,
        guest_id=identity.guest_id,
        identity_key=identity.key,
        nickname=nickname,
    )
    session.add(player)
    try:
        session.commit()
    except IntegrityError:
        # lost a race with a concurrent join of the same identity
        session.rollback()
        return upsert_player(session, room, identity, nickname)
    session.refresh(player)
    return player


def set_player_active(session: Session, player_id: str, active: bool) -> Optional[models.RoomPlayer]:
    player = session.get(models.RoomPlayer, player_id)
    if player is None:
        return None
    if player.is_active != active:
        player.is_active = active
        session.add(player)
        session.commit()
        session.refresh(player)
    return player


def list_players(session: Session, room_id: str, active_only: bool = False) -> List[models.RoomPlayer]:
    stmt = select(models.RoomPlayer).where(models.RoomPlayer.room_id == room_id)
    if active_only:
        stmt = stmt.where(models.RoomPlayer.is_active == True)  # noqa: E712
    return list(session.exec(stmt.order_by(models.RoomPlayer.joined_at)).all())


def reconcile_player_activity(session: Session, room_id: str, present_keys: Iterable[str]) -> List[models.RoomPlayer]:
    """Make each player's ``is_active`` match presence. Returns the rows that changed."""
    present = set(present_keys)
    changed = []
    for player in list_players(session, room_id):
        should_be_active = player.identity_key in present
        if player.is_active != should_be_active:
            player.is_active = should_be_active
            session.add(player)
            changed.append(player)
    if changed:
        session.commit()
        for p in changed:
            session.refresh(p)
    return changed


# ---- guesses ----

def find_guess_by_word(session: Session, room_id: str, word: str):
    """Return (guess, nickname) for an earlier guess of the same normalized word."""
    row = session.exec(
        select(models.RoomGuess, models.RoomPlayer.nickname)
        .join(models.RoomPlayer, models.RoomPlayer.id == models.RoomGuess.player_id)
        .where(models.RoomGuess.room_id == room_id)
        .where(models.RoomGuess.normalized_word == normalize_word(word))
        .order_by(models.RoomGuess.guess_order)
    ).first()
    return row


def room_has_correct_guess(session: Session, room_id: str) -> bool:
    row = session.exec(
        select(models.RoomGuess.id)
        .where(models.RoomGuess.room_id == room_id)
        .where(models.RoomGuess.is_correct == True)  # noqa: E712
        .limit(1)
    ).first()
    return row is not None


def next_guess_order(session: Session, room_id: str) -> int:
    current = session.exec(
        select(func.max(models.RoomGuess.guess_order)).where(models.RoomGuess.room_id == room_id)
    ).one()
    return int(current or 0) + 1


def insert_guess(
    session: Session,
    room_id: str,
    player_id: str,
    word: str,
    similarity: float,
    rank: Optional[int],
    is_correct: bool,
    attempts: int = 5,
) -> models.RoomGuess:
    """Insert a guess with the room's next order number.

    Refuses when the room is closed, already solved, or already has the same
    normalized word. A unique conflict with a concurrent insert is retried:
    the re-check turns a same-word race into ``DuplicateGuessError`` and an
    order race into a fresh order number.
    """
    for _ in range(attempts):
        room = session.get(models.Room, room_id)
        if room is None or not room.is_active:
            raise RoomClosedError()
        if room_has_correct_guess(session, room_id):
            raise RoomCompleteError()
        earlier = find_guess_by_word(session, room_id, word)
        if earlier is not None:
            raise DuplicateGuessError(word.strip(), earlier[1])
        guess = models.RoomGuess(
            room_id=room_id,
            player_id=player_id,
            guess_word=word.strip(),
            normalized_word=normalize_word(word),
            similarity=float(similarity),
            rank=rank,
            is_correct=is_correct,
            guess_order=next_guess_order(session, room_id),
            created_at=datetime.now(timezone.utc),
        )
        session.add(guess)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.debug("guess_insert_conflict", extra={"room_id": room_id})
            continue
        session.refresh(guess)
        return guess
    raise CollaboratorError("Could not save the guess, please try again")


def list_guesses(session: Session, room_id: str) -> List[dict]:
    """Guesses of a room ordered by guess_order, each with the guesser's nickname."""
    rows = session.exec(
        select(models.RoomGuess, models.RoomPlayer.nickname)
        .join(models.RoomPlayer, models.RoomPlayer.id == models.RoomGuess.player_id, isouter=True)
        .where(models.RoomGuess.room_id == room_id)
        .order_by(models.RoomGuess.guess_order)
    ).all()
    out = []
    for guess, nickname in rows:
        d = guess.model_dump()
        d["player_nickname"] = nickname or "Unknown"
        out.append(d)
    return out


# ---- admin ----

def verify_admin(username: str, password: str) -> bool:
    if not config.ADMIN_PASSWORD_HASH:
        return False
    if not secrets.compare_digest(username or "", config.ADMIN_USERNAME):
        return False
    try:
        return pwd.verify(password or "", config.ADMIN_PASSWORD_HASH)
    except ValueError:
        # malformed hash in the environment
        logger.warning("admin_hash_invalid")
        return False
