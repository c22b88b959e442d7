from typing import Optional
from datetime import datetime, timezone
import uuid

from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid.uuid4().hex


class DailyWord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    date: str = Field(index=True)  # YYYY-MM-DD
    word: str
    hints_json: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)


class Room(SQLModel, table=True):
    __tablename__ = "game_room"
    __table_args__ = (
        CheckConstraint(
            "(created_by_user IS NULL) <> (created_by_guest IS NULL)",
            name="ck_room_single_creator",
        ),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    room_code: str = Field(index=True, unique=True)
    word_date: str
    created_by_user: Optional[str] = None
    created_by_guest: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    is_active: bool = True
    max_players: int = 10


class RoomPlayer(SQLModel, table=True):
    __tablename__ = "room_player"
    __table_args__ = (
        UniqueConstraint("room_id", "identity_key", name="uq_room_player_identity"),
        CheckConstraint(
            "(user_id IS NULL) <> (guest_id IS NULL)",
            name="ck_room_player_single_identity",
        ),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    room_id: str = Field(foreign_key="game_room.id", index=True)
    user_id: Optional[str] = None
    guest_id: Optional[str] = None
    identity_key: str
    nickname: str
    joined_at: datetime = Field(default_factory=_utcnow)
    is_active: bool = True


class RoomGuess(SQLModel, table=True):
    __tablename__ = "room_guess"
    __table_args__ = (
        UniqueConstraint("room_id", "guess_order", name="uq_room_guess_order"),
        UniqueConstraint("room_id", "normalized_word", name="uq_room_guess_word"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    room_id: str = Field(foreign_key="game_room.id", index=True)
    player_id: str = Field(foreign_key="room_player.id")
    guess_word: str
    normalized_word: str = Field(index=True)
    similarity: float
    rank: Optional[int] = None
    is_correct: bool = False
    guess_order: int
    created_at: datetime = Field(default_factory=_utcnow)
