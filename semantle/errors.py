"""
Error taxonomy for room sessions.

Every error carries a human-readable ``message`` that is safe to show to the
player, a short machine ``code`` and the HTTP status the API maps it to.
"""
from typing import Optional


class RoomError(Exception):
    code = "room_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RoomError):
    code = "validation_error"
    status_code = 400


class NotFoundError(RoomError):
    code = "not_found"
    status_code = 404


class RoomNotFoundError(NotFoundError):
    code = "room_not_found"

    def __init__(self, message: str = "Room not found or no longer active"):
        super().__init__(message)


class WordNotFoundError(NotFoundError):
    code = "word_not_found"

    def __init__(self, word_date: str):
        super().__init__(f"No word is configured for {word_date}")
        self.word_date = word_date


class DuplicateGuessError(RoomError):
    code = "duplicate_guess"
    status_code = 409

    def __init__(self, word: str, guessed_by: Optional[str]):
        who = guessed_by or "another player"
        super().__init__(f'The word "{word}" was already guessed by {who}')
        self.word = word
        self.guessed_by = guessed_by


class RoomCompleteError(RoomError):
    code = "room_complete"
    status_code = 409

    def __init__(self, message: str = "The game in this room is already over"):
        super().__init__(message)


class RoomClosedError(RoomError):
    code = "room_closed"
    status_code = 409

    def __init__(self, message: str = "This room has been closed"):
        super().__init__(message)


class RoomFullError(RoomError):
    code = "room_full"
    status_code = 409

    def __init__(self, max_players: int):
        super().__init__(f"This room is full (max {max_players} players)")
        self.max_players = max_players


class NoActiveRoomError(RoomError):
    code = "no_active_room"
    status_code = 409

    def __init__(self, message: str = "You are not in an active room"):
        super().__init__(message)


class CollaboratorError(RoomError):
    """A backing service (similarity API, database) failed; retrying may help."""
    code = "service_error"
    status_code = 502


class OutOfVocabularyError(CollaboratorError):
    code = "out_of_vocabulary"
    status_code = 400


class StaleSessionError(Exception):
    """An async result arrived for a session that was already torn down.

    Never shown to the player; callers discard the result.
    """

    def __init__(self, room_id: Optional[str] = None):
        super().__init__(f"stale session result for room {room_id}")
        self.room_id = room_id
