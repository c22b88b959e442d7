import datetime
import re
import unicodedata
from typing import Optional

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def today_str() -> str:
    # daily words roll over at UTC midnight
    return datetime.datetime.now(datetime.timezone.utc).date().isoformat()


def is_valid_date(value: str) -> bool:
    if not value or not _DATE_RE.match(value):
        return False
    try:
        datetime.date.fromisoformat(value)
    except ValueError:
        return False
    return True


def normalize_word(word: str) -> str:
    """Form used to compare guesses: trimmed, NFC, case-folded."""
    return unicodedata.normalize("NFC", (word or "").strip()).casefold()


def is_correct(guess: str, target: Optional[str], similarity: float, threshold: float) -> bool:
    if target is not None and normalize_word(guess) == normalize_word(target):
        return True
    return similarity >= threshold


def to_ranking_date(date: str) -> str:
    """YYYY-MM-DD -> DD/MM/YYYY as expected by the ranking service."""
    d = datetime.date.fromisoformat(date)
    return d.strftime("%d/%m/%Y")
