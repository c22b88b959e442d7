"""
Participant identities.

A participant is either an authenticated user (``user_id``) or an anonymous
guest (``guest_id``), never both. Guest ids are minted locally with no server
round-trip: a millisecond timestamp plus random bits keeps concurrent
generations from colliding.
"""
import hashlib
import hmac
import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional

from . import config

_BASE36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def new_guest_id() -> str:
    return f"guest_{_base36(int(time.time() * 1000))}_{secrets.token_hex(6)}"


def is_guest_id(value: str) -> bool:
    parts = (value or "").split("_")
    return len(parts) == 3 and parts[0] == "guest" and all(parts[1:])


@dataclass(frozen=True)
class Identity:
    user_id: Optional[str] = None
    guest_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.guest_id):
            raise ValueError("exactly one of user_id or guest_id must be set")

    @classmethod
    def guest(cls, guest_id: Optional[str] = None) -> "Identity":
        return cls(guest_id=guest_id or new_guest_id())

    @classmethod
    def user(cls, user_id: str) -> "Identity":
        return cls(user_id=user_id)

    @property
    def key(self) -> str:
        return self.user_id or self.guest_id  # type: ignore[return-value]

    @property
    def is_guest(self) -> bool:
        return self.guest_id is not None


class GuestIdentity:
    """Guest identity for one request.

    Restores the guest carried by a verified cookie, otherwise mints a new one
    on the first ``get()``. ``minted`` tells the caller a cookie must be issued.
    """

    def __init__(self, guest_id: Optional[str] = None):
        self._guest_id = guest_id
        self._identity: Optional[Identity] = None

    @property
    def minted(self) -> bool:
        return self._guest_id is None and self._identity is not None

    def get(self) -> Identity:
        if self._identity is None:
            self._identity = Identity.guest(self._guest_id)
        return self._identity


def sign_guest_token(guest_id: str) -> str:
    """Sign a guest id into a "gid.sig" token for the guest_token cookie."""
    sig = hmac.new(config.SESSION_SECRET.encode(), guest_id.encode(), hashlib.sha256).hexdigest()
    return f"{guest_id}.{sig}"


def verify_guest_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        gid, sig = token.rsplit(".", 1)
    except ValueError:
        return None
    expected = hmac.new(config.SESSION_SECRET.encode(), gid.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    if not is_guest_id(gid):
        return None
    return gid
