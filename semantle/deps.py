from typing import Optional

from fastapi import Request, Response
from sqlmodel import Session

from . import config, crud
from .guest import GuestIdentity, Identity, sign_guest_token, verify_guest_token
from .logging_utils import identity_ctx
from .realtime import PresenceHub
from .registry import SessionRegistry
from .similarity import SimilarityGateway
from .store import RoomStore

GUEST_COOKIE = "guest_token"

# installed at startup (or by tests)
registry: Optional[SessionRegistry] = None


def get_session():
    # simple dependency that yields a session
    with Session(crud.engine) as session:
        yield session


def build_registry(gateway: Optional[SimilarityGateway] = None, **kwargs) -> SessionRegistry:
    return SessionRegistry(RoomStore(), gateway or SimilarityGateway(), PresenceHub(), **kwargs)


def get_registry() -> SessionRegistry:
    global registry
    if registry is None:
        registry = build_registry()
    return registry


def identity_from_cookie(token: Optional[str]) -> Optional[Identity]:
    gid = verify_guest_token(token)
    return Identity.guest(gid) if gid else None


async def get_identity(request: Request, response: Response) -> Identity:
    """Guest identity from the signed cookie; a new guest is issued on first contact."""
    holder = GuestIdentity(verify_guest_token(request.cookies.get(GUEST_COOKIE)))
    identity = holder.get()
    if holder.minted:
        response.set_cookie(
            GUEST_COOKIE,
            sign_guest_token(identity.guest_id),
            httponly=True,
            secure=config.COOKIE_SECURE,
            samesite="lax",
        )
    identity_ctx.set(identity.key)
    return identity
