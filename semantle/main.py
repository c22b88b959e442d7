from fastapi import FastAPI, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlmodel import SQLModel, Session, create_engine
from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from starlette.middleware.base import BaseHTTPMiddleware
from anyio import from_thread

import asyncio
import contextlib
import logging
import time
import uuid

from . import config, crud, deps, models  # noqa: F401
from .deps import GUEST_COOKIE, get_identity, get_registry, get_session, identity_from_cookie
from .errors import RoomError, ValidationError
from .guest import Identity
from .logging_utils import setup_logging, get_logger, request_id_ctx, identity_ctx
from .migrations import run_migrations
from .registry import SessionRegistry
from .words import is_valid_date, today_str


# Rate limiting - store last request times per IP
_RATE_LIMIT_STORE: dict = {}


def check_rate_limit(request: Request, max_requests: int = 30, window_seconds: int = 60) -> bool:
    """
    Simple in-memory rate limiting. Returns True if request is allowed, False if rate limited.
    Default: 30 requests per 60 seconds per IP address.
    """
    client_ip = request.client.host if request.client else "unknown"
    current_time = time.time()

    cutoff_time = current_time - window_seconds
    _RATE_LIMIT_STORE[client_ip] = [
        req_time for req_time in _RATE_LIMIT_STORE.get(client_ip, [])
        if req_time > cutoff_time
    ]
    if len(_RATE_LIMIT_STORE[client_ip]) >= max_requests:
        return False
    _RATE_LIMIT_STORE[client_ip].append(current_time)
    return True


def rate_limit_dependency(max_requests: int = 30, window_seconds: int = 60):
    """Create a dependency function that raises HTTP 429 if rate limited"""
    def dependency(request: Request):
        if not check_rate_limit(request, max_requests, window_seconds):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds."
            )
    return dependency


setup_logging(logging.INFO)
logger = get_logger("semantle")
app = FastAPI(title="Semantle Rooms")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('Cross-Origin-Opener-Policy', 'same-origin')
        return response


app.add_middleware(SecurityHeadersMiddleware)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(rid)
        start = time.time()
        client = request.client.host if request.client else "-"
        response = None
        try:
            response = await call_next(request)
            return response
        except Exception:
            logger.exception("request_error", extra={"path": str(request.url), "method": request.method})
            raise
        finally:
            duration_ms = int((time.time() - start) * 1000)
            status = getattr(response, "status_code", 500)
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status,
                    "duration_ms": duration_ms,
                    "client": client,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = rid
            request_id_ctx.reset(token)


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Accept", "Content-Type", "Authorization", "X-Requested-With", "X-Request-ID"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("validation_error", extra={"method": request.method, "path": request.url.path, "errors": exc.errors()})
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder({"detail": exc.errors(), "message": "Input validation failed"}),
    )


@app.exception_handler(RoomError)
async def room_error_handler(request: Request, exc: RoomError):
    logger.info("room_error", extra={"method": request.method, "path": request.url.path, "status": exc.status_code, "error": exc.message})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.get("/health", include_in_schema=False)
def health():
    return JSONResponse({"status": "ok"})


@app.get("/api/cache/stats", include_in_schema=False)
def cache_stats():
    from .cache import get_cache
    return JSONResponse({"cache_stats": get_cache().get_stats(), "status": "ok"})


@app.on_event("startup")
def on_startup():
    if crud.engine is None:
        db_path = config.DATABASE_URL
        connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
        if not db_path.startswith("sqlite"):
            engine = create_engine(
                db_path,
                echo=False,
                connect_args=connect_args,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=1800,
            )
        else:
            engine = create_engine(db_path, echo=False, connect_args=connect_args)
        SQLModel.metadata.create_all(engine)
        try:
            run_migrations(engine)
        except Exception as e:
            logger.warning("migrations_failed", extra={"error": str(e)})
        crud.engine = engine
    get_registry()
    logger.info("startup_complete", extra={"timeout_s": config.INACTIVITY_TIMEOUT_SECONDS})


@app.on_event("shutdown")
async def on_shutdown():
    registry = deps.registry
    if registry is None:
        return
    await registry.close_all()
    await registry.gateway.aclose()
    deps.registry = None


# ---- rooms ----

class CreateRoomRequest(BaseModel):
    nickname: str = Field(..., max_length=100)
    word_date: Optional[str] = None

    @field_validator("word_date")
    @classmethod
    def validate_date(cls, v):
        if v is not None and not is_valid_date(v):
            raise ValueError("Invalid date format. Use YYYY-MM-DD")
        return v


class JoinRoomRequest(BaseModel):
    room_code: str = Field(..., max_length=32)
    nickname: str = Field(..., max_length=100)


class GuessRequest(BaseModel):
    word: str = Field(..., max_length=64)


class DailyWordRequest(BaseModel):
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")
    word: str = Field(..., min_length=1, max_length=64)
    hints: Optional[List[str]] = None
    publish: bool = True


def _payload(ctl, **extra) -> dict:
    body = dict(ctl.snapshot())
    body["notice"] = ctl.last_notice
    body.update(extra)
    return jsonable_encoder(body)


@app.post("/api/rooms", status_code=201)
async def create_room(
    body: CreateRoomRequest,
    identity: Identity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_registry),
):
    ctl = registry.get_or_create(identity)
    code = await ctl.create_room(body.nickname, body.word_date)
    return _payload(ctl, room_code=code)


@app.post("/api/rooms/join")
async def join_room(
    body: JoinRoomRequest,
    identity: Identity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_registry),
):
    ctl = registry.get_or_create(identity)
    await ctl.join_room(body.room_code, body.nickname)
    return _payload(ctl)


@app.post("/api/rooms/guess", dependencies=[Depends(rate_limit_dependency(30, 60))])
async def make_guess(
    body: GuessRequest,
    identity: Identity = Depends(get_identity),
    registry: SessionRegistry = Depends(get_registry),
):
    ctl = registry.get_or_create(identity)
    await ctl.make_guess(body.word)
    return _payload(ctl)


@app.post("/api/rooms/leave")
async def leave_room(identity: Identity = Depends(get_identity), registry: SessionRegistry = Depends(get_registry)):
    ctl = registry.get_or_create(identity)
    await ctl.leave_room()
    return _payload(ctl)


@app.post("/api/rooms/reset")
async def reset_session(identity: Identity = Depends(get_identity), registry: SessionRegistry = Depends(get_registry)):
    ctl = registry.get_or_create(identity)
    await ctl.reset_session()
    return _payload(ctl)


@app.get("/api/rooms/state")
async def room_state(identity: Identity = Depends(get_identity), registry: SessionRegistry = Depends(get_registry)):
    ctl = registry.get_or_create(identity)
    return _payload(ctl)


@app.get("/api/reference_scores")
async def reference_scores(date: str = "", registry: SessionRegistry = Depends(get_registry)):
    date = date or today_str()
    if not is_valid_date(date):
        raise ValidationError("Invalid date format. Use YYYY-MM-DD")
    scores = await registry.gateway.reference_scores(date)
    return {"date": date, "scores": scores}


# ---- admin ----

_basic_auth = HTTPBasic()


def require_admin(credentials: HTTPBasicCredentials = Depends(_basic_auth)) -> str:
    if not config.ADMIN_PASSWORD_HASH:
        raise HTTPException(status_code=404, detail="not found")
    if not crud.verify_admin(credentials.username, credentials.password):
        logger.warning("admin_auth_failed", extra={"identity": credentials.username})
        raise HTTPException(status_code=401, detail="invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


@app.post("/api/admin/daily_word", status_code=201)
def set_daily_word(
    body: DailyWordRequest,
    admin: str = Depends(require_admin),
    session: Session = Depends(get_session),
    registry: SessionRegistry = Depends(get_registry),
):
    dw = crud.set_daily_word(session, body.date, body.word, body.hints)
    logger.info("daily_word_set", extra={"word_date": body.date, "identity": admin})
    published = False
    if body.publish and config.RANKING_ADMIN_PASSWORD:
        try:
            # the gateway client lives on the event loop, not this worker thread
            from_thread.run(registry.gateway.publish_daily_word, body.date, dw.word)
            published = True
        except RoomError as exc:
            logger.warning("daily_word_publish_failed", extra={"word_date": body.date, "error": exc.message})
    return {"id": dw.id, "date": dw.date, "word": dw.word, "published": published}


# ---- websocket ----

async def _pump(ws: WebSocket, queue: "asyncio.Queue[dict]") -> None:
    while True:
        event = await queue.get()
        await ws.send_json(jsonable_encoder(event))


@app.websocket("/ws/rooms")
async def rooms_websocket(ws: WebSocket):
    identity = identity_from_cookie(ws.cookies.get(GUEST_COOKIE))
    if identity is None:
        await ws.close(code=4401)
        return
    await ws.accept()
    ident_token = identity_ctx.set(identity.key)
    registry = get_registry()
    ctl = registry.get_or_create(identity)

    queue: "asyncio.Queue[dict]" = asyncio.Queue()
    remove = ctl.add_listener(lambda kind, payload: queue.put_nowait({"type": kind, **payload}))
    queue.put_nowait({"type": "state", **ctl.snapshot()})
    await registry.reconnect(identity.key)
    sender = asyncio.create_task(_pump(ws, queue))
    logger.info("ws_connected", extra={"room_id": ctl.active_room_id})
    try:
        while True:
            msg = await ws.receive_text()
            if msg == "ping":
                queue.put_nowait({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        remove()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await sender
        await registry.disconnect(identity.key)
        identity_ctx.reset(ident_token)
