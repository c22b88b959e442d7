import json

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, create_engine, Session
from starlette.websockets import WebSocketDisconnect

from semantle import crud, deps, models
from semantle.guest import new_guest_id, sign_guest_token, verify_guest_token
from semantle.main import app, check_rate_limit
from semantle.realtime import PresenceHub
from semantle.registry import SessionRegistry
from semantle.similarity import SimilarityGateway
from semantle.store import RoomStore
from semantle.words import today_str

SCORES = {"שלום": 1.0, "בית": 0.31, "ספר": 0.27}
PUBLISHED = []


def _fake_service(request):
    if request.url.path == "/admin/set-daily-word":
        PUBLISHED.append((request.url.params["date"], request.url.params["word"]))
        return httpx.Response(200, json={"ok": True})
    if request.url.path == "/closest":
        rank = request.url.params["rank"]
        return httpx.Response(200, json={"similarity": {"1": 0.8, "990": 0.25, "999": 0.2}[rank]})
    guess = json.loads(request.content)["guess"]
    if guess not in SCORES:
        return httpx.Response(400, json={"error": "unknown word"})
    return httpx.Response(200, json={"similarity": SCORES[guess]})


def setup_app(tmp_path):
    db = tmp_path / 'api_rooms.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    with Session(engine) as s:
        crud.set_daily_word(s, today_str(), "שלום")
    gateway = SimilarityGateway(
        "http://sim.test/similarity",
        "http://rank.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(_fake_service)),
    )
    deps.registry = SessionRegistry(RoomStore(engine), gateway, PresenceHub())
    return engine


def guest_headers():
    return {"Cookie": f"{deps.GUEST_COOKIE}={sign_guest_token(new_guest_id())}"}


def test_two_players_share_a_room(tmp_path):
    setup_app(tmp_path)
    a, b = guest_headers(), guest_headers()
    with TestClient(app) as client:
        r = client.post('/api/rooms', json={"nickname": "Dana"}, headers=a)
        assert r.status_code == 201
        body = r.json()
        code = body["room_code"]
        assert body["state"]["phase"] == "active"
        # the target word is not sent while the game is on
        assert body["state"]["current_word"] is None

        r = client.post('/api/rooms/join', json={"room_code": code.lower(), "nickname": "Noa"}, headers=b)
        assert r.status_code == 200
        assert r.json()["state"]["room"]["room_code"] == code

        r = client.post('/api/rooms/guess', json={"word": "בית"}, headers=a)
        assert r.status_code == 200
        assert [g["guess_word"] for g in r.json()["state"]["guesses"]] == ["בית"]

        r = client.post('/api/rooms/guess', json={"word": "בית"}, headers=b)
        assert r.status_code == 409
        assert r.json()["code"] == "duplicate_guess"
        assert "Dana" in r.json()["detail"]

        r = client.get('/api/rooms/state', headers=b)
        assert [g["guess_word"] for g in r.json()["state"]["guesses"]] == ["בית"]
        assert sorted(p["nickname"] for p in r.json()["state"]["players"]) == ["Dana", "Noa"]

        r = client.post('/api/rooms/guess', json={"word": "שלום"}, headers=a)
        state = r.json()["state"]
        assert state["is_complete"] and state["phase"] == "complete"
        assert state["current_word"] == "שלום"

        r = client.post('/api/rooms/guess', json={"word": "ספר"}, headers=b)
        assert r.status_code == 409
        assert r.json()["code"] == "room_complete"


def test_guest_cookie_is_issued_once(tmp_path):
    setup_app(tmp_path)
    with TestClient(app) as client:
        r = client.get('/api/rooms/state')
        assert r.status_code == 200
        token = r.cookies.get(deps.GUEST_COOKIE)
        assert token and verify_guest_token(token)
        assert r.json()["state"]["phase"] == "no_room"
        assert r.headers.get("X-Request-ID")

        r2 = client.get('/api/rooms/state')
        assert deps.GUEST_COOKIE not in r2.cookies
        assert len(deps.registry) == 1


def test_error_responses(tmp_path):
    setup_app(tmp_path)
    h = guest_headers()
    with TestClient(app) as client:
        r = client.post('/api/rooms/join', json={"room_code": "NOPE99", "nickname": "Dana"}, headers=h)
        assert r.status_code == 404
        assert r.json()["code"] == "room_not_found"

        r = client.post('/api/rooms/guess', json={"word": "בית"}, headers=h)
        assert r.status_code == 409
        assert r.json()["code"] == "no_active_room"

        r = client.post('/api/rooms', json={"nickname": " "}, headers=h)
        assert r.status_code == 400
        assert r.json()["code"] == "validation_error"

        r = client.post('/api/rooms', json={"nickname": "Dana", "word_date": "yesterday"}, headers=h)
        assert r.status_code == 422

        r = client.post('/api/rooms', json={"nickname": "Dana", "word_date": "2099-12-31"}, headers=h)
        assert r.status_code == 404
        assert r.json()["code"] == "word_not_found"

        client.post('/api/rooms', json={"nickname": "Dana"}, headers=h)
        r = client.post('/api/rooms/guess', json={"word": "קקקק"}, headers=h)
        assert r.status_code == 400
        assert r.json()["code"] == "out_of_vocabulary"


def test_leave_closes_empty_room(tmp_path):
    engine = setup_app(tmp_path)
    h = guest_headers()
    with TestClient(app) as client:
        body = client.post('/api/rooms', json={"nickname": "Dana"}, headers=h).json()
        room_id = body["state"]["room"]["id"]
        r = client.post('/api/rooms/leave', headers=h)
        assert r.status_code == 200
        assert r.json()["state"]["phase"] == "no_room"
        # leaving twice is harmless
        assert client.post('/api/rooms/leave', headers=h).status_code == 200
    with Session(engine) as s:
        assert not s.get(models.Room, room_id).is_active


def test_reset_clears_session(tmp_path):
    setup_app(tmp_path)
    h = guest_headers()
    with TestClient(app) as client:
        client.post('/api/rooms', json={"nickname": "Dana"}, headers=h)
        r = client.post('/api/rooms/reset', headers=h)
        assert r.json()["state"]["room"] is None
        assert r.json()["is_loading"] is False


def test_reference_scores(tmp_path):
    setup_app(tmp_path)
    with TestClient(app) as client:
        r = client.get('/api/reference_scores', params={"date": "2024-03-07"})
        assert r.status_code == 200
        assert r.json() == {"date": "2024-03-07", "scores": {"rank1": 0.8, "rank990": 0.25, "rank999": 0.2}}
        r = client.get('/api/reference_scores', params={"date": "07/03/2024"})
        assert r.status_code == 400


def test_admin_daily_word(tmp_path, monkeypatch):
    engine = setup_app(tmp_path)
    with TestClient(app) as client:
        payload = {"date": "2099-02-02", "word": "ספר"}
        monkeypatch.setattr(crud.config, "ADMIN_PASSWORD_HASH", "")
        assert client.post('/api/admin/daily_word', json=payload, auth=("admin", "secret")).status_code == 404

        monkeypatch.setattr(crud.config, "ADMIN_PASSWORD_HASH", crud.pwd.hash("secret"))
        monkeypatch.setattr(crud.config, "RANKING_ADMIN_PASSWORD", "")
        assert client.post('/api/admin/daily_word', json=payload, auth=("admin", "wrong")).status_code == 401
        assert client.post('/api/admin/daily_word', json=payload).status_code == 401

        r = client.post('/api/admin/daily_word', json=payload, auth=("admin", "secret"))
        assert r.status_code == 201
        assert r.json()["word"] == "ספר" and r.json()["published"] is False
    with Session(engine) as s:
        assert crud.get_active_word_for_date(s, "2099-02-02") == "ספר"


def test_admin_daily_word_is_published_to_ranking_service(tmp_path, monkeypatch):
    setup_app(tmp_path)
    PUBLISHED.clear()
    monkeypatch.setattr(crud.config, "ADMIN_PASSWORD_HASH", crud.pwd.hash("secret"))
    monkeypatch.setattr(crud.config, "RANKING_ADMIN_PASSWORD", "pw")
    with TestClient(app) as client:
        r = client.post('/api/admin/daily_word', json={"date": "2099-03-03", "word": "בית"}, auth=("admin", "secret"))
        assert r.status_code == 201
        assert r.json()["published"] is True

        r = client.post('/api/admin/daily_word', json={"date": "2099-03-04", "word": "ספר", "publish": False},
                        auth=("admin", "secret"))
        assert r.json()["published"] is False
    assert PUBLISHED == [("2099-03-03", "בית")]


def test_guess_rate_limited(tmp_path):
    setup_app(tmp_path)
    h = guest_headers()
    with TestClient(app) as client:
        codes = [client.post('/api/rooms/guess', json={"word": "בית"}, headers=h).status_code for _ in range(31)]
    assert set(codes[:30]) == {409}
    assert codes[30] == 429


def test_check_rate_limit_window(monkeypatch):
    class Req:
        class client:
            host = "1.2.3.4"

    now = [1000.0]
    monkeypatch.setattr("semantle.main.time.time", lambda: now[0])
    assert all(check_rate_limit(Req, max_requests=2, window_seconds=10) for _ in range(2))
    assert not check_rate_limit(Req, max_requests=2, window_seconds=10)
    now[0] += 11
    assert check_rate_limit(Req, max_requests=2, window_seconds=10)


def _receive_until(ws, predicate, limit=20):
    for _ in range(limit):
        msg = ws.receive_json()
        if predicate(msg):
            return msg
    raise AssertionError("expected websocket message not received")


def test_websocket_pushes_state(tmp_path):
    setup_app(tmp_path)
    with TestClient(app) as client:
        client.post('/api/rooms', json={"nickname": "Dana"})
        with client.websocket_connect('/ws/rooms') as ws:
            first = ws.receive_json()
            assert first["type"] == "state"
            assert first["state"]["phase"] == "active"

            client.post('/api/rooms/guess', json={"word": "בית"})
            msg = _receive_until(ws, lambda m: m["type"] == "state" and m["state"]["guesses"])
            assert msg["state"]["guesses"][0]["guess_word"] == "בית"

            ws.send_text("ping")
            _receive_until(ws, lambda m: m["type"] == "pong")


def test_websocket_requires_guest_cookie(tmp_path):
    setup_app(tmp_path)
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect('/ws/rooms') as ws:
                ws.receive_json()


def test_websocket_sender_finishes_before_disconnect(tmp_path, monkeypatch):
    from semantle import main

    setup_app(tmp_path)
    registry = deps.registry
    pump_done = []
    seen_at_disconnect = []
    real_pump, real_disconnect = main._pump, registry.disconnect

    async def tracked_pump(ws, queue):
        try:
            await real_pump(ws, queue)
        finally:
            pump_done.append(True)

    async def tracked_disconnect(key):
        seen_at_disconnect.append(list(pump_done))
        await real_disconnect(key)

    monkeypatch.setattr(main, "_pump", tracked_pump)
    monkeypatch.setattr(registry, "disconnect", tracked_disconnect)
    with TestClient(app) as client:
        client.post('/api/rooms', json={"nickname": "Dana"})
        with client.websocket_connect('/ws/rooms') as ws:
            assert ws.receive_json()["type"] == "state"
    assert seen_at_disconnect == [[True]]
