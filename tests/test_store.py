import asyncio
import time

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, create_engine

from semantle import crud
from semantle.errors import CollaboratorError
from semantle.store import RoomStore


def setup_db(tmp_path):
    db = tmp_path / 'store.db'
    engine = create_engine(f'sqlite:///{db}', connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    crud.engine = engine
    return engine


def test_slow_query_does_not_stall_event_loop(tmp_path, monkeypatch):
    store = RoomStore(setup_db(tmp_path))

    def slow_list_guesses(session, room_id):
        time.sleep(0.3)
        return []

    monkeypatch.setattr(crud, "list_guesses", slow_list_guesses)

    async def run():
        gaps = []
        done = asyncio.Event()

        async def ticker():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        tick = asyncio.create_task(ticker())
        assert await store.list_guesses("room-1") == []
        done.set()
        await tick
        return gaps

    gaps = asyncio.run(run())
    assert len(gaps) > 5
    assert max(gaps) < 0.2


def test_database_errors_become_collaborator_errors(tmp_path, monkeypatch):
    store = RoomStore(setup_db(tmp_path))

    def broken(session, room_id):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(crud, "count_active_players", broken)
    with pytest.raises(CollaboratorError):
        asyncio.run(store.count_active_players("room-1"))
