from sqlmodel import SQLModel, create_engine, Session, select, text

from semantle import models  # noqa: F401
from semantle.init_db import init_db
from semantle.migrations import MIGRATIONS, Migration, apply_migration, run_migrations


def test_migrations_apply_once(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'mig.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    run_migrations(engine)
    run_migrations(engine)
    with Session(engine) as s:
        names = [m.name for m in s.exec(select(Migration)).all()]
        indexes = {row[0] for row in s.execute(text("SELECT name FROM sqlite_master WHERE type='index'"))}
    assert names == [name for name, _ in MIGRATIONS]
    assert "idx_room_guess_word" in indexes
    assert "uq_room_guess_word_idx" in indexes
    assert apply_migration(engine, MIGRATIONS[0][0], MIGRATIONS[0][1]) is False


def test_init_db_creates_tables(tmp_path):
    engine = init_db(f"sqlite:///{tmp_path / 'init.db'}")
    with Session(engine) as s:
        tables = {row[0] for row in s.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))}
    assert {"game_room", "room_player", "room_guess", "dailyword", "migration"} <= tables
