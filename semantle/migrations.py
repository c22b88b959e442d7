"""
Database migrations for the room service.
Handles schema changes and index creation that ``create_all`` does not cover.
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import logging

from . import config

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


def get_engine(url: Optional[str] = None):
    db_path = url or config.DATABASE_URL
    connect_args = {"check_same_thread": False} if db_path.startswith("sqlite") else {}
    return create_engine(db_path, echo=False, connect_args=connect_args)


def ensure_migration_table(engine):
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(select(Migration).where(Migration.name == migration_name)).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False when it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.info("migration_skipped", extra={"reason": migration_name})
        return False

    logger.info("migration_applying", extra={"reason": migration_name})
    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("migration_failed", extra={"reason": migration_name, "error": str(e)})
            raise
    return True


MIGRATIONS = [
    (
        "001_room_indexes",
        """
        -- active room lookups by code
        CREATE INDEX IF NOT EXISTS idx_room_code_active ON game_room(room_code, is_active);
        CREATE INDEX IF NOT EXISTS idx_room_player_active ON room_player(room_id, is_active)
        """,
    ),
    (
        "002_guess_indexes",
        """
        -- duplicate detection and ordered history
        CREATE INDEX IF NOT EXISTS idx_room_guess_word ON room_guess(room_id, normalized_word);
        CREATE INDEX IF NOT EXISTS idx_room_guess_correct ON room_guess(room_id, is_correct)
        """,
    ),
    (
        "003_guess_word_unique",
        """
        -- one row per normalized word in a room, for tables created before the constraint
        CREATE UNIQUE INDEX IF NOT EXISTS uq_room_guess_word_idx ON room_guess(room_id, normalized_word)
        """,
    ),
]


def run_migrations(engine=None):
    """Run all pending migrations"""
    engine = engine or get_engine()
    for name, sql in MIGRATIONS:
        apply_migration(engine, name, sql)
    logger.info("migrations_complete")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_migrations()
