from sqlmodel import create_engine, SQLModel

from . import config, models  # noqa: F401  (registers the tables)
from .logging_utils import get_logger
from .migrations import run_migrations

logger = get_logger("semantle.init_db")


def init_db(path=None):
    path = path or config.DATABASE_URL
    connect_args = {"check_same_thread": False} if path.startswith("sqlite") else {}
    engine = create_engine(path, connect_args=connect_args)
    SQLModel.metadata.create_all(engine)
    run_migrations(engine)
    logger.info("db_initialized", extra={"path": path})
    return engine


if __name__ == '__main__':
    init_db()
