# core/database.py
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from src.core.config import settings

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def build_engine(url: str) -> Engine:
    """Create an engine; SQLite connections get foreign keys switched on."""
    if not url.startswith("sqlite"):
        return create_engine(url)

    engine = create_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


engine = build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def alembic_config() -> Config:
    """Alembic config pointing at the project's migrations, wherever cwd is."""
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    # Keep the application's logging setup untouched.
    cfg.attributes["configure_logger"] = False
    return cfg


def init_db(bind: Engine | None = None, revision: str = "head") -> None:
    """Upgrade the schema to ``revision`` through the Alembic migrations."""
    cfg = alembic_config()
    with (bind or engine).begin() as connection:
        cfg.attributes["connection"] = connection
        command.upgrade(cfg, revision)
