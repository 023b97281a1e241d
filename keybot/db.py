import functools
import logging
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from .errors import GiveawayError, StorageError

# Load .env reliably both locally and on server
BASE_DIR = Path(__file__).resolve().parents[1]  # project root
ENV_PATH = BASE_DIR / ".env"
load_dotenv(ENV_PATH if ENV_PATH.exists() else None)

log = logging.getLogger(__name__)

def _default_sqlite_url() -> str:
    db_file = BASE_DIR / "beta_keys.sqlite3"
    # SQLAlchemy expects sqlite:///C:/path on Windows and sqlite:////abs/path on Linux/mac
    p = db_file.resolve()
    return f"sqlite:///{p.as_posix()}"

DB_URL = os.getenv("DB_URL", "").strip() or _default_sqlite_url()


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite connections get serialized write transactions."""
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    eng = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # pysqlite opens transactions lazily and breaks SAVEPOINT; take over BEGIN ourselves.
    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    # One writer at a time: claims are serializable against each other.
    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return eng


engine = make_engine(DB_URL)
SessionLocal = sessionmaker(autoflush=False, bind=engine)

class Base(DeclarativeBase):
    pass


def init_db(bind: Engine = engine) -> None:
    from . import models  # noqa: F401  (register tables)
    Base.metadata.create_all(bind=bind)


def now_local() -> datetime:
    # naive local time, same as the rest of the schema
    return datetime.now()


def store_operation(fn):
    """Run ``fn(db, ...)``; roll back on failure and surface driver errors as StorageError."""
    @functools.wraps(fn)
    def wrapper(db, *args, **kwargs):
        try:
            return fn(db, *args, **kwargs)
        except GiveawayError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            log.exception("Storage failure in %s", fn.__name__)
            raise StorageError(str(e)) from e
    return wrapper
