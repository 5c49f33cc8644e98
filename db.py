from datetime import datetime, timezone
from sqlmodel import create_engine, Session
from sqlmodel import SQLModel
import threading
import os

DB_FILE = os.path.join(os.path.dirname(__file__), "commute.db")
_default_url = f"sqlite:///{DB_FILE}"
DATABASE_URL = os.environ.get("DATABASE_URL", _default_url)

# SQLite needs check_same_thread=False; Postgres does not
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

# Application-level locks keyed by a simple name (e.g., matching:2025-06-18)
locks = {}
locks_lock = threading.Lock()


def get_lock(name: str):
    with locks_lock:
        if name not in locks:
            locks[name] = threading.Lock()
        return locks[name]


engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def init_db():
    # table classes must be registered on the metadata before create_all
    import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session():
    return Session(engine)


def utc_now() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so all stored times are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
