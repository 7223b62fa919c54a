# carequeue/storage/db.py
from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from sqlmodel import SQLModel, Session, create_engine

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.queue_record  # noqa: F401
from storage import migrations


_engine = None


def create_queue_engine(path: Optional[Path] = None):
    """Build an engine for the queue database at ``path`` and bootstrap its schema."""

    target = Path(path or DB_PATH)
    target.parent.mkdir(parents=True, exist_ok=True)
    # timer threads and the caller's thread share the engine
    engine = create_engine(
        f"sqlite:///{target.as_posix()}",
        echo=False,
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)
    return engine


def init_db():
    global _engine
    if _engine is None:
        _engine = create_queue_engine(DB_PATH)
    return _engine


def get_engine():
    return init_db()


def get_session() -> Session:
    return Session(get_engine())


def session_factory_for(engine) -> Callable[[], Session]:
    def factory() -> Session:
        return Session(engine)

    return factory


__all__ = ["create_queue_engine", "get_engine", "get_session", "init_db", "session_factory_for"]
