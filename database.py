from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def build_engine(
    database_url: str, busy_timeout_ms: int = 5000, poolclass: Optional[type] = None
) -> Engine:
    """Engine shared by the API, background materialization runs and migrations.

    On SQLite the materialization runs for different users write from
    separate threads, so connections wait on the write lock instead of
    failing fast, and foreign keys are enforced so that deleting the source
    of a carry-forward nulls the reference on its successor.
    """
    is_sqlite = database_url.startswith("sqlite")
    kwargs: dict[str, object] = {}
    if is_sqlite:
        kwargs["connect_args"] = {"check_same_thread": False}
    if poolclass is not None:
        kwargs["poolclass"] = poolclass

    eng = create_engine(database_url, **kwargs)
    if is_sqlite:

        @event.listens_for(eng, "connect")
        def _on_connect(dbapi_conn, _record):
            _enable_sqlite_pragmas(dbapi_conn, busy_timeout_ms)

    return eng


def _enable_sqlite_pragmas(dbapi_conn, busy_timeout_ms: int):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
    cursor.close()


def _create_engine() -> Engine:
    settings = get_settings()
    return build_engine(settings.database_url, settings.busy_timeout_ms)


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    # Used by scheduler jobs, which run outside any request.
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
