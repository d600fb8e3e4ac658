from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if _is_sqlite(settings.database_url):
        connect_args["check_same_thread"] = False
    else:
        # Recompute reads must not see another request's half-applied rows.
        engine_kwargs["isolation_level"] = "READ COMMITTED"
        engine_kwargs["pool_pre_ping"] = True

    eng = create_engine(
        settings.database_url, connect_args=connect_args, **engine_kwargs
    )
    if _is_sqlite(settings.database_url):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """
    Commit everything done inside the block at once, or nothing.

    Ledger mutations and the summary recomputes they trigger run in the same
    block so a failed recompute also discards the row changes.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
