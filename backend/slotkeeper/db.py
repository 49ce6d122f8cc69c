# backend/slotkeeper/db.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import settings


class Base(DeclarativeBase):
    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory(url: str) -> bool:
    return ":memory:" in url or url in ("sqlite://", "sqlite:///")


def _read_only_url(url: str) -> str:
    # sqlite URI form: mode=ro refuses writes and raises on a missing file instead of creating it
    u = make_url(url)
    path = u.database or ""
    if path.startswith("file:"):
        path = path[len("file:"):].split("?", 1)[0]
    query = dict(u.query)
    query.update({"mode": "ro", "uri": "true"})
    return u.set(database=f"file:{path}", query=query).render_as_string(hide_password=False)


def make_engine(
    url: str | None = None,
    *,
    busy_timeout_ms: int | None = None,
    begin_immediate: bool | None = None,
    read_only: bool = False,
) -> Engine:
    """
    Build an engine for the allocation store, or with read_only=True a handle
    on the workflow engine's database that never changes it.

    SQLite:
      - busy_timeout so concurrent writers wait instead of failing fast
      - WAL so readers keep working while one writer holds the lock
      - BEGIN IMMEDIATE so a transaction that reads before it writes can't
        deadlock on the lock upgrade

    read_only skips the WAL and foreign_keys pragmas, opens the file with
    mode=ro and always uses a plain BEGIN.
    """
    url = url or settings.database_url
    if not _is_sqlite(url):
        return create_engine(url, pool_pre_ping=True, future=True)

    timeout_ms = int(busy_timeout_ms if busy_timeout_ms is not None else settings.sqlite_busy_timeout_ms)
    immediate = settings.sqlite_begin_immediate if begin_immediate is None else bool(begin_immediate)
    if read_only:
        immediate = False
        if not _is_memory(url):
            url = _read_only_url(url)

    engine = create_engine(
        url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": timeout_ms / 1000.0},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record) -> None:
        # hand transaction control to SQLAlchemy so the "begin" hook below decides
        dbapi_conn.isolation_level = None
        cur = dbapi_conn.cursor()
        try:
            cur.execute(f"PRAGMA busy_timeout = {timeout_ms}")
            if not read_only:
                if not _is_memory(url):
                    cur.execute("PRAGMA journal_mode = WAL")
                cur.execute("PRAGMA foreign_keys = ON")
        finally:
            cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE" if immediate else "BEGIN")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def init_db(engine: Engine) -> None:
    """Create every table the allocator owns. Alembic is the prod path; this is for tests / first boot."""
    from . import models  # noqa: F401  (register mappers)

    Base.metadata.create_all(engine)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    One unit of work: commit on success, rollback on any exception.

    A failed statement leaves the transaction aborted (Postgres) or holding
    the write lock (SQLite), so the rollback has to happen before the
    session goes back to the pool.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
