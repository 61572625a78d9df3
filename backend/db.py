from __future__ import annotations

import logging
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

log = logging.getLogger("db")

Base = declarative_base()


def make_engine(db_url: str) -> Engine:
    return create_engine(
        db_url,
        connect_args={"check_same_thread": False} if db_url.startswith("sqlite") else {},
        pool_pre_ping=True,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(session_factory: sessionmaker):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    # models must be imported so their tables are registered on Base
    import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    ensure_sqlite_schema(engine)


# --------- SQLite schema self-heal (idempotent) ---------
def _is_sqlite(engine: Engine) -> bool:
    return engine.url.get_backend_name() == "sqlite"


def _table_exists(conn, table_name: str) -> bool:
    row = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' AND name=:t"),
        {"t": table_name},
    ).fetchone()
    return row is not None


def _sqlite_columns(conn, table_name: str) -> set[str]:
    # PRAGMA table_info rows are (cid, name, type, notnull, dflt_value, pk)
    rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
    return {str(r[1]) for r in rows}


# (table, column, DDL) for columns added after the first release
MIGRATIONS: list[tuple[str, str, str]] = [
    ("device_state", "updated_at", "ALTER TABLE device_state ADD COLUMN updated_at DATETIME"),
    ("irrigation_runs", "outcome", "ALTER TABLE irrigation_runs ADD COLUMN outcome TEXT DEFAULT 'started'"),
]


def ensure_sqlite_schema(engine: Engine) -> None:
    """
    create_all() creates missing tables but never adds columns to an existing one.
    This adds the columns listed in MIGRATIONS via ALTER TABLE (idempotent).
    """
    if not _is_sqlite(engine):
        return

    with engine.begin() as conn:
        for table, col, sql in MIGRATIONS:
            if not _table_exists(conn, table):
                log.info("DB migrate: %s table not present yet (will be created).", table)
                continue
            if col not in _sqlite_columns(conn, table):
                conn.execute(text(sql))
                log.info("DB migrate: added %s.%s", table, col)

    log.info("DB migrate: schema OK")
