"""SQLite engine setup and forward-only schema migration."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from sqlalchemy import create_engine, event, inspect, select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session

from .exceptions import SchemaVersionError
from .schema import CURRENT_SCHEMA_VERSION, Base, MetaTable

logger = logging.getLogger(__name__)


def _db_url(db_path: str | Path) -> str:
    if str(db_path) == ":memory:":
        return "sqlite:///:memory:"
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path.resolve()}"


def _apply_sqlite_pragmas(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()


def create_sqlite_engine(db_path: str | Path) -> Engine:
    engine = create_engine(_db_url(db_path))
    _apply_sqlite_pragmas(engine)
    return engine


def get_schema_version(conn: Connection) -> int:
    if not inspect(conn).has_table(MetaTable.__tablename__):
        return 0
    value = conn.execute(
        select(MetaTable.value).where(MetaTable.key == "schema_version")
    ).scalar_one_or_none()
    try:
        return int(value) if value is not None else 0
    except ValueError:
        return 0


def _set_schema_version(conn: Connection, version: int) -> None:
    stmt = insert(MetaTable.__table__).values(key="schema_version", value=str(version))
    conn.execute(
        stmt.on_conflict_do_update(
            index_elements=["key"], set_={"value": stmt.excluded.value}
        )
    )


def _create_base_schema(conn: Connection) -> None:
    Base.metadata.create_all(conn)


# version -> migration that brings the previous version up to it
MIGRATIONS: dict[int, Callable[[Connection], None]] = {
    1: _create_base_schema,
}


def migrate_schema(engine: Engine) -> int:
    """Bring the database up to CURRENT_SCHEMA_VERSION.

    Refuses to touch a database stamped with a newer version than this code
    knows about. Returns the resulting schema version.
    """
    with engine.begin() as conn:
        current = get_schema_version(conn)
        if current > CURRENT_SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Database schema version {current} is newer than app "
                f"version {CURRENT_SCHEMA_VERSION}"
            )

        if current == 0:
            _create_base_schema(conn)
            _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
            logger.debug("Created schema version %d", CURRENT_SCHEMA_VERSION)
            return CURRENT_SCHEMA_VERSION

        for version in range(current + 1, CURRENT_SCHEMA_VERSION + 1):
            migration = MIGRATIONS.get(version)
            if migration is None:
                raise SchemaVersionError(f"No migration for schema version {version}")
            logger.info("Migrating database schema to version %d", version)
            migration(conn)
            _set_schema_version(conn, version)

    return CURRENT_SCHEMA_VERSION


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Commit on success, roll back and re-raise on any exception."""
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
