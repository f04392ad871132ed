# telemetry_relay/db.py
"""
SQLAlchemy plumbing shared by the durable queue and the idempotency ledger.

Both stores are single-file SQLite databases. Each owns its own engine and
tables; they share only the declarative base and the engine factory.
"""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, Table, create_engine, event
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

__all__: list[str] = ['Base', 'create_sqlite_engine']

logger: logging.Logger = logging.getLogger(__name__)

IN_MEMORY: str = ':memory:'


class Base(DeclarativeBase):
    pass


def _enable_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    # WAL keeps readers unblocked while the flush loop writes
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA journal_mode=WAL')
    cursor.execute('PRAGMA synchronous=NORMAL')
    cursor.close()


def create_sqlite_engine(database_path: Path | str, *tables: Table) -> Engine:
    """
    Create an engine for a SQLite file and create the given tables.

    Args:
        database_path: Path to the database file, or ':memory:' for a private
            in-memory database (tests).
        *tables: Tables to create if missing. Defaults to every mapped table.

    Returns:
        Engine usable from multiple threads.

    Raises:
        OSError: If the parent directory cannot be created.
        sqlalchemy.exc.SQLAlchemyError: If the database cannot be opened.
    """
    if str(database_path) == IN_MEMORY:
        # StaticPool so every session sees the same in-memory database
        engine: Engine = create_engine(
            'sqlite://',
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    else:
        path = Path(database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f'sqlite:///{path}',
            connect_args={'check_same_thread': False},
        )
        event.listen(engine, 'connect', _enable_sqlite_pragmas)

    Base.metadata.create_all(engine, tables=list(tables) or None)
    logger.debug('Opened SQLite database %r', str(database_path))
    return engine
