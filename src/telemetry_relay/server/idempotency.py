# telemetry_relay/server/idempotency.py
"""
Idempotency ledger for the ingestion endpoint.

Maps (endpoint, Idempotency-Key) to the response produced the first time a
submission was processed, so a redelivered submission is answered from the
ledger without touching the warehouse again.

Record lifecycle:
-----------------
    reserve()  ->  row with status NULL (in flight), short TTL
    record()   ->  status and body written, TTL of `ttl_hours` from now
    release()  ->  reservation deleted (processing failed, client may retry)

Expiry is enforced when reading: an expired row is treated as absent whether
or not purge_expired() has physically removed it yet.

Concurrency:
------------
reserve() is a single INSERT .. ON CONFLICT DO NOTHING, so of two concurrent
requests with the same key exactly one wins the reservation. The other sees
the in-flight reservation and is told to retry later. Expired rows are taken
over with a conditional UPDATE guarded by the expiry it observed.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import DateTime, Engine, Integer, String, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.types import JSON

from telemetry_relay.config import IdempotencyConfig
from telemetry_relay.db import Base, create_sqlite_engine
from telemetry_relay.models import IdempotencyRecord

__all__: list[str] = ['IdempotencyLedger', 'IdempotencyRow']

logger: logging.Logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; stored values are always UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class IdempotencyRow(Base):
    __tablename__ = 'idempotency_records'

    endpoint: Mapped[str] = mapped_column(String(200), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    body: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    def to_record(self) -> IdempotencyRecord:
        return IdempotencyRecord(
            endpoint=self.endpoint,
            idempotency_key=self.idempotency_key,
            status=self.status,
            body=self.body,
            created_at=_as_utc(self.created_at),
            expires_at=_as_utc(self.expires_at),
        )


class IdempotencyLedger:
    """
    SQLite-backed store of processed submissions.

    Example:
        >>> ledger = IdempotencyLedger(config.server.idempotency)
        >>> if ledger.lookup('/', key) is None and ledger.reserve('/', key):
        ...     status, body = process()
        ...     ledger.record('/', key, status, body)
    """

    def __init__(
        self,
        config: IdempotencyConfig,
        engine: Engine | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        """
        Open (and create if needed) the ledger database.

        Args:
            config: TTLs and database path.
            engine: Optional pre-built engine, e.g. in-memory for tests.
            now: Source of the current UTC time.
        """
        self._ttl = timedelta(hours=config.ttl_hours)
        self._reservation_ttl = timedelta(seconds=config.reservation_ttl_seconds)
        self._now: Callable[[], datetime] = now

        database_path: Path = config.database_path
        self._engine: Engine = engine or create_sqlite_engine(
            database_path, IdempotencyRow.__table__
        )
        if engine is not None:
            Base.metadata.create_all(engine, tables=[IdempotencyRow.__table__])
        self._session_factory: sessionmaker[Session] = sessionmaker(
            self._engine, expire_on_commit=False
        )

        logger.info(
            'Initialized IdempotencyLedger: ttl=%s, reservation_ttl=%s',
            self._ttl,
            self._reservation_ttl,
        )

    def _get_live(self, session: Session, endpoint: str, key: str) -> IdempotencyRow | None:
        row: IdempotencyRow | None = session.get(IdempotencyRow, (endpoint, key))
        if row is None or _as_utc(row.expires_at) <= self._now():
            return None
        return row

    def lookup(self, endpoint: str, key: str) -> IdempotencyRecord | None:
        """
        Return the completed outcome recorded for a key.

        Expired records and in-flight reservations are reported as absent;
        use `pending()` to detect the latter.
        """
        with self._session_factory() as session:
            row: IdempotencyRow | None = self._get_live(session, endpoint, key)
            if row is None or row.status is None:
                return None
            return row.to_record()

    def pending(self, endpoint: str, key: str) -> bool:
        """Whether a live reservation (request in flight) exists for a key."""
        with self._session_factory() as session:
            row: IdempotencyRow | None = self._get_live(session, endpoint, key)
            return row is not None and row.status is None

    def reserve(self, endpoint: str, key: str) -> bool:
        """
        Atomically claim a key for processing.

        Returns:
            True if this caller now holds the reservation. False if another
            live record (reservation or outcome) already exists.
        """
        now: datetime = self._now()
        expires_at: datetime = now + self._reservation_ttl

        with self._session_factory.begin() as session:
            inserted = session.execute(
                sqlite_insert(IdempotencyRow)
                .values(
                    endpoint=endpoint,
                    idempotency_key=key,
                    status=None,
                    body=None,
                    created_at=now,
                    expires_at=expires_at,
                )
                .on_conflict_do_nothing(index_elements=['endpoint', 'idempotency_key'])
            )
            if inserted.rowcount:
                return True

            # The key exists; take it over only if that record has expired
            taken_over = session.execute(
                update(IdempotencyRow)
                .where(
                    IdempotencyRow.endpoint == endpoint,
                    IdempotencyRow.idempotency_key == key,
                    IdempotencyRow.expires_at <= now,
                )
                .values(status=None, body=None, created_at=now, expires_at=expires_at)
            )
            if taken_over.rowcount:
                logger.debug('Reclaimed expired idempotency record %s %s', endpoint, key)
                return True

        return False

    def record(self, endpoint: str, key: str, status: int, body: dict[str, Any]) -> None:
        """
        Store the outcome of a processed submission.

        Writing the same key again overwrites the stored outcome and restarts
        its TTL.
        """
        now: datetime = self._now()
        statement = sqlite_insert(IdempotencyRow).values(
            endpoint=endpoint,
            idempotency_key=key,
            status=status,
            body=body,
            created_at=now,
            expires_at=now + self._ttl,
        )
        statement = statement.on_conflict_do_update(
            index_elements=['endpoint', 'idempotency_key'],
            set_={
                'status': statement.excluded.status,
                'body': statement.excluded.body,
                'created_at': statement.excluded.created_at,
                'expires_at': statement.excluded.expires_at,
            },
        )
        with self._session_factory.begin() as session:
            session.execute(statement)
        logger.debug('Recorded outcome %d for %s %s', status, endpoint, key)

    def release(self, endpoint: str, key: str) -> None:
        """Drop an in-flight reservation so a retry of the key is processed."""
        with self._session_factory.begin() as session:
            session.execute(
                delete(IdempotencyRow).where(
                    IdempotencyRow.endpoint == endpoint,
                    IdempotencyRow.idempotency_key == key,
                    IdempotencyRow.status.is_(None),
                )
            )

    def purge_expired(self) -> int:
        """Physically delete expired records. Returns the number removed."""
        with self._session_factory.begin() as session:
            result = session.execute(
                delete(IdempotencyRow).where(IdempotencyRow.expires_at <= self._now())
            )
        purged: int = result.rowcount or 0
        if purged:
            logger.info('Purged %d expired idempotency record(s)', purged)
        return purged

    def count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(IdempotencyRow)) or 0

    def close(self) -> None:
        self._engine.dispose()
