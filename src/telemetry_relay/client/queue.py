# telemetry_relay/client/queue.py
"""
Durable local queue for outbound telemetry submissions.

Pending submissions are persisted in a SQLite table so they survive process
restarts and long offline periods. The queue is the only state shared between
producers (enqueue) and the flush engine (update/remove); every operation runs
in its own transaction under a process-wide lock.

Policies:
---------
- Oversized payloads (serialized size above `max_payload_bytes`) are never
  queued; enqueue returns False and the rejection is logged.
- The queue holds at most `max_items` submissions. Enqueueing into a full
  queue evicts exactly one item, the one with the smallest created_at
  ("drop-oldest" backpressure). Evictions are logged and counted.
- Storage errors on enqueue are reported as not accepted. Storage errors on
  list_due/update/remove raise QueueStorageError.
"""

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from sqlalchemy import Engine, Float, Integer, String, Text, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.types import JSON

from telemetry_relay.config import QueueConfig
from telemetry_relay.db import Base, create_sqlite_engine
from telemetry_relay.models import QueueItem

__all__: list[str] = ['DurableQueue', 'QueueItemRow', 'QueueStorageError']

logger: logging.Logger = logging.getLogger(__name__)

# Smallest step used to keep created_at strictly increasing per queue
_CREATED_AT_EPSILON: float = 1e-6


class QueueStorageError(Exception):
    """Raised when a storage operation other than enqueue fails."""


class QueueItemRow(Base):
    __tablename__ = 'telemetry_queue'

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(200), nullable=False)
    destination: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[float] = mapped_column(Float, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_item(self) -> QueueItem:
        return QueueItem(
            id=self.id,
            request_id=self.request_id,
            destination=self.destination,
            payload=self.payload,
            created_at=self.created_at,
            attempts=self.attempts,
            next_attempt_at=self.next_attempt_at,
            last_error=self.last_error,
        )


class DurableQueue:
    """
    SQLite-backed FIFO of pending submissions.

    Thread Safety:
        All public methods serialize on an internal lock, so producers may
        enqueue from any thread while the flush engine updates and removes
        items from its own thread.

    Attributes:
        max_items: Capacity before drop-oldest eviction.
        max_payload_bytes: Serialized payload size cap.
        evicted_count: Items evicted by backpressure since construction.
        rejected_oversize_count: Payloads refused for size since construction.
    """

    def __init__(
        self,
        config: QueueConfig,
        engine: Engine | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Open (and create if needed) the queue database.

        Args:
            config: Queue configuration (database path, capacity, size cap).
            engine: Optional pre-built engine; mainly for tests using an
                in-memory database.
            clock: Source of epoch seconds for created_at / next_attempt_at.

        Raises:
            OSError: If the database directory cannot be created.
            sqlalchemy.exc.SQLAlchemyError: If the database cannot be opened.
        """
        self.max_items: int = config.max_items
        self.max_payload_bytes: int = config.max_payload_bytes
        self._clock: Callable[[], float] = clock
        self._lock = threading.Lock()

        self._engine: Engine = engine or create_sqlite_engine(
            config.database_path, QueueItemRow.__table__
        )
        if engine is not None:
            Base.metadata.create_all(engine, tables=[QueueItemRow.__table__])
        self._session_factory: sessionmaker[Session] = sessionmaker(
            self._engine, expire_on_commit=False
        )

        self.evicted_count: int = 0
        self.rejected_oversize_count: int = 0
        self._last_created_at: float = self._load_last_created_at()

        logger.info(
            'Initialized DurableQueue: path=%r, max_items=%d, max_payload_bytes=%d, pending=%d',
            str(config.database_path) if engine is None else 'injected-engine',
            self.max_items,
            self.max_payload_bytes,
            self.count(),
        )

    def _load_last_created_at(self) -> float:
        with self._session_factory() as session:
            latest: float | None = session.scalar(select(func.max(QueueItemRow.created_at)))
        return latest or 0.0

    def _next_created_at(self) -> float:
        # Wall clocks can repeat or step backwards; FIFO order must not.
        created_at: float = max(
            self._clock(), self._last_created_at + _CREATED_AT_EPSILON
        )
        self._last_created_at = created_at
        return created_at

    # -------------------------------------------------------------------------
    # Producer API
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        destination: str,
        payload: dict[str, Any],
        idempotency_key: str,
        request_id: str,
    ) -> bool:
        """
        Persist a submission for later delivery.

        Args:
            destination: Endpoint URL the payload will be posted to.
            payload: JSON-serializable event batch.
            idempotency_key: Unique key of the logical submission; becomes the
                item id. Re-enqueueing an existing key replaces that item.
            request_id: Correlation id forwarded as X-Request-Id.

        Returns:
            True if the item is durably stored, False if it was refused
            (oversized, unserializable) or the storage layer failed. The caller
            must not assume the event was captured when False is returned.
        """
        try:
            serialized: bytes = json.dumps(payload, separators=(',', ':')).encode('utf-8')
        except (TypeError, ValueError) as serialize_error:
            logger.error(
                'Payload for %s is not JSON-serializable, not queued: %s',
                idempotency_key,
                serialize_error,
            )
            return False

        payload_size: int = len(serialized)
        if payload_size > self.max_payload_bytes:
            self.rejected_oversize_count += 1
            logger.error(
                'Payload too large to queue (%d bytes > %d), dropping %s',
                payload_size,
                self.max_payload_bytes,
                idempotency_key,
            )
            return False

        with self._lock:
            try:
                with self._session_factory.begin() as session:
                    existing: QueueItemRow | None = session.get(QueueItemRow, idempotency_key)
                    if existing is None:
                        self._evict_oldest_if_full(session)

                    created_at: float = self._next_created_at()
                    session.merge(
                        QueueItemRow(
                            id=idempotency_key,
                            request_id=request_id,
                            destination=destination,
                            payload=payload,
                            created_at=created_at,
                            attempts=0,
                            next_attempt_at=created_at,
                            last_error=None,
                        )
                    )
            except SQLAlchemyError:
                logger.exception('Failed to enqueue %s', idempotency_key)
                return False

        logger.info('Queued request %s (%d bytes)', idempotency_key, payload_size)
        return True

    def _evict_oldest_if_full(self, session: Session) -> None:
        queued: int = session.scalar(select(func.count()).select_from(QueueItemRow)) or 0
        if queued < self.max_items:
            return

        oldest: QueueItemRow | None = session.scalars(
            select(QueueItemRow).order_by(QueueItemRow.created_at.asc()).limit(1)
        ).first()
        if oldest is None:
            return

        session.delete(oldest)
        self.evicted_count += 1
        logger.warning(
            'Queue full (%d items), dropped oldest request %s (attempts=%d)',
            queued,
            oldest.id,
            oldest.attempts,
        )

    # -------------------------------------------------------------------------
    # Flush Engine API
    # -------------------------------------------------------------------------

    def list_pending(self) -> list[QueueItem]:
        """Return every queued item ordered by created_at ascending."""
        with self._lock, self._session_factory() as session:
            rows = session.scalars(
                select(QueueItemRow).order_by(QueueItemRow.created_at.asc())
            ).all()
            return [row.to_item() for row in rows]

    def list_due(self, now: float | None = None) -> list[QueueItem]:
        """
        Return items whose next_attempt_at has elapsed, oldest first.

        Raises:
            QueueStorageError: If the storage layer fails.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            try:
                with self._session_factory() as session:
                    rows = session.scalars(
                        select(QueueItemRow)
                        .where(QueueItemRow.next_attempt_at <= now)
                        .order_by(QueueItemRow.created_at.asc())
                    ).all()
                    return [row.to_item() for row in rows]
            except SQLAlchemyError as storage_error:
                raise QueueStorageError(
                    f'Failed to list due items: {storage_error}'
                ) from storage_error

    def remove(self, item_id: str) -> bool:
        """
        Delete an item permanently.

        Returns:
            True if an item was deleted, False if it was already absent.

        Raises:
            QueueStorageError: If the storage layer fails.
        """
        with self._lock:
            try:
                with self._session_factory.begin() as session:
                    result = session.execute(
                        delete(QueueItemRow).where(QueueItemRow.id == item_id)
                    )
            except SQLAlchemyError as storage_error:
                raise QueueStorageError(
                    f'Failed to remove {item_id}: {storage_error}'
                ) from storage_error
        return bool(result.rowcount)

    def update(self, item: QueueItem) -> bool:
        """
        Persist the retry bookkeeping of an existing item.

        Only attempts, next_attempt_at and last_error are written. An item
        evicted while it was in flight is not resurrected.

        Returns:
            True if the item was updated, False if it no longer exists.

        Raises:
            QueueStorageError: If the storage layer fails.
        """
        with self._lock:
            try:
                with self._session_factory.begin() as session:
                    row: QueueItemRow | None = session.get(QueueItemRow, item.id)
                    if row is None:
                        logger.debug('Update skipped, %s no longer queued', item.id)
                        return False
                    row.attempts = item.attempts
                    row.next_attempt_at = item.next_attempt_at
                    row.last_error = item.last_error
            except SQLAlchemyError as storage_error:
                raise QueueStorageError(
                    f'Failed to update {item.id}: {storage_error}'
                ) from storage_error
        return True

    def get(self, item_id: str) -> QueueItem | None:
        with self._lock, self._session_factory() as session:
            row: QueueItemRow | None = session.get(QueueItemRow, item_id)
            return row.to_item() if row else None

    def count(self) -> int:
        """Number of queued items; 0 if the storage layer is unreadable."""
        try:
            with self._lock, self._session_factory() as session:
                return session.scalar(select(func.count()).select_from(QueueItemRow)) or 0
        except SQLAlchemyError:
            logger.exception('Failed to count queued items')
            return 0

    def close(self) -> None:
        self._engine.dispose()
        logger.debug('DurableQueue closed')
