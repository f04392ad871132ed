# telemetry_relay/server/ingest.py
"""
Ingestion orchestration: schema lookup, normalization, insert, dead-lettering.

A request body maps stream names to arrays of events. Processing is two-phase
so that a data-integrity fault never leaves a request half-ingested:

Phase 1 (validate, every stream):
    The schema of the stream's table is looked up through the cache and every
    row is normalized. A table with no schema keeps all of its rows out of the
    warehouse, as does a stream name that is not configured. An invalid row on
    a loss-tolerant stream is dropped; an invalid row on a strict stream fails
    the whole request.

Phase 2 (insert, only if phase 1 found no integrity fault):
    Each stream's valid rows are inserted with one warehouse call. Rows the
    warehouse rejects are correlated back to their events and dead-lettered;
    the accepted rows stay committed.

Warehouse unavailability:
    While nothing of the request has reached the warehouse, a
    WarehouseUnavailableError propagates unchanged (HTTP 503) and no
    dead-letter entry is written, so the client can retry the whole request.
    Once a stream has been written, a later unavailable stream is no longer
    retryable as a whole: its rows are dead-lettered and reported with an
    error on that stream, and the request completes.

Dead-lettering:
    Every row that does not reach the warehouse produces exactly one
    dead-letter entry: dropped rows, rows of a table without schema, rows of
    an unknown stream, rows the warehouse rejected, rows of a stream the
    warehouse could not take after an earlier stream committed, and on an
    integrity fault every row of the request.

Exception Hierarchy:
--------------------
    IngestError
    ├── DataIntegrityError   strict stream row invalid (HTTP 400)
    └── MalformedBatchError  body is not stream -> array (HTTP 400)
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Final

from pydantic import BaseModel, Field

from telemetry_relay.config import StreamConfig
from telemetry_relay.models import ProcessedRow, StreamResult, TableSchema
from telemetry_relay.server.dead_letter import DeadLetterSink
from telemetry_relay.server.normalizer import process_row, reject_row
from telemetry_relay.server.schema_cache import SchemaCache
from telemetry_relay.warehouse import (
    RowError,
    WarehouseInsertError,
    WarehouseSink,
    WarehouseUnavailableError,
)

__all__: list[str] = [
    'DataIntegrityError',
    'IngestError',
    'IngestionService',
    'MalformedBatchError',
    'SCHEMA_UNAVAILABLE_MESSAGE',
    'UNKNOWN_STREAM_MESSAGE',
    'WAREHOUSE_UNAVAILABLE_MESSAGE',
    'correlate_row_errors',
]

logger: logging.Logger = logging.getLogger(__name__)

SCHEMA_UNAVAILABLE_MESSAGE: Final[str] = 'Schema unavailable; refusing to insert blindly'
UNKNOWN_STREAM_MESSAGE: Final[str] = 'Unknown stream'
WAREHOUSE_UNAVAILABLE_MESSAGE: Final[str] = 'Warehouse unavailable; rows dead-lettered'

# Keys a warehouse may use to identify the failing row, in lookup order
ROW_INDEX_KEYS: Final[tuple[str, ...]] = ('row_index', 'rowIndex', 'index')


# =============================================================================
# Exceptions
# =============================================================================


class IngestError(Exception):
    """Base exception for requests the ingestion service refuses."""


class DataIntegrityError(IngestError):
    """
    Raised when a strict stream carries a row that fails validation.

    Attributes:
        stream: Stream the offending row arrived on.
        event_id: eventId of the first offending row.
    """

    def __init__(self, message: str, stream: str, event_id: str) -> None:
        super().__init__(message)
        self.stream: str = stream
        self.event_id: str = event_id


class MalformedBatchError(IngestError):
    """Raised when a stream's value is not an array of events."""


# =============================================================================
# Orchestration
# =============================================================================


class _PreparedStream(BaseModel):
    """Phase-1 result for one stream."""

    stream: str
    table: str
    loss_tolerant: bool
    # Set when no row of the stream may be inserted at all
    error: str | None = None
    rows: list[ProcessedRow] = Field(default_factory=list)

    @property
    def insertable(self) -> list[ProcessedRow]:
        return [row for row in self.rows if row.is_valid]

    @property
    def dropped(self) -> list[ProcessedRow]:
        return [row for row in self.rows if not row.is_valid]

    @property
    def integrity_fault(self) -> ProcessedRow | None:
        """First invalid row, when it must fail the request."""
        if self.loss_tolerant or self.error is not None:
            return None
        return next((row for row in self.rows if not row.is_valid), None)


class IngestionService:
    """
    Routes request bodies through validation into the warehouse.

    The service holds no per-request state and is safe to share between
    concurrently handled requests.

    Example:
        >>> service = IngestionService(config.server.streams, cache, sink, dead_letters)
        >>> results = service.ingest({'gps_logs': [{'eventId': 'e1', ...}]})
        >>> results['gps_logs'].inserted
        1
    """

    def __init__(
        self,
        streams: Mapping[str, StreamConfig],
        schema_cache: SchemaCache,
        warehouse: WarehouseSink,
        dead_letters: DeadLetterSink,
    ) -> None:
        self._streams: dict[str, StreamConfig] = dict(streams)
        self._schema_cache: SchemaCache = schema_cache
        self._warehouse: WarehouseSink = warehouse
        self._dead_letters: DeadLetterSink = dead_letters

    @property
    def tables(self) -> list[str]:
        return [stream.table for stream in self._streams.values()]

    def ingest(
        self, body: Mapping[str, Any], request_id: str | None = None
    ) -> dict[str, StreamResult]:
        """
        Validate and insert every stream of a request body.

        Args:
            body: Stream name to array of events.
            request_id: Correlation id recorded on dead-letter entries.

        Returns:
            Per-stream results for each stream with at least one event,
            unknown streams included.

        Raises:
            MalformedBatchError: If a stream's value is not an array.
            DataIntegrityError: If a strict stream has an invalid row. Nothing
                from the request is inserted; every row is dead-lettered.
            WarehouseUnavailableError: If the warehouse could not be written
                before any stream of the request was. Nothing is inserted or
                dead-lettered.
        """
        prepared: list[_PreparedStream] = []
        for stream_name, rows in body.items():
            if rows is None:
                continue
            if not isinstance(rows, list):
                raise MalformedBatchError(
                    f'Stream {stream_name!r} must be an array, got {type(rows).__name__}'
                )
            if not rows:
                continue
            stream_config: StreamConfig | None = self._streams.get(stream_name)
            if stream_config is None:
                prepared.append(self._prepare_unknown(stream_name, rows))
            else:
                prepared.append(self._prepare(stream_name, stream_config, rows))

        for stream in prepared:
            fault: ProcessedRow | None = stream.integrity_fault
            if fault is not None:
                self._reject_request(prepared, stream, fault, request_id)

        results: dict[str, StreamResult] = {}
        committed: bool = False
        for stream in prepared:
            try:
                results[stream.stream] = self._insert(stream, request_id)
            except WarehouseUnavailableError as unavailable_error:
                if not committed:
                    raise
                results[stream.stream] = self._divert_unavailable(
                    stream, unavailable_error, request_id
                )
                continue
            committed = committed or bool(stream.insertable)

        # Deferred until the inserts settled so a retryable failure leaves no entries
        for stream in prepared:
            self._record_dropped(stream, request_id)

        return results

    # -------------------------------------------------------------------------
    # Phase 1
    # -------------------------------------------------------------------------

    def _prepare(
        self, stream_name: str, stream_config: StreamConfig, rows: list[Any]
    ) -> _PreparedStream:
        table: str = stream_config.table
        schema: TableSchema | None = self._schema_cache.get_schema(table)

        if schema is None:
            logger.error(
                'Schema unavailable for %s; refusing to insert %d row(s) blindly',
                table,
                len(rows),
            )
            return _PreparedStream(
                stream=stream_name,
                table=table,
                loss_tolerant=stream_config.loss_tolerant,
                error=SCHEMA_UNAVAILABLE_MESSAGE,
                rows=[reject_row(table, row, SCHEMA_UNAVAILABLE_MESSAGE) for row in rows],
            )

        processed: list[ProcessedRow] = [process_row(schema, row) for row in rows]

        if stream_config.loss_tolerant:
            for row in processed:
                if not row.is_valid:
                    logger.warning(
                        'Dropping %s row (%s): %s', stream_name, row.event_id, row.reason
                    )

        return _PreparedStream(
            stream=stream_name,
            table=table,
            loss_tolerant=stream_config.loss_tolerant,
            rows=processed,
        )

    def _prepare_unknown(self, stream_name: str, rows: list[Any]) -> _PreparedStream:
        logger.warning(
            'Unknown stream %r, dead-lettering %d event(s)', stream_name, len(rows)
        )
        return _PreparedStream(
            stream=stream_name,
            table=stream_name,
            loss_tolerant=True,
            error=UNKNOWN_STREAM_MESSAGE,
            rows=[reject_row(stream_name, row, UNKNOWN_STREAM_MESSAGE) for row in rows],
        )

    def _reject_request(
        self,
        prepared: list[_PreparedStream],
        faulty_stream: _PreparedStream,
        fault: ProcessedRow,
        request_id: str | None,
    ) -> None:
        message: str = f'Data Integrity Error: {fault.reason}'
        logger.error(
            'REJECTING request %s: row %s for %s: %s',
            request_id,
            fault.event_id,
            faulty_stream.table,
            fault.reason,
        )

        batch_reason: str = f'Request rejected: {message}'
        for stream in prepared:
            for row in stream.rows:
                self._dead_letters.record(
                    stream.table,
                    row.original,
                    row.reason or batch_reason,
                    insert_id=row.event_id,
                    request_id=request_id,
                )

        raise DataIntegrityError(message, stream=faulty_stream.stream, event_id=fault.event_id)

    # -------------------------------------------------------------------------
    # Phase 2
    # -------------------------------------------------------------------------

    def _insert(self, stream: _PreparedStream, request_id: str | None) -> StreamResult:
        result = StreamResult(dropped=len(stream.dropped), error=stream.error)

        insertable: list[ProcessedRow] = stream.insertable
        if not insertable:
            return result

        try:
            self._warehouse.insert_rows(
                stream.table,
                [row.row for row in insertable if row.row is not None],
                row_ids=[row.event_id for row in insertable],
            )
        except WarehouseInsertError as insert_error:
            rejected: dict[int, Any] = correlate_row_errors(
                insert_error.row_errors, len(insertable)
            )
            for position, errors in rejected.items():
                row = insertable[position]
                self._dead_letters.record(
                    stream.table,
                    row.original,
                    errors,
                    insert_id=row.event_id,
                    request_id=request_id,
                )
            logger.error(
                'Warehouse rejected %d of %d row(s) for %s',
                len(rejected),
                len(insertable),
                stream.table,
            )
            result.inserted = len(insertable) - len(rejected)
            result.dropped += len(rejected)
            return result

        result.inserted = len(insertable)
        return result

    def _divert_unavailable(
        self,
        stream: _PreparedStream,
        unavailable_error: WarehouseUnavailableError,
        request_id: str | None,
    ) -> StreamResult:
        insertable: list[ProcessedRow] = stream.insertable
        logger.error(
            'Warehouse unavailable for %s after earlier streams of request %s '
            'committed; dead-lettering %d row(s): %s',
            stream.table,
            request_id,
            len(insertable),
            unavailable_error,
        )
        reason: str = f'Warehouse unavailable: {unavailable_error}'
        for row in insertable:
            self._dead_letters.record(
                stream.table,
                row.original,
                reason,
                insert_id=row.event_id,
                request_id=request_id,
            )
        return StreamResult(dropped=len(stream.rows), error=WAREHOUSE_UNAVAILABLE_MESSAGE)

    def _record_dropped(self, stream: _PreparedStream, request_id: str | None) -> None:
        for row in stream.dropped:
            self._dead_letters.record(
                stream.table,
                row.original,
                row.reason,
                insert_id=row.event_id,
                request_id=request_id,
            )


def correlate_row_errors(row_errors: Sequence[RowError], row_count: int) -> dict[int, Any]:
    """
    Map warehouse row errors back to positions in the inserted batch.

    Resolution order per reported error: its 'row_index', then 'rowIndex',
    then 'index', then its position in the error list. An index that is
    missing or not an in-range integer falls through to the next candidate.
    Errors that cannot be placed are logged and skipped; several errors for
    one row are combined.

    Args:
        row_errors: Errors as reported by the warehouse sink.
        row_count: Number of rows in the insert call.

    Returns:
        Row position to the warehouse's error details for that row.
    """
    rejected: dict[int, Any] = {}

    for position, row_error in enumerate(row_errors):
        candidates: list[Any] = [row_error.get(key) for key in ROW_INDEX_KEYS]
        candidates.append(position)
        row_position: int | None = next(
            (
                candidate
                for candidate in candidates
                if isinstance(candidate, int)
                and not isinstance(candidate, bool)
                and 0 <= candidate < row_count
            ),
            None,
        )
        details: Any = row_error.get('errors', row_error)

        if row_position is None:
            logger.error('Cannot correlate warehouse row error %r to a row', row_error)
            continue

        if row_position in rejected:
            existing: Any = rejected[row_position]
            combined: list[Any] = list(existing) if isinstance(existing, list) else [existing]
            combined.extend(details if isinstance(details, list) else [details])
            rejected[row_position] = combined
        else:
            rejected[row_position] = details

    return rejected
