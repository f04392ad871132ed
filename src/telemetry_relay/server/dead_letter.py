# telemetry_relay/server/dead_letter.py
"""
Append-only dead-letter log for rows that could not be stored.

Every entry is one JSON object per line:

    {"table": "...", "insertId": "...", "receivedAt": "...Z",
     "payload": {...}, "errors": ..., "requestId": "..."}

Writes are handed to a single background worker so the ingestion path never
waits on disk I/O, and they are serialized so concurrent rejections never
interleave within a line. record() never raises: a failed write is logged at
CRITICAL and counted in `failed_count`.

The log can be read back for replay, loaded into a pandas DataFrame, or
exported to Parquet.
"""

import json
import logging
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, cast

import pandas as pd
from pydantic import ValidationError
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
)

from telemetry_relay.models import DeadLetterEntry

ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)

__all__: list[str] = ['DeadLetterSink']

logger: logging.Logger = logging.getLogger(__name__)

DEAD_LETTER_COLUMNS: list[str] = [
    'table',
    'insertId',
    'receivedAt',
    'payload',
    'errors',
    'requestId',
]


def _received_at() -> str:
    return datetime.now(UTC).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class DeadLetterSink:
    """
    Durable, best-effort recorder of rejected rows.

    Attributes:
        path: JSON Lines file entries are appended to.
        written_count: Entries successfully appended since construction.
        failed_count: Entries lost to write failures since construction.

    Example:
        >>> sink = DeadLetterSink(Path('data/dead_letter.jsonl'))
        >>> sink.record('gps_logs', row, 'Missing REQUIRED fields: lat')
        >>> sink.flush()
        >>> sink.read_entries('gps_logs')
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path
        self.written_count: int = 0
        self.failed_count: int = 0
        self._write_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='dead-letter')

        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info('Initialized DeadLetterSink: path=%r', str(self.path))

    # -------------------------------------------------------------------------
    # Write Path
    # -------------------------------------------------------------------------

    def record(
        self,
        table: str,
        payload: Any,
        errors: Any,
        insert_id: str | None = None,
        request_id: str | None = None,
    ) -> None:
        """
        Queue one rejected row for appending. Never raises.

        Args:
            table: Destination table the row was meant for.
            payload: The original row.
            errors: Rejection reason(s), a string or the warehouse's error list.
            insert_id: The row's eventId; read from the payload when omitted.
            request_id: Correlation id of the request that carried the row.
        """
        try:
            if insert_id is None and isinstance(payload, dict):
                event_id: Any = payload.get('eventId')
                insert_id = str(event_id) if event_id is not None else None

            entry = DeadLetterEntry(
                table=table,
                insert_id=insert_id or '',
                received_at=_received_at(),
                payload=payload,
                errors=errors,
                request_id=request_id,
            )
            line: str = json.dumps(
                entry.model_dump(by_alias=True), default=str, ensure_ascii=False
            )
            self._executor.submit(self._append, line, table, insert_id)
        except Exception:
            self.failed_count += 1
            logger.exception(
                'CRITICAL: dead-letter record for %s (%s) could not be queued',
                table,
                insert_id,
            )

    def _append(self, line: str, table: str, insert_id: str | None) -> None:
        try:
            with self._write_lock, self.path.open('a', encoding='utf-8') as file_handle:
                file_handle.write(line + '\n')
                file_handle.flush()
        except OSError:
            self.failed_count += 1
            logger.exception(
                'CRITICAL: persistent dead-letter write failed for %s (%s)',
                table,
                insert_id,
            )
            return

        self.written_count += 1
        logger.debug('Dead-lettered row %s for %s', insert_id, table)

    def flush(self, timeout: float | None = None) -> None:
        """Block until every entry recorded so far has been written."""
        # Single worker: a no-op queued now runs after all earlier writes
        marker: Future[None] = self._executor.submit(lambda: None)
        marker.result(timeout=timeout)

    def close(self) -> None:
        """Write out pending entries and stop the worker."""
        self._executor.shutdown(wait=True)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def read_entries(self, table: str | None = None) -> list[DeadLetterEntry]:
        """
        Read entries back from the log, oldest first.

        Malformed lines are skipped with a warning.

        Args:
            table: Only return entries for this table.
        """
        if not self.path.exists():
            return []

        entries: list[DeadLetterEntry] = []
        with self.path.open('r', encoding='utf-8') as file_handle:
            for line_number, line in enumerate(file_handle, start=1):
                if not line.strip():
                    continue
                try:
                    entry: DeadLetterEntry = DeadLetterEntry.model_validate_json(line)
                except ValidationError as parse_error:
                    logger.warning(
                        'Skipping malformed dead-letter line %d: %s',
                        line_number,
                        parse_error,
                    )
                    continue
                if table is None or entry.table == table:
                    entries.append(entry)

        return entries

    def to_dataframe(self, table: str | None = None) -> pd.DataFrame:
        """Load entries into a DataFrame with receivedAt parsed as UTC."""
        records: list[dict[str, Any]] = [
            entry.model_dump(by_alias=True) for entry in self.read_entries(table)
        ]
        dataframe = pd.DataFrame.from_records(records, columns=DEAD_LETTER_COLUMNS)
        dataframe['receivedAt'] = pd.to_datetime(
            dataframe['receivedAt'], utc=True, errors='coerce'
        )
        return dataframe

    def export_parquet(self, destination: Path, table: str | None = None) -> int:
        """
        Write entries to a Parquet file for offline replay tooling.

        Payloads and errors are stored as JSON strings since their shapes
        vary from row to row.

        Returns:
            Number of entries exported.

        Raises:
            OSError: If the file cannot be written.
            ValueError: If the entries cannot be converted to Parquet.
        """
        dataframe: pd.DataFrame = self.to_dataframe(table)
        for column_name in ('payload', 'errors'):
            dataframe[column_name] = dataframe[column_name].map(
                lambda value: json.dumps(value, default=str, ensure_ascii=False)
            )

        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path: Path | None = None
        try:
            with tempfile.NamedTemporaryFile(
                mode='wb',
                suffix='.parquet.tmp',
                dir=destination.parent,
                delete=False,
            ) as temp_file:
                temp_path = Path(temp_file.name)

            dataframe.to_parquet(temp_path, index=False)
            temp_path.replace(destination)
        except (OSError, ArrowInvalid, ArrowIOError) as write_error:
            logger.exception('Failed to export dead letters to %r', str(destination))
            if temp_path is not None and temp_path.exists():
                with suppress(OSError):
                    temp_path.unlink()
            if isinstance(write_error, OSError):
                raise
            raise ValueError(f'Cannot export dead letters: {write_error}') from write_error

        logger.info('Exported %d dead-letter entries to %r', len(dataframe), str(destination))
        return len(dataframe)
