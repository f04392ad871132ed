# telemetry_relay/warehouse/parquet.py
"""
Local warehouse backed by date-partitioned Parquet tables.

Each table declared in `WarehouseConfig.tables` is stored as a directory of
Hive-style partitions keyed on insert date:

    parquet_path/
    ├── Jobs/
    │   ├── date=2025-03-01/
    │   │   └── data.parquet
    │   └── date=2025-03-02/
    │       └── data.parquet
    └── gps_logs/
        └── date=2025-03-02/
            └── data.parquet

The layout loads directly into BigQuery external tables, which makes this
backend a drop-in for development machines and an offline staging area.

Insert semantics mirror a streaming warehouse:
----------------------------------------------
- Rows are checked one by one against the declared column types. Rows with
  unknown columns, missing required values or mistyped values are rejected
  individually (reported by index); the other rows of the call are committed.
- When insert ids are supplied they are stored in `_insert_id` and a row
  whose insert id already exists in the partition is skipped.
- Each partition write is atomic (temp file + replace). A failed write
  leaves the previous partition intact and raises WarehouseUnavailableError.

Thread Safety:
--------------
Inserts serialize on an internal lock, so concurrent requests cannot lose
each other's writes to the same partition.
"""

import logging
import tempfile
import threading
from collections.abc import Callable, Sequence
from contextlib import suppress
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Final, cast

import pandas as pd
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
    ArrowTypeError as _ArrowTypeError,  # pyright: ignore[reportUnknownVariableType]
)

from telemetry_relay.config import TableDefinition, WarehouseConfig
from telemetry_relay.models import FieldSpec, FieldType, canonical_field_type
from telemetry_relay.warehouse.base import (
    RowError,
    WarehouseError,
    WarehouseInsertError,
    WarehouseSink,
    WarehouseUnavailableError,
)

# PyArrow exception types for except clauses; the stubs are incomplete.
ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)
ArrowTypeError: type[Exception] = cast(type[Exception], _ArrowTypeError)

__all__: list[str] = ['INSERT_ID_COLUMN', 'ParquetWarehouseSink']

logger: logging.Logger = logging.getLogger(__name__)

PARTITION_DIR_FORMAT: Final[str] = 'date={date}'
PARTITION_FILE_NAME: Final[str] = 'data.parquet'
INSERT_ID_COLUMN: Final[str] = '_insert_id'

# Python types a normalized value may have, per canonical column type.
# Temporal and NUMERIC values arrive as canonical strings.
_ACCEPTED_PYTHON_TYPES: Final[dict[FieldType, tuple[type, ...]]] = {
    FieldType.TIMESTAMP: (str,),
    FieldType.DATETIME: (str,),
    FieldType.DATE: (str,),
    FieldType.NUMERIC: (str,),
    FieldType.FLOAT: (float, int),
    FieldType.INTEGER: (int,),
    FieldType.BOOLEAN: (bool,),
    FieldType.STRING: (str,),
}


class ParquetWarehouseSink(WarehouseSink):
    """
    Warehouse sink writing declared tables to partitioned Parquet files.

    Example:
        >>> sink = ParquetWarehouseSink(config.server.warehouse)
        >>> sink.insert_rows('Jobs', [{'eventId': 'e1', 'status': 'done'}], ['e1'])
        1
        >>> sink.load_table('Jobs')
    """

    def __init__(
        self,
        config: WarehouseConfig,
        today: Callable[[], date] | None = None,
    ) -> None:
        """
        Initialize the sink and create the base directory.

        Args:
            config: Warehouse configuration with parquet_path and tables.
            today: Source of the partition date for inserted rows. Defaults to
                the current UTC date.

        Raises:
            ValueError: If parquet_path is not configured.
            OSError: If the base directory cannot be created.
        """
        if config.parquet_path is None:
            raise ValueError('ParquetWarehouseSink requires warehouse.parquet_path')

        self._base_path: Path = config.parquet_path
        self._compression: str | None = config.parquet_compression
        self._tables: dict[str, TableDefinition] = dict(config.tables)
        self._today: Callable[[], date] = today or (lambda: datetime.now(UTC).date())
        self._lock = threading.Lock()

        self._base_path.mkdir(parents=True, exist_ok=True)

        logger.info(
            'Initialized ParquetWarehouseSink: base_path=%r, tables=%s',
            str(self._base_path),
            ', '.join(self._tables) or '(none)',
        )

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def _definition(self, table: str) -> TableDefinition:
        definition: TableDefinition | None = self._tables.get(table)
        if definition is None:
            raise WarehouseError(f'Table {table!r} is not declared', table=table)
        return definition

    def get_table_schema(self, table: str) -> dict[str, FieldSpec]:
        definition: TableDefinition = self._definition(table)
        return {
            name: FieldSpec(type=field.type, required=field.mode == 'REQUIRED')
            for name, field in definition.fields.items()
        }

    # -------------------------------------------------------------------------
    # Row Validation
    # -------------------------------------------------------------------------

    def _check_row(self, definition: TableDefinition, row: dict[str, Any]) -> list[str]:
        """Return the reasons `row` cannot be stored, empty if it can."""
        problems: list[str] = [
            f'no such field: {column}' for column in row if column not in definition.fields
        ]

        for name, field in definition.fields.items():
            value: Any = row.get(name)
            if value is None:
                if field.mode == 'REQUIRED':
                    problems.append(f'missing required field: {name}')
                continue

            field_type: FieldType | None = canonical_field_type(field.type)
            if field_type is None:
                continue

            accepted: tuple[type, ...] = _ACCEPTED_PYTHON_TYPES[field_type]
            # bool is an int subclass; only BOOLEAN columns take booleans
            is_bool: bool = isinstance(value, bool)
            if (is_bool and field_type is not FieldType.BOOLEAN) or not isinstance(
                value, accepted
            ):
                problems.append(
                    f'invalid value for {name} ({field.type}): {type(value).__name__}'
                )

        return problems

    # -------------------------------------------------------------------------
    # Insert
    # -------------------------------------------------------------------------

    def insert_rows(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        row_ids: Sequence[str] | None = None,
    ) -> int:
        if not rows:
            return 0

        definition: TableDefinition = self._definition(table)
        if row_ids is not None and len(row_ids) != len(rows):
            raise ValueError('row_ids must have one entry per row')

        row_errors: list[RowError] = []
        accepted_rows: list[dict[str, Any]] = []

        for index, row in enumerate(rows):
            problems: list[str] = self._check_row(definition, row)
            if problems:
                row_errors.append(
                    {
                        'index': index,
                        'errors': [{'reason': 'invalid', 'message': p} for p in problems],
                    }
                )
                continue

            stored: dict[str, Any] = dict(row)
            if row_ids is not None:
                stored[INSERT_ID_COLUMN] = row_ids[index]
            accepted_rows.append(stored)

        committed: int = 0
        if accepted_rows:
            committed = self._append(table, definition, accepted_rows)

        if row_errors:
            logger.error(
                'Rejected %d of %d row(s) for %s', len(row_errors), len(rows), table
            )
            raise WarehouseInsertError(
                f'{len(row_errors)} row(s) rejected by {table}',
                row_errors=row_errors,
                accepted_count=len(accepted_rows),
                table=table,
            )

        logger.info('Inserted %d row(s) into %s (%d new)', len(rows), table, committed)
        return len(rows)

    def _append(
        self,
        table: str,
        definition: TableDefinition,
        rows: list[dict[str, Any]],
    ) -> int:
        """Merge rows into today's partition; returns rows actually added."""
        partition_date: date = self._today()
        new_df: pd.DataFrame = _to_dataframe(definition, rows)

        with self._lock:
            existing_df: pd.DataFrame | None = self._load_partition(table, partition_date)
            combined_df: pd.DataFrame = new_df

            if existing_df is not None and not existing_df.empty:
                combined_df = pd.concat([existing_df, new_df], ignore_index=True)

            before_dedup: int = len(combined_df)
            if INSERT_ID_COLUMN in combined_df.columns:
                has_id: pd.Series = combined_df[INSERT_ID_COLUMN].notna()
                # First write wins: a replayed insert must not alter stored rows
                duplicated: pd.Series = combined_df.duplicated(
                    subset=[INSERT_ID_COLUMN], keep='first'
                )
                combined_df = combined_df[~(has_id & duplicated)]
            duplicates: int = before_dedup - len(combined_df)

            if duplicates:
                logger.info(
                    'Skipped %d duplicate insert id(s) for %s', duplicates, table
                )

            self._save_partition(table, partition_date, combined_df)

        return len(new_df) - duplicates

    # -------------------------------------------------------------------------
    # Partition I/O
    # -------------------------------------------------------------------------

    def _table_path(self, table: str) -> Path:
        return self._base_path / table

    def _partition_path(self, table: str, partition_date: date) -> Path:
        partition_dir_name: str = PARTITION_DIR_FORMAT.format(
            date=partition_date.isoformat()
        )
        return self._table_path(table) / partition_dir_name / PARTITION_FILE_NAME

    def _load_partition(self, table: str, partition_date: date) -> pd.DataFrame | None:
        partition_path: Path = self._partition_path(table, partition_date)
        if not partition_path.exists():
            return None

        try:
            return pd.read_parquet(partition_path)
        except (OSError, ArrowInvalid, ArrowIOError) as read_error:
            raise WarehouseUnavailableError(
                f'Failed to read partition {partition_path}: {read_error}', table=table
            ) from read_error

    def _save_partition(
        self, table: str, partition_date: date, dataframe: pd.DataFrame
    ) -> None:
        partition_path: Path = self._partition_path(table, partition_date)
        partition_dir: Path = partition_path.parent
        temp_path: Path | None = None

        try:
            partition_dir.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode='wb',
                suffix='.parquet.tmp',
                dir=partition_dir,
                delete=False,
            ) as temp_file:
                temp_path = Path(temp_file.name)

            dataframe.to_parquet(temp_path, index=False, compression=self._compression)
            temp_path.replace(partition_path)

        except (OSError, ArrowInvalid, ArrowIOError, ArrowTypeError) as write_error:
            logger.exception(
                'Failed to save partition %s/%s (%d records)',
                table,
                partition_date.isoformat(),
                len(dataframe),
            )
            if temp_path is not None and temp_path.exists():
                with suppress(OSError):
                    temp_path.unlink()
            raise WarehouseUnavailableError(
                f'Failed to write {partition_path}: {write_error}', table=table
            ) from write_error

        logger.debug(
            'Saved partition %s/%s: %d records',
            table,
            partition_date.isoformat(),
            len(dataframe),
        )

    def list_partition_dates(self, table: str) -> list[date]:
        """Partition dates present for a table, oldest first."""
        table_path: Path = self._table_path(table)
        if not table_path.exists():
            return []

        dates: list[date] = []
        for partition_dir in sorted(table_path.iterdir()):
            if not partition_dir.is_dir() or not partition_dir.name.startswith('date='):
                continue
            try:
                dates.append(date.fromisoformat(partition_dir.name[5:]))
            except ValueError:
                logger.warning('Ignoring malformed partition directory %r', partition_dir)
        return dates

    def load_table(self, table: str, include_insert_ids: bool = False) -> pd.DataFrame:
        """
        Read every partition of a table into one DataFrame.

        Args:
            table: Declared table name.
            include_insert_ids: Keep the `_insert_id` bookkeeping column.

        Returns:
            Combined rows in partition order; an empty DataFrame with the
            declared columns when nothing has been inserted.
        """
        definition: TableDefinition = self._definition(table)
        frames: list[pd.DataFrame] = []
        for partition_date in self.list_partition_dates(table):
            partition_df: pd.DataFrame | None = self._load_partition(table, partition_date)
            if partition_df is not None and not partition_df.empty:
                frames.append(partition_df)

        if not frames:
            return pd.DataFrame(columns=list(definition.fields))

        combined: pd.DataFrame = pd.concat(frames, ignore_index=True)
        if not include_insert_ids and INSERT_ID_COLUMN in combined.columns:
            combined = combined.drop(columns=[INSERT_ID_COLUMN])
        return combined


def _to_dataframe(definition: TableDefinition, rows: list[dict[str, Any]]) -> pd.DataFrame:
    """
    Build a DataFrame with one column per declared field and stable dtypes.

    Stable dtypes keep partitions concatenable across writes: a column that
    happens to be all-null in one batch must not flip to a different type.
    """
    columns: list[str] = list(definition.fields)
    if any(INSERT_ID_COLUMN in row for row in rows):
        columns.append(INSERT_ID_COLUMN)

    dataframe: pd.DataFrame = pd.DataFrame.from_records(rows, columns=columns)

    for name, field in definition.fields.items():
        field_type: FieldType | None = canonical_field_type(field.type)
        column: pd.Series = dataframe[name]

        if field_type is FieldType.TIMESTAMP:
            dataframe[name] = pd.to_datetime(column, utc=True, errors='coerce')
        elif field_type is FieldType.DATETIME:
            dataframe[name] = pd.to_datetime(column, errors='coerce')
        elif field_type is FieldType.FLOAT:
            dataframe[name] = pd.to_numeric(column, errors='coerce').astype('float64')
        elif field_type is FieldType.INTEGER:
            dataframe[name] = pd.to_numeric(column, errors='coerce').astype('Int64')
        elif field_type is FieldType.BOOLEAN:
            dataframe[name] = column.astype('boolean')
        else:
            # STRING, NUMERIC and DATE keep their canonical string form
            dataframe[name] = column.astype('string')

    return dataframe
