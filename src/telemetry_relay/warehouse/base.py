# telemetry_relay/warehouse/base.py
"""
Contract between the ingestion service and a warehouse backend.

A sink answers two questions: what columns does a table declare, and did
these rows land. Partial failures are reported with a per-row error list so
the ingestion service can dead-letter exactly the rejected rows.

Exception Hierarchy:
--------------------
    WarehouseError
    ├── WarehouseInsertError        some rows rejected, the rest committed
    └── WarehouseUnavailableError   nothing committed, safe to retry
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from telemetry_relay.models import FieldSpec

__all__: list[str] = [
    'RowError',
    'WarehouseError',
    'WarehouseInsertError',
    'WarehouseSink',
    'WarehouseUnavailableError',
]

logger: logging.Logger = logging.getLogger(__name__)

# One reported row failure. Backends identify the row with 'row_index',
# 'rowIndex' or 'index'; 'errors' carries the backend's reason(s).
type RowError = dict[str, Any]


class WarehouseError(Exception):
    """Base exception for warehouse sink failures."""

    def __init__(self, message: str, table: str | None = None) -> None:
        super().__init__(message)
        self.table: str | None = table


class WarehouseInsertError(WarehouseError):
    """
    Raised when the warehouse rejected some rows of an insert.

    Attributes:
        row_errors: One entry per rejected row, in the order reported.
        accepted_count: Rows of the same call that were committed.
    """

    def __init__(
        self,
        message: str,
        row_errors: Sequence[RowError],
        accepted_count: int = 0,
        table: str | None = None,
    ) -> None:
        super().__init__(message, table=table)
        self.row_errors: list[RowError] = list(row_errors)
        self.accepted_count: int = accepted_count


class WarehouseUnavailableError(WarehouseError):
    """Raised when the warehouse could not be reached or failed as a whole."""


class WarehouseSink(ABC):
    """Abstract warehouse backend."""

    @abstractmethod
    def get_table_schema(self, table: str) -> dict[str, FieldSpec]:
        """
        Fetch the declared columns of a table.

        Args:
            table: Warehouse table name.

        Returns:
            Column name to FieldSpec mapping.

        Raises:
            WarehouseError: If the schema cannot be retrieved.
        """

    @abstractmethod
    def insert_rows(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        row_ids: Sequence[str] | None = None,
    ) -> int:
        """
        Insert fully-validated rows into a table in one call.

        Args:
            table: Warehouse table name.
            rows: Rows keyed by the table's column names.
            row_ids: Optional insert id per row (the events' eventIds).
                Backends that support it use them to collapse duplicate
                inserts of the same event.

        Returns:
            Number of rows committed.

        Raises:
            WarehouseInsertError: If some rows were rejected.
            WarehouseUnavailableError: If the insert failed as a whole.
        """

    def close(self) -> None:  # noqa: B027
        """Release backend resources. The default does nothing."""
