# telemetry_relay/warehouse/bigquery.py
"""
BigQuery streaming-insert sink.

Uses the `google-cloud-bigquery` client, imported when the sink has to build
its own client, so that deployments writing to the local Parquet warehouse do
not need it.

Insert semantics:
-----------------
Rows are streamed with `insert_rows_json` using each event's eventId as the
BigQuery insertId, so a retried insert of the same event within BigQuery's
deduplication window is collapsed. `skip_invalid_rows=True` commits the valid
rows of a batch; the invalid ones are reported back per row index.
"""

import logging
from collections.abc import Sequence
from typing import Any

from telemetry_relay.config import WarehouseConfig
from telemetry_relay.models import FieldSpec
from telemetry_relay.warehouse.base import (
    RowError,
    WarehouseInsertError,
    WarehouseSink,
    WarehouseUnavailableError,
)

__all__: list[str] = ['BigQueryWarehouseSink']

logger: logging.Logger = logging.getLogger(__name__)


def _import_bigquery() -> tuple[Any, type[Exception]]:
    """Import the bigquery module and GoogleAPIError lazily."""
    try:
        from google.api_core.exceptions import GoogleAPIError  # noqa: PLC0415
        from google.cloud import bigquery  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'google-cloud-bigquery is required for the bigquery backend; '
            'install it with: pip install telemetry-relay[bigquery]'
        ) from import_error
    return bigquery, GoogleAPIError


class BigQueryWarehouseSink(WarehouseSink):
    """
    Warehouse sink writing to one BigQuery dataset.

    Example:
        >>> sink = BigQueryWarehouseSink(config.server.warehouse)
        >>> sink.get_table_schema('Jobs')
    """

    def __init__(
        self,
        config: WarehouseConfig,
        client: Any | None = None,
        api_error: type[Exception] | None = None,
    ) -> None:
        """
        Initialize the sink.

        Args:
            config: Warehouse configuration (project and dataset).
            client: Optional pre-built `bigquery.Client`.
            api_error: Exception type the client raises on API failures;
                defaults to `google.api_core.exceptions.GoogleAPIError`.

        Raises:
            RuntimeError: If google-cloud-bigquery is needed but not installed.
        """
        if client is None or api_error is None:
            bigquery, google_api_error = _import_bigquery()
            api_error = api_error or google_api_error
            client = client or bigquery.Client(project=config.project_id)

        self._api_error: type[Exception] = api_error
        self._project_id: str | None = config.project_id
        self._dataset: str = config.dataset
        self._client: Any = client

        logger.info(
            'Initialized BigQueryWarehouseSink: project=%r, dataset=%r',
            self._project_id,
            self._dataset,
        )

    def _table_ref(self, table: str) -> str:
        if self._project_id:
            return f'{self._project_id}.{self._dataset}.{table}'
        return f'{self._dataset}.{table}'

    def get_table_schema(self, table: str) -> dict[str, FieldSpec]:
        try:
            bq_table: Any = self._client.get_table(self._table_ref(table))
        except self._api_error as api_error:
            raise WarehouseUnavailableError(
                f'Failed to fetch schema for {table}: {api_error}', table=table
            ) from api_error

        fields: dict[str, FieldSpec] = {
            schema_field.name: FieldSpec(
                type=schema_field.field_type,
                required=schema_field.mode == 'REQUIRED',
            )
            for schema_field in bq_table.schema
        }
        logger.debug('Fetched schema for %s: %s', table, ', '.join(fields))
        return fields

    def insert_rows(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        row_ids: Sequence[str] | None = None,
    ) -> int:
        if not rows:
            return 0

        insert_kwargs: dict[str, Any] = {
            'skip_invalid_rows': True,
            'ignore_unknown_values': False,
        }
        if row_ids is not None:
            insert_kwargs['row_ids'] = list(row_ids)

        try:
            reported: Sequence[dict[str, Any]] = self._client.insert_rows_json(
                self._table_ref(table), list(rows), **insert_kwargs
            )
        except self._api_error as api_error:
            raise WarehouseUnavailableError(
                f'Streaming insert into {table} failed: {api_error}', table=table
            ) from api_error

        if not reported:
            logger.info('Inserted %d row(s) into %s', len(rows), table)
            return len(rows)

        row_errors: list[RowError] = [dict(entry) for entry in reported]
        accepted: int = max(len(rows) - len(row_errors), 0)
        logger.error(
            'BigQuery rejected %d of %d row(s) for %s',
            len(row_errors),
            len(rows),
            table,
        )
        raise WarehouseInsertError(
            f'{len(row_errors)} row(s) rejected by {table}',
            row_errors=row_errors,
            accepted_count=accepted,
            table=table,
        )

    def close(self) -> None:
        self._client.close()
