# telemetry_relay/warehouse/__init__.py
"""
Warehouse sinks: the contract and its BigQuery and Parquet implementations.
"""

from telemetry_relay.config import WarehouseConfig
from telemetry_relay.warehouse.base import (
    RowError,
    WarehouseError,
    WarehouseInsertError,
    WarehouseSink,
    WarehouseUnavailableError,
)
from telemetry_relay.warehouse.bigquery import BigQueryWarehouseSink
from telemetry_relay.warehouse.parquet import ParquetWarehouseSink

__all__: list[str] = [
    'BigQueryWarehouseSink',
    'ParquetWarehouseSink',
    'RowError',
    'WarehouseError',
    'WarehouseInsertError',
    'WarehouseSink',
    'WarehouseUnavailableError',
    'create_warehouse_sink',
]


def create_warehouse_sink(config: WarehouseConfig) -> WarehouseSink:
    """
    Build the sink selected by `config.backend`.

    Raises:
        RuntimeError: If the bigquery backend is selected without
            google-cloud-bigquery installed.
    """
    if config.backend == 'parquet':
        return ParquetWarehouseSink(config)
    return BigQueryWarehouseSink(config)
