"""
Shared pytest fixtures for telemetry_relay tests.

This module provides reusable fixtures for common test scenarios across
all test modules. Fixtures are automatically discovered by pytest.
"""

from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest

from telemetry_relay.client import ConnectivityMonitor, DurableQueue, IngestTransport
from telemetry_relay.config import (
    ClientConfig,
    DeadLetterConfig,
    FieldDefinition,
    IdempotencyConfig,
    QueueConfig,
    SchemaCacheConfig,
    ServerConfig,
    StreamConfig,
    TableDefinition,
    WarehouseConfig,
)
from telemetry_relay.models import FieldSpec
from telemetry_relay.warehouse import (
    RowError,
    WarehouseInsertError,
    WarehouseSink,
    WarehouseUnavailableError,
)

INGEST_URL: str = 'https://ingest.example.com/api'


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now: float = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Manually advanced UTC datetime clock."""

    def __init__(self) -> None:
        self.now: datetime = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


# =============================================================================
# Warehouse Fakes
# =============================================================================


GPS_SCHEMA: dict[str, FieldSpec] = {
    'eventId': FieldSpec(type='STRING', required=True),
    'lat': FieldSpec(type='FLOAT', required=True),
    'lng': FieldSpec(type='FLOAT', required=True),
    'timestamp': FieldSpec(type='TIMESTAMP', required=True),
    'speed': FieldSpec(type='FLOAT'),
}

JOBS_SCHEMA: dict[str, FieldSpec] = {
    'eventId': FieldSpec(type='STRING', required=True),
    'jobId': FieldSpec(type='STRING', required=True),
    'status': FieldSpec(type='STRING'),
    'cost': FieldSpec(type='NUMERIC'),
    'timestampt': FieldSpec(type='TIMESTAMP'),
}


class FakeWarehouse(WarehouseSink):
    """
    In-memory warehouse recording every call.

    Attributes:
        schemas: Table to schema returned by get_table_schema.
        inserted: Table to rows accepted so far.
        insert_calls: (table, rows, row_ids) per insert_rows call.
        schema_failures: Remaining get_table_schema calls that fail.
        reject_indices: Row indices (per call) reported as invalid.
        unavailable: Make insert_rows raise WarehouseUnavailableError.
        unavailable_tables: Tables whose insert_rows alone raise it.
    """

    def __init__(self, schemas: dict[str, dict[str, FieldSpec]] | None = None) -> None:
        self.schemas: dict[str, dict[str, FieldSpec]] = (
            schemas if schemas is not None else {'gps_logs': GPS_SCHEMA, 'Jobs': JOBS_SCHEMA}
        )
        self.inserted: dict[str, list[dict[str, Any]]] = {}
        self.insert_calls: list[tuple[str, list[dict[str, Any]], list[str] | None]] = []
        self.schema_calls: int = 0
        self.schema_failures: int = 0
        self.reject_indices: set[int] = set()
        self.row_error_key: str = 'index'
        self.unavailable: bool = False
        self.unavailable_tables: set[str] = set()
        self.closed: bool = False

    def get_table_schema(self, table: str) -> dict[str, FieldSpec]:
        self.schema_calls += 1
        if self.schema_failures > 0:
            self.schema_failures -= 1
            raise WarehouseUnavailableError('metadata API down', table=table)
        if table not in self.schemas:
            raise WarehouseUnavailableError(f'no table {table}', table=table)
        return dict(self.schemas[table])

    def insert_rows(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        row_ids: Sequence[str] | None = None,
    ) -> int:
        self.insert_calls.append((table, list(rows), list(row_ids) if row_ids else None))
        if self.unavailable or table in self.unavailable_tables:
            raise WarehouseUnavailableError('insert endpoint down', table=table)

        accepted: list[dict[str, Any]] = [
            row for index, row in enumerate(rows) if index not in self.reject_indices
        ]
        self.inserted.setdefault(table, []).extend(accepted)

        if len(accepted) != len(rows):
            row_errors: list[RowError] = [
                {self.row_error_key: index, 'errors': [{'reason': 'invalid'}]}
                for index in sorted(self.reject_indices)
                if index < len(rows)
            ]
            raise WarehouseInsertError(
                'rows rejected', row_errors=row_errors, accepted_count=len(accepted), table=table
            )
        return len(rows)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_warehouse() -> FakeWarehouse:
    return FakeWarehouse()


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def queue_config(tmp_path: Path) -> QueueConfig:
    return QueueConfig(
        database_path=tmp_path / 'queue.db',
        max_items=5,
        max_payload_bytes=2_000,
    )


@pytest.fixture
def client_config(queue_config: QueueConfig) -> ClientConfig:
    return ClientConfig(
        ingest_url=INGEST_URL,
        api_key='field-key',
        queue=queue_config,
    )


@pytest.fixture
def warehouse_config(tmp_path: Path) -> WarehouseConfig:
    """Parquet warehouse declaring the gps_logs and Jobs tables."""
    return WarehouseConfig(
        backend='parquet',
        parquet_path=tmp_path / 'warehouse',
        tables={
            'gps_logs': TableDefinition(
                fields={
                    'eventId': FieldDefinition(type='STRING', mode='REQUIRED'),
                    'lat': FieldDefinition(type='FLOAT', mode='REQUIRED'),
                    'lng': FieldDefinition(type='FLOAT', mode='REQUIRED'),
                    'timestamp': FieldDefinition(type='TIMESTAMP', mode='REQUIRED'),
                    'speed': FieldDefinition(type='FLOAT'),
                }
            ),
            'Jobs': TableDefinition(
                fields={
                    'eventId': FieldDefinition(type='STRING', mode='REQUIRED'),
                    'jobId': FieldDefinition(type='STRING', mode='REQUIRED'),
                    'status': FieldDefinition(type='STRING'),
                    'cost': FieldDefinition(type='NUMERIC'),
                    'timestampt': FieldDefinition(type='TIMESTAMP'),
                }
            ),
        },
    )


@pytest.fixture
def server_config(tmp_path: Path, warehouse_config: WarehouseConfig) -> ServerConfig:
    return ServerConfig(
        api_key='server-key',
        streams={
            'jobs': StreamConfig(table='Jobs'),
            'gps_logs': StreamConfig(table='gps_logs', loss_tolerant=True),
        },
        schema_cache=SchemaCacheConfig(ttl_seconds=600, refresh_attempts=1),
        idempotency=IdempotencyConfig(database_path=tmp_path / 'idempotency.db'),
        dead_letter=DeadLetterConfig(path=tmp_path / 'dead_letter.jsonl'),
        warehouse=warehouse_config,
    )


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture
def queue(queue_config: QueueConfig, clock: FakeClock) -> Iterator[DurableQueue]:
    durable_queue = DurableQueue(queue_config, clock=clock)
    yield durable_queue
    durable_queue.close()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(initial=True)


type Handler = Callable[[httpx.Request], httpx.Response]


class RecordingHandler:
    """httpx.MockTransport handler replaying scripted responses."""

    def __init__(self, *statuses: int) -> None:
        self.statuses: list[int] = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status: int = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={'status': 'ok' if status < 400 else 'error'})


@pytest.fixture
def make_transport(
    client_config: ClientConfig,
) -> Iterator[Callable[[Handler], IngestTransport]]:
    """Build IngestTransports backed by httpx.MockTransport."""
    transports: list[IngestTransport] = []

    def _make(handler: Handler) -> IngestTransport:
        transport = IngestTransport(client_config, http_transport=httpx.MockTransport(handler))
        transports.append(transport)
        return transport

    yield _make

    for transport in transports:
        transport.close()
