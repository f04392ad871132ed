# telemetry_relay/server/__init__.py
"""
Server side of the relay: ingestion endpoint and its supporting stores.
"""

from telemetry_relay.server.app import RequestIdMiddleware, create_app
from telemetry_relay.server.dead_letter import DeadLetterSink
from telemetry_relay.server.idempotency import IdempotencyLedger
from telemetry_relay.server.ingest import (
    DataIntegrityError,
    IngestError,
    IngestionService,
    MalformedBatchError,
    correlate_row_errors,
)
from telemetry_relay.server.normalizer import normalize_value, process_row
from telemetry_relay.server.schema_cache import SchemaCache
from telemetry_relay.server.secrets import SecretFetcher, get_secret

__all__: list[str] = [
    'DataIntegrityError',
    'DeadLetterSink',
    'IdempotencyLedger',
    'IngestError',
    'IngestionService',
    'MalformedBatchError',
    'RequestIdMiddleware',
    'SchemaCache',
    'SecretFetcher',
    'correlate_row_errors',
    'create_app',
    'get_secret',
    'normalize_value',
    'process_row',
]
