# telemetry_relay/__init__.py
"""
Telemetry Relay - reliable delivery of field telemetry into a warehouse.

The package has two halves that share configuration, models and logging:

1. **Client** (field devices): events are submitted through TelemetrySender.
   Submissions that cannot be delivered immediately are kept in a durable
   SQLite queue and retried by QueueSync with exponential backoff whenever
   the device is online. Every submission carries an Idempotency-Key.

2. **Server** (ingestion service): a FastAPI application that answers
   duplicate submissions from an idempotency ledger, validates rows against
   cached warehouse schemas, inserts them and dead-letters every row that
   could not be stored.

Quick Start - Client:
    >>> from telemetry_relay import build_client, load_config
    >>>
    >>> config = load_config('config/relay_config.yaml')
    >>> sender, sync = build_client(config.client)
    >>> sync.start()
    >>> sender.send_gps_log({'lat': 51.5, 'lng': -0.12, 'timestamp': '...'})

Quick Start - Server:
    >>> from telemetry_relay.server import create_app
    >>>
    >>> app = create_app(load_config('config/relay_config.yaml').server)

    or run `telemetry-relay-server config/relay_config.yaml`.
"""

__version__ = '1.0.0'

from telemetry_relay.client import (
    ConnectivityMonitor,
    DurableQueue,
    FlushEngine,
    FlushReport,
    IngestTransport,
    QueueStorageError,
    QueueSync,
    TelemetrySender,
    build_client,
)
from telemetry_relay.common import setup_logger
from telemetry_relay.config import RelayConfig, load_config
from telemetry_relay.models import (
    DeadLetterEntry,
    DeliveryOutcome,
    DeliveryResult,
    QueueItem,
    StreamResult,
    SyncStatus,
)

__all__: list[str] = [
    'ConnectivityMonitor',
    'DeadLetterEntry',
    'DeliveryOutcome',
    'DeliveryResult',
    'DurableQueue',
    'FlushEngine',
    'FlushReport',
    'IngestTransport',
    'QueueItem',
    'QueueStorageError',
    'QueueSync',
    'RelayConfig',
    'StreamResult',
    'SyncStatus',
    'TelemetrySender',
    '__version__',
    'build_client',
    'load_config',
    'setup_logger',
]
