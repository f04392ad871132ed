# telemetry_relay/client/__init__.py
"""
Client side of the relay: durable queue, delivery and sync scheduling.
"""

from telemetry_relay.client.connectivity import ConnectivityMonitor
from telemetry_relay.client.flush import FlushEngine, FlushReport, compute_backoff_seconds
from telemetry_relay.client.queue import DurableQueue, QueueStorageError
from telemetry_relay.client.sync import QueueSync, TelemetrySender, build_client
from telemetry_relay.client.transport import IngestTransport, classify_status

__all__: list[str] = [
    'ConnectivityMonitor',
    'DurableQueue',
    'FlushEngine',
    'FlushReport',
    'IngestTransport',
    'QueueStorageError',
    'QueueSync',
    'TelemetrySender',
    'build_client',
    'classify_status',
    'compute_backoff_seconds',
]
