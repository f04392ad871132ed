#!/usr/bin/env python3
"""
Example usage of the telemetry relay.

This script walks through both halves of the relay against local storage:
- Capturing events on a device that is offline
- Ingesting a batch through the server application in-process
- Inspecting the Parquet warehouse and the dead-letter log with pandas

Run from the repository root so that config/relay_config.yaml resolves.
"""

import logging
import tempfile
from pathlib import Path

import pandas as pd
from fastapi.testclient import TestClient

from telemetry_relay import ConnectivityMonitor, build_client, load_config, setup_logger
from telemetry_relay.config import ClientConfig, ServerConfig
from telemetry_relay.server import DeadLetterSink, create_app
from telemetry_relay.warehouse import ParquetWarehouseSink

logger = logging.getLogger(__name__)


def example_offline_capture(client_config: ClientConfig) -> None:
    """Example: Events submitted while offline wait in the durable queue."""
    logger.info('=== Example: Offline Capture ===')

    connectivity = ConnectivityMonitor(initial=False)
    sender, sync = build_client(client_config, connectivity=connectivity)

    sender.send_job_update({'jobId': 'J-100', 'status': 'arrived'})
    sender.send_gps_log({'lat': 51.5072, 'lng': -0.1276, 'timestamp': '2025-03-01T08:00:00Z'})

    status = sync.refresh_status()
    logger.info('Queued: %d, online: %s', status.queued, status.online)

    # Nothing listens on the sample ingest URL, so leave the queue in place
    sync.stop()


def example_server_ingest(server_config: ServerConfig) -> None:
    """Example: Post one batch to the ingestion app and replay it."""
    logger.info('=== Example: Server Ingest ===')

    app = create_app(server_config, secret_fetcher=lambda name: 'local-dev-key')
    batch = {
        'jobs': [{'eventId': 'job-1', 'jobId': 'J-100', 'status': 'done', 'cost': '£42.50'}],
        'gps_logs': [
            {'eventId': 'gps-1', 'lat': '51.5072', 'lng': -0.1276, 'timestamp': 1740816000000},
            {'eventId': 'gps-2', 'lng': -0.1276, 'timestamp': 1740816005000},
        ],
    }
    headers = {'X-API-Key': 'local-dev-key', 'Idempotency-Key': 'example-batch-1'}

    with TestClient(app) as client:
        first = client.post('/', json=batch, headers=headers)
        logger.info('First delivery: %d %s', first.status_code, first.json())

        second = client.post('/', json=batch, headers=headers)
        logger.info(
            'Duplicate delivery: %d (replayed=%s)',
            second.status_code,
            second.headers.get('Idempotent-Replayed', 'false'),
        )


def example_inspect_storage(server_config: ServerConfig) -> None:
    """Example: Load what was stored and what was rejected."""
    logger.info('=== Example: Inspect Storage ===')

    warehouse = ParquetWarehouseSink(server_config.warehouse)
    for table in ('Jobs', 'gps_logs'):
        stored: pd.DataFrame = warehouse.load_table(table)
        logger.info('%s: %d rows, partitions %s', table, len(stored), warehouse.list_partition_dates(table))
        if not stored.empty:
            print(stored.head())

    dead_letters = DeadLetterSink(server_config.dead_letter.path)
    rejected: pd.DataFrame = dead_letters.to_dataframe()
    logger.info('Dead-lettered rows: %d', len(rejected))
    if not rejected.empty:
        print(rejected[['table', 'insertId', 'errors']])
    dead_letters.close()


def main() -> None:
    """Run all examples against a scratch directory."""
    config = load_config('config/relay_config.yaml')
    setup_logger(logging_level=logging.INFO)

    if config.client is None or config.server is None:
        logger.error('The example needs both client and server sections')
        return

    with tempfile.TemporaryDirectory() as scratch:
        scratch_path = Path(scratch)
        client_config = config.client.model_copy(
            update={
                'queue': config.client.queue.model_copy(
                    update={'database_path': scratch_path / 'queue.db'}
                )
            }
        )
        server_config = config.server.model_copy(
            update={
                'api_key': None,
                'idempotency': config.server.idempotency.model_copy(
                    update={'database_path': scratch_path / 'idempotency.db'}
                ),
                'dead_letter': config.server.dead_letter.model_copy(
                    update={'path': scratch_path / 'dead_letter.jsonl'}
                ),
                'warehouse': config.server.warehouse.model_copy(
                    update={'parquet_path': scratch_path / 'warehouse'}
                ),
            }
        )

        example_offline_capture(client_config)
        example_server_ingest(server_config)
        example_inspect_storage(server_config)

    logger.info('All examples complete!')


if __name__ == '__main__':
    main()
