"""
Configuration Package for Telemetry Relay.

Exposes the main configuration models and the loader function.
"""

from telemetry_relay.config.config_models import (
    ClientConfig,
    CompressionType,
    DeadLetterConfig,
    FieldDefinition,
    IdempotencyConfig,
    LoggingConfig,
    QueueConfig,
    RelayConfig,
    SchemaCacheConfig,
    ServerConfig,
    StreamConfig,
    TableDefinition,
    WarehouseConfig,
)
from telemetry_relay.config.loader import load_config

__all__: list[str] = [
    'ClientConfig',
    'CompressionType',
    'DeadLetterConfig',
    'FieldDefinition',
    'IdempotencyConfig',
    'LoggingConfig',
    'QueueConfig',
    'RelayConfig',
    'SchemaCacheConfig',
    'ServerConfig',
    'StreamConfig',
    'TableDefinition',
    'WarehouseConfig',
    'load_config',
]
