# telemetry_relay/config/config_models.py
"""
Configuration models for the telemetry relay.

This module provides the Pydantic models for the master configuration file
that controls both halves of the relay: the field client (durable queue and
flush engine) and the ingestion server (idempotency ledger, schema cache,
dead-letter sink and warehouse sink).

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- A single file may configure the client, the server, or both. Field devices
  ship a client-only file; the ingestion service ships a server-only file.

- SecretStr is used for API keys to prevent accidental exposure in logs, repr(),
  or error messages. The actual value must be accessed via `.get_secret_value()`.

Usage:
------
    import yaml
    from telemetry_relay.config.config_models import RelayConfig

    with open('relay_config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = RelayConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'ClientConfig',
    'CompressionType',
    'DeadLetterConfig',
    'FieldDefinition',
    'IdempotencyConfig',
    'LogLevelName',
    'LoggingConfig',
    'QueueConfig',
    'RelayConfig',
    'SchemaCacheConfig',
    'ServerConfig',
    'StreamConfig',
    'TableDefinition',
    'WarehouseConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Numeric equivalents of log level names for validation purposes.
LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Mapping from level name to numeric value, avoiding import of logging module
# in the model layer to maintain separation of concerns.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}

# Compression codecs accepted by pandas.to_parquet() / pyarrow.
CompressionType = Literal['snappy', 'gzip', 'brotli', 'lz4', 'zstd'] | None

# Field modes as declared by the warehouse.
FieldMode = Literal['REQUIRED', 'NULLABLE', 'REPEATED']

WarehouseBackend = Literal['bigquery', 'parquet']


def _validate_http_url(url: str, field_name: str) -> str:
    """Require an http(s) scheme and strip any trailing slash."""
    if not url:
        raise ValueError(f'{field_name} cannot be empty')

    if not url.startswith(('http://', 'https://')):
        raise ValueError(
            f"{field_name} must start with 'http://' or 'https://', got: {url!r}"
        )

    return url.rstrip('/')


# =============================================================================
# Client Configuration
# =============================================================================


class QueueConfig(BaseModel):
    """Configuration for the durable local queue and its flush schedule.

    Backpressure:
        The queue holds at most `max_items` pending submissions. When full, the
        single oldest item (by creation time) is evicted to make room for the
        new one. Payloads larger than `max_payload_bytes` once serialized are
        never queued.

    Retry Schedule:
        A failed delivery is rescheduled with exponential backoff:
        `delay = min(backoff_base_seconds * 2 ** (attempts - 1), backoff_cap_seconds)`

        Example with the defaults (base=2, cap=300):
          Attempt 1: 2 seconds
          Attempt 2: 4 seconds
          Attempt 3: 8 seconds
          ...
          Attempt 9 onwards: 300 seconds

    Attributes:
        database_path: SQLite file backing the queue. Parent directories are
            created on first use.
        max_items: Maximum number of queued submissions (drop-oldest beyond).
        max_payload_bytes: Maximum serialized payload size in bytes.
        backoff_base_seconds: Delay after the first failed attempt.
        backoff_cap_seconds: Ceiling for the retry delay.
        flush_interval_seconds: Period of the background flush timer.
        status_poll_seconds: Period of the status refresh timer.
    """

    model_config = ConfigDict(extra='forbid')

    database_path: Path = Field(
        default=Path('data/telemetry_queue.db'),
        description='SQLite file backing the durable queue',
    )
    max_items: int = Field(
        default=500,
        ge=1,
        le=100_000,
        description='Maximum queued submissions; the oldest is evicted beyond this',
    )
    max_payload_bytes: int = Field(
        default=200 * 1024,
        gt=0,
        description='Maximum serialized payload size accepted into the queue',
    )
    backoff_base_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description='Retry delay after the first failure',
    )
    backoff_cap_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description='Upper bound on the retry delay',
    )
    flush_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description='Seconds between background flush attempts while items remain',
    )
    status_poll_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description='Seconds between queue status refreshes',
    )

    @model_validator(mode='after')
    def validate_backoff_cap_not_below_base(self) -> Self:
        """Ensure the backoff ceiling is not smaller than the first delay.

        Returns:
            The validated model.

        Raises:
            ValueError: If backoff_cap_seconds < backoff_base_seconds.
        """
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError(
                f'backoff_cap_seconds ({self.backoff_cap_seconds}) must be >= '
                f'backoff_base_seconds ({self.backoff_base_seconds})'
            )
        return self


class ClientConfig(BaseModel):
    """Configuration for the field client that submits telemetry batches.

    SSL/TLS Handling:
        Field devices sometimes sit behind TLS-intercepting proxies. The
        verify_ssl field supports three modes:
          - True: Standard verification (default, use in production)
          - False: Disabled verification (insecure, use only when necessary)
          - Path string: Custom CA bundle path
        When use_truststore=True, the operating system certificate store is
        used instead.

    Attributes:
        ingest_url: Full URL of the ingestion endpoint.
        api_key: Optional key sent as X-API-Key (usually injected by a proxy).
        request_timeout: [connect, read] timeout in seconds for each delivery.
        verify_ssl: SSL verification mode.
        use_truststore: Build the SSLContext from the system trust store.
        probe_url: Optional URL polled to detect connectivity.
        queue: Durable queue and flush schedule settings.
    """

    model_config = ConfigDict(extra='forbid')

    ingest_url: str = Field(
        description='Ingestion endpoint URL with scheme, without trailing slash',
    )
    api_key: SecretStr | None = Field(
        default=None,
        description='Optional API key sent as X-API-Key (masked in logs and repr)',
    )
    request_timeout: tuple[int, int] = Field(
        default=(5, 30),
        description='[connect_timeout, read_timeout] in seconds; both must be positive',
    )
    verify_ssl: bool | str = Field(
        default=True,
        description='False to disable SSL, True for system CA, or path to CA bundle',
    )
    use_truststore: bool = Field(
        default=False,
        description='Use truststore library for operating system CA certificates',
    )
    probe_url: str | None = Field(
        default=None,
        description='Health URL polled to detect connectivity; None disables probing',
    )
    queue: QueueConfig = Field(
        default_factory=QueueConfig,
        description='Durable queue settings',
    )

    @field_validator('ingest_url')
    @classmethod
    def validate_ingest_url(cls, ingest_url: str) -> str:
        """Validate and normalize the ingestion URL.

        Args:
            ingest_url: The ingestion endpoint URL to validate.

        Returns:
            Normalized URL without trailing slash.

        Raises:
            ValueError: If URL is empty or missing http/https scheme.
        """
        return _validate_http_url(ingest_url, 'ingest_url')

    @field_validator('probe_url')
    @classmethod
    def validate_probe_url(cls, probe_url: str | None) -> str | None:
        """Validate the optional connectivity probe URL."""
        if probe_url is None:
            return None
        return _validate_http_url(probe_url, 'probe_url')

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers.

        Args:
            timeout: Tuple of [connect_timeout, read_timeout] in seconds.

        Returns:
            The validated timeout tuple.

        Raises:
            ValueError: If either timeout value is non-positive.
        """
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """Validate SSL verification configuration.

        When a string path is provided (for custom CA bundles), verifies
        the file exists and is a regular file (not a directory).

        Raises:
            ValueError: If string path does not exist or is not a file.
        """
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl


# =============================================================================
# Server Configuration
# =============================================================================


class StreamConfig(BaseModel):
    """Routing and rejection policy for one telemetry stream.

    Attributes:
        table: Warehouse table receiving the stream's rows.
        loss_tolerant: When True, rows missing required fields are dropped to
            the dead-letter sink and the batch continues. When False, such a
            row rejects the whole request.
    """

    model_config = ConfigDict(extra='forbid')

    table: str = Field(min_length=1, description='Destination warehouse table')
    loss_tolerant: bool = Field(
        default=False,
        description='Drop invalid rows instead of rejecting the batch',
    )


def _default_streams() -> dict[str, StreamConfig]:
    return {
        'intended_route': StreamConfig(table='Intended_route_table'),
        'jobs': StreamConfig(table='Jobs'),
        'shifts': StreamConfig(table='Shifts'),
        'gps_logs': StreamConfig(table='gps_logs', loss_tolerant=True),
    }


class SchemaCacheConfig(BaseModel):
    """Configuration for the warehouse schema cache.

    Attributes:
        ttl_seconds: Age after which a cached schema is served stale while a
            background refresh runs.
        refresh_attempts: Attempts per refresh against the warehouse metadata
            API before giving up and keeping the previous snapshot.
        warm_on_startup: Fetch every configured stream table at startup.
    """

    model_config = ConfigDict(extra='forbid')

    ttl_seconds: float = Field(default=600.0, gt=0.0)
    refresh_attempts: int = Field(default=3, ge=1, le=10)
    warm_on_startup: bool = True


class IdempotencyConfig(BaseModel):
    """Configuration for the server-side idempotency ledger.

    Attributes:
        database_path: SQLite file holding ledger records.
        ttl_hours: Lifetime of a recorded outcome.
        reservation_ttl_seconds: Lifetime of an in-flight reservation. A
            handler that crashes mid-request stops blocking the key after this.
    """

    model_config = ConfigDict(extra='forbid')

    database_path: Path = Field(default=Path('data/idempotency.db'))
    ttl_hours: float = Field(default=24.0, gt=0.0)
    reservation_ttl_seconds: float = Field(default=300.0, gt=0.0)


class DeadLetterConfig(BaseModel):
    """Configuration for the append-only dead-letter log.

    Attributes:
        path: JSON Lines file receiving one entry per rejected row.
    """

    model_config = ConfigDict(extra='forbid')

    path: Path = Field(default=Path('data/dead_letter.jsonl'))

    @field_validator('path', mode='before')
    @classmethod
    def normalize_dead_letter_path(cls, path_value: str | Path) -> Path:
        """Normalize path and ensure .jsonl extension."""
        path_string: str = str(path_value)

        if not path_string.lower().endswith('.jsonl'):
            path_string = f'{path_string}.jsonl'

        return Path(path_string)


class FieldDefinition(BaseModel):
    """Declared type and mode of one warehouse column."""

    model_config = ConfigDict(extra='forbid')

    type: str = Field(min_length=1, description="Warehouse type name, e.g. 'STRING'")
    mode: FieldMode = 'NULLABLE'

    @field_validator('type')
    @classmethod
    def normalize_type_name(cls, type_name: str) -> str:
        """Store type names upper-cased, as the warehouse reports them."""
        return type_name.upper()


class TableDefinition(BaseModel):
    """Declared schema of a table served by the local Parquet warehouse."""

    model_config = ConfigDict(extra='forbid')

    fields: dict[str, FieldDefinition] = Field(min_length=1)


class WarehouseConfig(BaseModel):
    """Configuration for the warehouse sink.

    Backends:
        - bigquery: Streaming inserts into `project_id.dataset.<table>`.
          Requires the optional google-cloud-bigquery dependency.
        - parquet: Date-partitioned Parquet tables under `parquet_path`,
          with schemas declared in `tables`. Useful for local runs and tests.

    Attributes:
        backend: Which sink implementation to construct.
        project_id: Cloud project for the BigQuery backend.
        dataset: Dataset holding the destination tables.
        parquet_path: Root directory for the Parquet backend.
        parquet_compression: Compression codec for the Parquet backend.
        tables: Declared table schemas for the Parquet backend.
    """

    model_config = ConfigDict(extra='forbid')

    backend: WarehouseBackend = 'bigquery'
    project_id: str | None = None
    dataset: str = 'Mobile_Fitters'
    parquet_path: Path | None = None
    parquet_compression: CompressionType = 'snappy'
    tables: dict[str, TableDefinition] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_backend_requirements(self) -> Self:
        """Ensure the selected backend has the settings it needs.

        Raises:
            ValueError: If a required backend setting is missing.
        """
        if self.backend == 'bigquery' and not self.project_id:
            raise ValueError("backend 'bigquery' requires project_id")
        if self.backend == 'parquet' and self.parquet_path is None:
            raise ValueError("backend 'parquet' requires parquet_path")
        return self


class ServerConfig(BaseModel):
    """Configuration for the ingestion server.

    Attributes:
        service_version: Version string reported by the config endpoint.
        environment: Deployment environment name reported by the config endpoint.
        api_key: Ingest API key. When unset, the key is resolved through
            secret retrieval using api_key_secret_name.
        api_key_secret_name: Name looked up in the environment and then in the
            external secret store.
        require_api_key: Reject requests without a matching X-API-Key.
        streams: Stream name to destination mapping.
        schema_cache: Schema cache settings.
        idempotency: Idempotency ledger settings.
        dead_letter: Dead-letter sink settings.
        warehouse: Warehouse sink settings.
    """

    model_config = ConfigDict(extra='forbid')

    service_version: str = '1.0.0'
    environment: str = 'development'
    api_key: SecretStr | None = None
    api_key_secret_name: str = 'ROUTEMASTER_INGEST_API_KEY'
    require_api_key: bool = True
    streams: dict[str, StreamConfig] = Field(default_factory=_default_streams)
    schema_cache: SchemaCacheConfig = Field(default_factory=SchemaCacheConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    dead_letter: DeadLetterConfig = Field(default_factory=DeadLetterConfig)
    warehouse: WarehouseConfig

    @field_validator('streams')
    @classmethod
    def validate_stream_names_are_lowercase(
        cls, streams: dict[str, StreamConfig]
    ) -> dict[str, StreamConfig]:
        """Ensure stream names follow the lowercase naming convention.

        Stream names are the top-level keys of the ingestion request body,
        so they must match exactly what clients send.

        Raises:
            ValueError: If any stream name contains uppercase characters, or
                no streams are configured.
        """
        if not streams:
            raise ValueError('At least one stream must be configured')

        for stream_name in streams:
            if stream_name != stream_name.lower():
                raise ValueError(
                    f"Stream name must be lowercase: '{stream_name}'. "
                    f"Use '{stream_name.lower()}' instead."
                )

        return streams


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Supports dual-destination logging: console (always enabled) and optional
    file output. Levels can be specified as names ('DEBUG', 'INFO', etc.) or
    as their numeric equivalents (10, 20, etc.).

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output. Defaults to DEBUG if
            file_path is provided.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(
        default=None,
        description='Log file path (.log extension auto-added). None disables file logging.',
    )
    console_level: LogLevelName | int = Field(
        default='INFO',
        description="Console log level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', or int",
    )
    file_level: LogLevelName | int | None = Field(
        default=None,
        description='File log level. None disables file logging.',
    )

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Validate numeric log levels are standard Python logging values.

        Raises:
            ValueError: If numeric level is not a standard logging value.
        """
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Ensure file_path and file_level are consistently configured.

        If file_path is provided without file_level, defaults to DEBUG.
        If file_level is provided without file_path, raises an error since
        there's nowhere to write the logs.

        Raises:
            ValueError: If file_level is set but file_path is missing.
        """
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if file logging is off."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class RelayConfig(BaseModel):
    """Root configuration model for the telemetry relay.

    Aggregates the logging section with the client and/or server sections.
    At least one of client or server must be present.

    Loading Example:
    ```python
        import yaml
        from pathlib import Path

        config_path = Path('config/relay_config.yaml')
        with config_path.open('r', encoding='utf-8') as config_file:
            raw_config = yaml.safe_load(config_file)

        config = RelayConfig.model_validate(raw_config)
    ```

    Attributes:
        logging: Application logging configuration.
        client: Field client configuration, if this process submits telemetry.
        server: Ingestion server configuration, if this process receives it.
    """

    model_config = ConfigDict(extra='forbid')

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description='Application logging configuration',
    )
    client: ClientConfig | None = Field(
        default=None,
        description='Field client settings (durable queue, flush engine)',
    )
    server: ServerConfig | None = Field(
        default=None,
        description='Ingestion server settings (ledger, schema cache, sinks)',
    )

    @model_validator(mode='after')
    def validate_at_least_one_role(self) -> Self:
        """Ensure the configuration describes a client, a server, or both.

        Raises:
            ValueError: If neither client nor server is configured.
        """
        if self.client is None and self.server is None:
            raise ValueError(
                'Configuration must define a client section, a server section, or both'
            )
        return self
