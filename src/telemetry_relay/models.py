# telemetry_relay/models.py
"""
Shared data models for the telemetry relay.

These models are the contracts between the relay's components:

- QueueItem flows between the durable queue, the flush engine and the
  transport on the client side.
- IdempotencyRecord, TableSchema, ProcessedRow and DeadLetterEntry flow
  between the ledger, the schema cache, the normalizer, the dead-letter sink
  and the ingestion service on the server side.

Field names are snake_case in Python. DeadLetterEntry serializes with the
camelCase keys of the persisted dead-letter format.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

__all__: list[str] = [
    'DeadLetterEntry',
    'DeliveryOutcome',
    'DeliveryResult',
    'FieldSpec',
    'FieldType',
    'IdempotencyRecord',
    'ProcessedRow',
    'QueueItem',
    'StreamResult',
    'SyncStatus',
    'TableSchema',
    'canonical_field_type',
]

logger: logging.Logger = logging.getLogger(__name__)


# =============================================================================
# Warehouse Field Types
# =============================================================================


class FieldType(str, Enum):
    """Canonical warehouse column types understood by the normalizer."""

    TIMESTAMP = 'TIMESTAMP'
    DATETIME = 'DATETIME'
    DATE = 'DATE'
    NUMERIC = 'NUMERIC'
    FLOAT = 'FLOAT'
    INTEGER = 'INTEGER'
    BOOLEAN = 'BOOLEAN'
    STRING = 'STRING'


# Warehouse type names (legacy and standard SQL spellings) to canonical type.
_FIELD_TYPE_ALIASES: Final[dict[str, FieldType]] = {
    'TIMESTAMP': FieldType.TIMESTAMP,
    'DATETIME': FieldType.DATETIME,
    'DATE': FieldType.DATE,
    'NUMERIC': FieldType.NUMERIC,
    'BIGNUMERIC': FieldType.NUMERIC,
    'DECIMAL': FieldType.NUMERIC,
    'FLOAT': FieldType.FLOAT,
    'FLOAT64': FieldType.FLOAT,
    'INTEGER': FieldType.INTEGER,
    'INT64': FieldType.INTEGER,
    'BOOLEAN': FieldType.BOOLEAN,
    'BOOL': FieldType.BOOLEAN,
    'STRING': FieldType.STRING,
}


def canonical_field_type(type_name: str) -> FieldType | None:
    """
    Map a warehouse type name to its canonical FieldType.

    Args:
        type_name: Type name as reported by the warehouse (any case).

    Returns:
        The canonical FieldType, or None for types the normalizer does not
        coerce (GEOGRAPHY, JSON, RECORD, ...).
    """
    return _FIELD_TYPE_ALIASES.get(type_name.upper())


class FieldSpec(BaseModel):
    """Declared type and required-ness of one warehouse column."""

    model_config = ConfigDict(frozen=True)

    type: str
    required: bool = False


class TableSchema(BaseModel):
    """
    Cached description of a warehouse table.

    Field names keep the warehouse's spelling; lookups are case-insensitive.

    Attributes:
        table: Warehouse table name.
        fields: Column name to FieldSpec mapping.
        fetched_at: Cache clock reading when the schema was fetched.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    fields: dict[str, FieldSpec]
    fetched_at: float

    _by_lower_name: dict[str, str] = PrivateAttr(default_factory=dict)

    def model_post_init(self, context: Any, /) -> None:
        self._by_lower_name = {name.lower(): name for name in self.fields}

    def has_field(self, name: str) -> bool:
        return name.lower() in self._by_lower_name

    @property
    def required_fields(self) -> list[str]:
        return [name for name, spec in self.fields.items() if spec.required]


# =============================================================================
# Client Side
# =============================================================================


class QueueItem(BaseModel):
    """
    One pending delivery held by the durable queue.

    Attributes:
        id: Client-generated idempotency key, unique per logical submission.
        request_id: Correlation identifier for tracing, distinct from id.
        destination: Endpoint URL the payload is delivered to.
        payload: Event batch (stream name to list of events).
        created_at: Submission time in epoch seconds; defines FIFO order and
            strictly increases per queue.
        attempts: Delivery attempts so far.
        next_attempt_at: Earliest epoch second at which a retry is permitted.
        last_error: Most recent failure description, for diagnostics.
    """

    model_config = ConfigDict(extra='forbid')

    id: str = Field(min_length=1)
    request_id: str
    destination: str
    payload: dict[str, Any]
    created_at: float
    attempts: int = Field(default=0, ge=0)
    next_attempt_at: float
    last_error: str | None = None


class DeliveryOutcome(str, Enum):
    """Classification of a single delivery attempt."""

    DELIVERED = 'delivered'  # 2xx
    REJECTED = 'rejected'  # 4xx except 429; terminal
    RETRY = 'retry'  # 5xx, 429, transport failure


class DeliveryResult(BaseModel):
    """Outcome of one delivery attempt, with diagnostics."""

    model_config = ConfigDict(frozen=True)

    outcome: DeliveryOutcome
    status_code: int | None = None
    error: str | None = None


class SyncStatus(BaseModel):
    """Observable client sync state, refreshed by the status poll timer."""

    queued: int = 0
    is_flushing: bool = False
    online: bool = True
    evicted: int = 0
    last_flush_at: float | None = None
    last_error: str | None = None


# =============================================================================
# Server Side
# =============================================================================


class IdempotencyRecord(BaseModel):
    """
    Memo of a processed submission, replayed verbatim on duplicate delivery.

    A record with status None is an in-flight reservation, not an outcome.
    """

    model_config = ConfigDict(frozen=True)

    endpoint: str
    idempotency_key: str
    status: int | None
    body: dict[str, Any] | None
    created_at: datetime
    expires_at: datetime


class ProcessedRow(BaseModel):
    """
    Result of running one raw event through the normalizer.

    Attributes:
        event_id: The row's eventId, synthesized when the raw row had none.
        original: The raw row with its eventId ensured, for dead-lettering.
        row: Whitelisted, coerced row ready for insertion; None when invalid.
        missing_required: Required schema fields that coerced to null.
        errors: Other reasons the row cannot be inserted.
    """

    event_id: str
    original: Any
    row: dict[str, Any] | None = None
    missing_required: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.row is not None and not self.missing_required and not self.errors

    @property
    def reason(self) -> str:
        """Human-readable rejection reason, empty for valid rows."""
        reasons: list[str] = list(self.errors)
        if self.missing_required:
            reasons.append(
                f'Missing REQUIRED fields: {", ".join(self.missing_required)}'
            )
        return '; '.join(reasons)


class DeadLetterEntry(BaseModel):
    """
    One rejected row as persisted in the dead-letter log.

    Serialize with `model_dump(by_alias=True)` to obtain the persisted keys
    `{table, insertId, receivedAt, payload, errors, requestId}`.
    """

    model_config = ConfigDict(populate_by_name=True)

    table: str
    insert_id: str = Field(alias='insertId')
    received_at: str = Field(alias='receivedAt')
    payload: Any
    errors: Any
    request_id: str | None = Field(default=None, alias='requestId')


class StreamResult(BaseModel):
    """Per-stream ingestion counts reported to the client."""

    inserted: int = 0
    dropped: int = 0
    error: str | None = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
