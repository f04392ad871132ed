# telemetry_relay/server/normalizer.py
"""
Schema-driven row normalization and validation.

process_row() turns one raw event into either an insertable row or a rejection
reason. The steps run in a fixed order:

1. Ensure an eventId; synthesize `server-<hex>` when absent.
2. Apply field aliases (timestamp <-> timestampt) without overwriting a
   populated destination.
3. Whitelist: keep only schema fields, matched case-insensitively.
4. Coerce each kept value to the field's declared type.
5. Flag required fields whose value is absent or coerced to null.

Coercion rules (normalize_value):
---------------------------------
    TIMESTAMP  parsed instant, rendered 'YYYY-MM-DDTHH:MM:SS.mmmZ' (UTC)
    DATETIME   parsed instant, rendered 'YYYY-MM-DD HH:MM:SS.mmm' (UTC, no zone)
    DATE       parsed instant, rendered 'YYYY-MM-DD'
    NUMERIC    strings stripped to [0-9.-]; rendered with 9 decimal places
    FLOAT      strings stripped to [0-9.-]; parsed to float
    INTEGER    strings stripped to [0-9-]; leading integer parsed;
               numbers floored; non-finite -> null
    BOOLEAN    True, 'true', 'TRUE', '1' or 1 -> True; anything else False
    STRING     str() of the value (booleans lower-case, containers as JSON)

Null, a blank or whitespace-only string coerce to null for every type.
Numbers given for temporal fields are epoch milliseconds.
"""

import json
import logging
import math
import re
import uuid
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any, Final

import numpy as np
import pandas as pd

from telemetry_relay.models import FieldType, ProcessedRow, TableSchema, canonical_field_type

__all__: list[str] = [
    'EVENT_ID_FIELD',
    'FIELD_ALIASES',
    'normalize_value',
    'process_row',
    'reject_row',
]

logger: logging.Logger = logging.getLogger(__name__)

EVENT_ID_FIELD: Final[str] = 'eventId'

# Historically equivalent column names; either populates the other.
FIELD_ALIASES: Final[tuple[tuple[str, str], ...]] = (('timestamp', 'timestampt'),)

NUMERIC_SCALE: Final[Decimal] = Decimal('1.000000000')
# BIGNUMERIC holds up to 76 digits; anything wider is not representable
_NUMERIC_CONTEXT: Final[Context] = Context(prec=80)

_NON_DECIMAL_CHARS: Final[re.Pattern[str]] = re.compile(r'[^0-9.\-]')
_NON_INTEGER_CHARS: Final[re.Pattern[str]] = re.compile(r'[^0-9\-]')
_LEADING_INTEGER: Final[re.Pattern[str]] = re.compile(r'-?\d+')

_TRUE_STRINGS: Final[frozenset[str]] = frozenset({'true', 'TRUE', '1'})


# =============================================================================
# Value Coercion
# =============================================================================


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_instant(value: Any) -> pd.Timestamp | None:
    """Parse a temporal value to a UTC Timestamp, or None if invalid."""
    if isinstance(value, bool):
        return None

    try:
        if isinstance(value, int | float):
            if not math.isfinite(value):
                return None
            parsed = pd.to_datetime(value, unit='ms', utc=True, errors='coerce')
        elif isinstance(value, str | datetime | date | pd.Timestamp | np.datetime64):
            parsed = pd.to_datetime(value, utc=True, errors='coerce')
        else:
            return None
    except (ValueError, TypeError, OverflowError) as parse_error:
        logger.debug('Unparseable temporal value %r: %s', value, parse_error)
        return None

    if parsed is None or pd.isna(parsed):
        return None
    return parsed


def _to_numeric(value: Any) -> Decimal | None:
    """Shared NUMERIC/FLOAT parsing: strip strings, reject bools and non-finite."""
    if isinstance(value, bool):
        return None

    if isinstance(value, str):
        cleaned: str = _NON_DECIMAL_CHARS.sub('', value)
        if not cleaned:
            return None
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            return None
    elif isinstance(value, int):
        number = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            return None
        number = Decimal(repr(value))
    elif isinstance(value, Decimal):
        number = value
    else:
        return None

    return number if number.is_finite() else None


def _to_integer(value: Any) -> int | None:
    if isinstance(value, bool):
        return None

    if isinstance(value, str):
        # Dots are stripped too, so '12.7' reads as 127
        match: re.Match[str] | None = _LEADING_INTEGER.match(
            _NON_INTEGER_CHARS.sub('', value)
        )
        return int(match.group()) if match else None

    if isinstance(value, int):
        return value

    if isinstance(value, float | Decimal):
        if not math.isfinite(value):
            return None
        return math.floor(value)

    return None


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value in _TRUE_STRINGS
    if isinstance(value, int | float):
        return value == 1
    return False


def _to_string(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


def normalize_value(value: Any, type_name: str) -> Any:
    """
    Coerce a raw value to the representation expected for a warehouse type.

    Args:
        value: Raw value from the event.
        type_name: Warehouse type name (any case; legacy and standard SQL
            spellings accepted).

    Returns:
        The coerced value, None when the value is null/blank or cannot be
        coerced, or the value unchanged for types without coercion rules
        (GEOGRAPHY, JSON, ...).

    Example:
        >>> normalize_value('  £12.345abc ', 'NUMERIC')
        '12.345000000'
        >>> normalize_value('TRUE', 'BOOLEAN')
        True
    """
    if isinstance(value, np.generic):
        value = value.item()

    if _is_blank(value):
        return None

    field_type: FieldType | None = canonical_field_type(type_name)

    match field_type:
        case FieldType.TIMESTAMP:
            instant: pd.Timestamp | None = _parse_instant(value)
            if instant is None:
                return None
            return instant.isoformat(timespec='milliseconds').replace('+00:00', 'Z')

        case FieldType.DATETIME:
            instant = _parse_instant(value)
            if instant is None:
                return None
            return instant.tz_localize(None).isoformat(sep=' ', timespec='milliseconds')

        case FieldType.DATE:
            instant = _parse_instant(value)
            return instant.date().isoformat() if instant is not None else None

        case FieldType.NUMERIC:
            number: Decimal | None = _to_numeric(value)
            if number is None:
                return None
            try:
                scaled: Decimal = number.quantize(
                    NUMERIC_SCALE, rounding=ROUND_HALF_UP, context=_NUMERIC_CONTEXT
                )
            except InvalidOperation:
                logger.debug('NUMERIC value out of range: %r', value)
                return None
            return f'{scaled:f}'

        case FieldType.FLOAT:
            number = _to_numeric(value)
            return float(number) if number is not None else None

        case FieldType.INTEGER:
            return _to_integer(value)

        case FieldType.BOOLEAN:
            return _to_boolean(value)

        case FieldType.STRING:
            return _to_string(value)

        case None:
            return value


# =============================================================================
# Row Processing
# =============================================================================


def _synthesize_event_id() -> str:
    return f'server-{uuid.uuid4().hex}'


def _apply_aliases(schema: TableSchema, row: dict[str, Any]) -> None:
    for first, second in FIELD_ALIASES:
        for source, destination in ((first, second), (second, first)):
            if (
                schema.has_field(destination)
                and not _is_blank(row.get(source))
                and _is_blank(row.get(destination))
            ):
                row[destination] = row[source]


def _stamp_event_id(table: str, raw_row: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    row: dict[str, Any] = dict(raw_row)
    event_id: Any = row.get(EVENT_ID_FIELD)
    if _is_blank(event_id):
        event_id = _synthesize_event_id()
        row[EVENT_ID_FIELD] = event_id
        logger.warning('Row for %s missing eventId, generated %s', table, event_id)
    return str(event_id), row


def reject_row(table: str, raw_row: Any, reason: str) -> ProcessedRow:
    """Build a rejected ProcessedRow without schema processing."""
    if not isinstance(raw_row, dict):
        return ProcessedRow(
            event_id=_synthesize_event_id(), original=raw_row, errors=[reason]
        )
    event_id, row = _stamp_event_id(table, raw_row)
    return ProcessedRow(event_id=event_id, original=row, errors=[reason])


def process_row(schema: TableSchema, raw_row: Any) -> ProcessedRow:
    """
    Normalize and validate one raw event against a table schema.

    Args:
        schema: Cached schema of the destination table.
        raw_row: The event as received; expected to be a JSON object.

    Returns:
        ProcessedRow. `row` holds the whitelisted, coerced values when the
        event is insertable; otherwise `missing_required` or `errors` say why.
    """
    if not isinstance(raw_row, dict):
        return reject_row(
            schema.table, raw_row, f'Row is not an object: {type(raw_row).__name__}'
        )

    event_id, row = _stamp_event_id(schema.table, raw_row)
    original: dict[str, Any] = dict(row)

    _apply_aliases(schema, row)

    by_lower_name: dict[str, Any] = {str(key).lower(): value for key, value in row.items()}

    safe_row: dict[str, Any] = {}
    missing_required: list[str] = []

    for field_name, field_spec in schema.fields.items():
        lower_name: str = field_name.lower()
        if lower_name not in by_lower_name or by_lower_name[lower_name] is None:
            if field_spec.required:
                missing_required.append(field_name)
            continue

        coerced: Any = normalize_value(by_lower_name[lower_name], field_spec.type)
        if coerced is None and field_spec.required:
            missing_required.append(field_name)
            continue
        safe_row[field_name] = coerced

    if missing_required:
        return ProcessedRow(
            event_id=event_id,
            original=original,
            missing_required=missing_required,
        )

    return ProcessedRow(event_id=event_id, original=original, row=safe_row)
