"""
Value Sanitization Module

Turns raw source values (from PyMySQL result rows or decoded audit JSON) into
values PostgreSQL will accept for the mapped column type.

sanitize_value never raises for a known column type: values that cannot be
represented collapse to NULL when the column allows it, otherwise to a safe
type-specific default. Rows are carried as ordered mappings of column name to
TaggedValue so writers can tell binary and JSON values apart without guessing.
"""

from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, NamedTuple, Optional
import base64
import json
import logging
import math
import re

from mysql_pg_replication.events import ReplicationEventSink
from mysql_pg_replication.models import ColumnDef
from mysql_pg_replication.type_mapping import (
    BINARY_TYPES,
    CHAR_TYPES,
    DATE_TYPES,
    DATETIME_TYPES,
    DECIMAL_TYPES,
    FLOAT_TYPES,
    INTEGER_TYPES,
    TIME_TYPES,
    ZERO_DATES,
    get_enum_values,
    is_boolean,
    should_force_nullable,
    strip_quotes,
)

logger = logging.getLogger(__name__)


class ValueKind(Enum):
    NULL = 'null'
    BOOLEAN = 'boolean'
    INTEGER = 'integer'
    FLOAT = 'float'
    DECIMAL = 'decimal'
    TEXT = 'text'
    BINARY = 'binary'
    DATE = 'date'
    DATETIME = 'datetime'
    TIME = 'time'
    JSON = 'json'


class TaggedValue(NamedTuple):
    kind: ValueKind
    value: Any


# Inclusive ranges of the PostgreSQL integer type each source type maps to
SMALLINT_RANGE = (-32768, 32767)
INTEGER_RANGE = (-2147483648, 2147483647)
BIGINT_RANGE = (-9223372036854775808, 9223372036854775807)

INTEGER_RANGES = {
    'tinyint': SMALLINT_RANGE,
    'smallint': SMALLINT_RANGE,
    'year': SMALLINT_RANGE,
    'mediumint': INTEGER_RANGE,
    'int': INTEGER_RANGE,
    'integer': INTEGER_RANGE,
    'bigint': BIGINT_RANGE,
}

SAFE_DATE = '1970-01-01'
SAFE_DATETIME = '1970-01-01 00:00:00'
SAFE_TIME = '00:00:00'

_DATETIME_FORMATS = (
    '%Y-%m-%d %H:%M:%S.%f',
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%dT%H:%M:%S.%f',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%d %H:%M',
    '%Y-%m-%d',
)
_TIME_FORMATS = ('%H:%M:%S.%f', '%H:%M:%S', '%H:%M')
_INTEGER_TEXT = re.compile(r'^[-+]?\d+$')
# Prefix JSON_OBJECT() puts in front of base64-encoded binary column values
_JSON_BINARY_PREFIX = re.compile(r'^base64:type\d+:')

_INVALID = object()


def column_kind(column: ColumnDef) -> ValueKind:
    """Value kind a non-null value of this column is written as."""
    data_type = column.source_type.lower()
    if is_boolean(column):
        return ValueKind.BOOLEAN
    if data_type in INTEGER_TYPES or data_type == 'year':
        return ValueKind.INTEGER
    if data_type in FLOAT_TYPES:
        return ValueKind.FLOAT
    if data_type in DECIMAL_TYPES:
        return ValueKind.DECIMAL
    if data_type in BINARY_TYPES:
        return ValueKind.BINARY
    if data_type in DATE_TYPES:
        return ValueKind.DATE
    if data_type in DATETIME_TYPES:
        return ValueKind.DATETIME
    if data_type in TIME_TYPES:
        return ValueKind.TIME
    if data_type == 'json':
        return ValueKind.JSON
    return ValueKind.TEXT


def kind_of_value(value: Any) -> ValueKind:
    """Best-effort kind for a value whose column is unknown."""
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, float):
        return ValueKind.FLOAT
    if isinstance(value, Decimal):
        return ValueKind.DECIMAL
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueKind.BINARY
    if isinstance(value, datetime):
        return ValueKind.DATETIME
    if isinstance(value, date):
        return ValueKind.DATE
    if isinstance(value, (time, timedelta)):
        return ValueKind.TIME
    if isinstance(value, (dict, list)):
        return ValueKind.JSON
    return ValueKind.TEXT


def _parse_datetime_text(text: str) -> Optional[datetime]:
    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _coerce_boolean(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ('1', 'true', 't', 'yes', 'y', 'on'):
            return True
        if text in ('0', 'false', 'f', 'no', 'n', 'off'):
            return False
        if _INTEGER_TEXT.match(text):
            return int(text) != 0
    return _INVALID


def _coerce_integer(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, bool):
        result = int(value)
    elif isinstance(value, int):
        result = value
    elif isinstance(value, (float, Decimal)):
        if not math.isfinite(value) or value != int(value):
            return _INVALID
        result = int(value)
    elif isinstance(value, str) and _INTEGER_TEXT.match(value.strip()):
        result = int(value.strip())
    else:
        return _INVALID

    low, high = INTEGER_RANGES.get(column.source_type.lower(), BIGINT_RANGE)
    if result < low or result > high:
        return _INVALID
    return result


def _coerce_float(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, (bool, int, float, Decimal)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return _INVALID
    else:
        return _INVALID
    if not math.isfinite(result):
        return _INVALID
    return result


def _coerce_decimal(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        result = Decimal(int(value))
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            return _INVALID
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            return _INVALID
    else:
        return _INVALID
    if not result.is_finite():
        return _INVALID
    return result


def _coerce_date(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text or text in ZERO_DATES or _parse_datetime_text(text) is None:
            return _INVALID
        return text
    return _INVALID


def _coerce_datetime(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text or text in ZERO_DATES or _parse_datetime_text(text) is None:
            return _INVALID
        return text
    return _INVALID


def _coerce_time(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, time):
        return value
    if isinstance(value, timedelta):
        # MySQL TIME spans -838:59:59..838:59:59; PostgreSQL TIME is one day
        seconds = value.total_seconds()
        if seconds < 0 or seconds >= 86400:
            return _INVALID
        return (datetime.min + value).time()
    if isinstance(value, str):
        text = value.strip()
        for fmt in _TIME_FORMATS:
            try:
                datetime.strptime(text, fmt)
                return text
            except ValueError:
                continue
    return _INVALID


def _clean_text(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        text = bytes(value).decode('utf-8', errors='replace')
    elif isinstance(value, str):
        # Lone surrogates cannot be encoded; replace them
        text = value.encode('utf-8', errors='replace').decode('utf-8')
    elif isinstance(value, (datetime, date, time)):
        text = value.isoformat()
    elif isinstance(value, (int, float, Decimal)):
        text = str(value)
    else:
        return _INVALID
    return text.replace('\x00', '')


def _coerce_text(value: Any, column: ColumnDef) -> Any:
    data_type = column.source_type.lower()

    if data_type == 'set' and isinstance(value, (set, frozenset, list, tuple)):
        order = get_enum_values(column.raw_type)
        members = sorted(
            (str(v) for v in value),
            key=lambda v: (order.index(v) if v in order else len(order), v),
        )
        value = ','.join(members)

    text = _clean_text(value)
    if text is _INVALID:
        return _INVALID

    if data_type == 'enum':
        legal = get_enum_values(column.raw_type)
        if legal and text not in legal:
            return _INVALID

    if data_type in CHAR_TYPES and column.max_length is not None and len(text) > column.max_length:
        text = text[:column.max_length]

    return text


def _coerce_json(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, (dict, list, bool, int, float)):
        try:
            return json.dumps(value, ensure_ascii=False, default=str)
        except ValueError:
            return _INVALID
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('utf-8', errors='replace')
    if isinstance(value, str):
        try:
            json.loads(value)
        except ValueError:
            return _INVALID
        return value
    return _INVALID


def _coerce_binary(value: Any, column: ColumnDef) -> Any:
    if isinstance(value, str) and _JSON_BINARY_PREFIX.match(value):
        try:
            return base64.b64decode(_JSON_BINARY_PREFIX.sub('', value), validate=True)
        except ValueError:
            return _INVALID
    return value


_COERCERS = {
    ValueKind.BOOLEAN: _coerce_boolean,
    ValueKind.INTEGER: _coerce_integer,
    ValueKind.FLOAT: _coerce_float,
    ValueKind.DECIMAL: _coerce_decimal,
    ValueKind.DATE: _coerce_date,
    ValueKind.DATETIME: _coerce_datetime,
    ValueKind.TIME: _coerce_time,
    ValueKind.TEXT: _coerce_text,
    ValueKind.JSON: _coerce_json,
    ValueKind.BINARY: _coerce_binary,
}

_TYPE_DEFAULTS = {
    ValueKind.BOOLEAN: False,
    ValueKind.INTEGER: 0,
    ValueKind.FLOAT: 0.0,
    ValueKind.DECIMAL: Decimal('0.0'),
    ValueKind.DATE: SAFE_DATE,
    ValueKind.DATETIME: SAFE_DATETIME,
    ValueKind.TIME: SAFE_TIME,
    ValueKind.TEXT: '',
    ValueKind.JSON: '{}',
    ValueKind.BINARY: b'',
}


def _coerce(value: Any, column: ColumnDef, kind: ValueKind) -> Any:
    try:
        return _COERCERS[kind](value, column)
    except (TypeError, ValueError, ArithmeticError) as e:
        logger.debug(f"Could not coerce {value!r} for {column.name}: {e}")
        return _INVALID


def get_safe_default(column: ColumnDef) -> Any:
    """
    Value to write when a NOT NULL column receives NULL or an invalid value.

    The column's declared default wins when it is a valid value for the type;
    otherwise a fixed type-specific default is used (0, 0.0, '', '1970-01-01',
    '1970-01-01 00:00:00', '00:00:00', '{}', or the first enum value).
    """
    kind = column_kind(column)

    declared = column.default_expr
    if declared is not None:
        candidate = strip_quotes(str(declared))
        is_expression = '(' in candidate or 'current_timestamp' in candidate.lower()
        if candidate.upper() != 'NULL' and not is_expression:
            coerced = _coerce(candidate, column, kind)
            if coerced is not _INVALID:
                return coerced

    if column.source_type.lower() == 'enum':
        legal = get_enum_values(column.raw_type)
        if legal:
            return legal[0]

    return _TYPE_DEFAULTS[kind]


def _representation_only(original: Any, result: Any) -> bool:
    """True when result is the same value in the shape the target expects."""
    if isinstance(original, timedelta) and isinstance(result, time):
        return True
    if isinstance(original, (dict, list, set, frozenset)) and isinstance(result, str):
        return True
    if isinstance(original, (bytes, bytearray)) and isinstance(result, str):
        try:
            return bytes(original).decode('utf-8') == result
        except UnicodeDecodeError:
            return False
    return False


def _changed(original: Any, result: Any) -> bool:
    try:
        if original == result:
            return False
    except (TypeError, ValueError):
        pass
    return not _representation_only(original, result)


def sanitize_value(
    value: Any,
    column: ColumnDef,
    table_name: Optional[str] = None,
    events: Optional[ReplicationEventSink] = None,
) -> Any:
    """
    Make a single value safe to write into the target column.

    Args:
        value: Raw value from the source row or audit payload
        column: Column the value is written to
        table_name: Table name, used when reporting sanitized values
        events: Optional sink notified whenever the value had to change

    Returns:
        Sanitized value (binary values are returned untouched for the caller
        to encode)
    """
    kind = column_kind(column)
    nullable = column.nullable or should_force_nullable(column)

    if value is None:
        result = None if nullable else get_safe_default(column)
    else:
        result = _coerce(value, column, kind)
        if result is _INVALID:
            result = None if nullable else get_safe_default(column)

    if events is not None and _changed(value, result):
        events.value_sanitized(table_name, column.name, column.source_type, value, result)

    return result


def sanitize_row(
    row: Mapping[str, Any],
    columns_by_name: Mapping[str, ColumnDef],
    table_name: Optional[str] = None,
    events: Optional[ReplicationEventSink] = None,
) -> "OrderedDict[str, TaggedValue]":
    """
    Sanitize every value of a row, preserving column order.

    Columns without metadata are passed through untouched and tagged by their
    Python type.
    """
    tagged: "OrderedDict[str, TaggedValue]" = OrderedDict()
    for name, value in row.items():
        column = columns_by_name.get(name)
        if column is None:
            tagged[name] = TaggedValue(kind_of_value(value), value)
            continue
        clean = sanitize_value(value, column, table_name, events)
        kind = ValueKind.NULL if clean is None else column_kind(column)
        tagged[name] = TaggedValue(kind, clean)
    return tagged


def plain_values(tagged: Mapping[str, TaggedValue]) -> Dict[str, Any]:
    """Strip tags, keeping column order."""
    return OrderedDict((name, tv.value) for name, tv in tagged.items())


def to_hex(value: Any) -> str:
    """Hex-encode a binary value for decode(<hex>, 'hex')."""
    if isinstance(value, str):
        value = value.encode('utf-8')
    return bytes(value).hex()
