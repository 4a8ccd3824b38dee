"""
MySQL/MariaDB to PostgreSQL Type Mapping Module

This module maps source column definitions to PostgreSQL column types and
DDL defaults, and decides when a NOT NULL source column has to be created
nullable in the target.
"""

from typing import List, Optional
import logging
import re

from mysql_pg_replication.models import ColumnDef

logger = logging.getLogger(__name__)


INTEGER_TYPES = frozenset(['tinyint', 'smallint', 'mediumint', 'int', 'integer', 'bigint'])
FLOAT_TYPES = frozenset(['float', 'double', 'real'])
DECIMAL_TYPES = frozenset(['decimal', 'numeric'])
CHAR_TYPES = frozenset(['char', 'varchar'])
TEXT_TYPES = frozenset(['text', 'tinytext', 'mediumtext', 'longtext'])
BINARY_TYPES = frozenset([
    'blob', 'tinyblob', 'mediumblob', 'longblob', 'binary', 'varbinary',
])
DATE_TYPES = frozenset(['date'])
DATETIME_TYPES = frozenset(['datetime', 'timestamp'])
TIME_TYPES = frozenset(['time'])
DATE_LIKE_TYPES = DATE_TYPES | DATETIME_TYPES | TIME_TYPES

ZERO_DATES = frozenset(['0000-00-00', '0000-00-00 00:00:00'])

# varchar wider than this becomes TEXT
MAX_VARCHAR_LENGTH = 10000
ENUM_COLUMN_LENGTH = 50

# Direct data type -> PostgreSQL type mappings (no width or flags involved)
TYPE_MAPPING = {
    'tinyint': 'SMALLINT',
    'smallint': 'SMALLINT',
    'mediumint': 'INTEGER',
    'int': 'INTEGER',
    'integer': 'INTEGER',
    'bigint': 'BIGINT',
    'float': 'REAL',
    'text': 'TEXT',
    'tinytext': 'TEXT',
    'mediumtext': 'TEXT',
    'longtext': 'TEXT',
    'blob': 'BYTEA',
    'tinyblob': 'BYTEA',
    'mediumblob': 'BYTEA',
    'longblob': 'BYTEA',
    'binary': 'BYTEA',
    'varbinary': 'BYTEA',
    'date': 'DATE',
    'datetime': 'TIMESTAMP',
    'timestamp': 'TIMESTAMP',
    'time': 'TIME',
    'year': 'SMALLINT',
    'set': 'TEXT',
    'json': 'JSONB',
}

_NUMERIC_LITERAL = re.compile(r'^-?\d+(\.\d+)?([eE][-+]?\d+)?$')
_ENUM_BODY = re.compile(r"^\s*(?:enum|set)\s*\((.*)\)\s*$", re.IGNORECASE | re.DOTALL)


def is_boolean(column: ColumnDef) -> bool:
    """tinyint(1) columns are MySQL's boolean convention."""
    return 'tinyint(1)' in column.raw_type.lower()


def map_type(column: ColumnDef) -> str:
    """
    Map a source column definition to its PostgreSQL column type.

    Auto-increment takes precedence over the base type, then tinyint(1)
    becomes BOOLEAN, then the data type decides. Unknown types fall back to TEXT.

    Args:
        column: Source column definition

    Returns:
        PostgreSQL type string
    """
    data_type = column.source_type.lower()

    if column.is_auto_increment:
        if data_type == 'bigint':
            return 'BIGSERIAL'
        if data_type in ('tinyint', 'smallint'):
            return 'SMALLSERIAL'
        return 'SERIAL'

    if is_boolean(column):
        return 'BOOLEAN'

    if data_type in ('double', 'decimal', 'numeric'):
        precision = column.precision if column.precision is not None else 10
        scale = column.scale if column.scale is not None else 0
        return f"NUMERIC({precision},{scale})"

    if data_type == 'char':
        return f"CHAR({column.max_length or 1})"

    if data_type == 'varchar':
        length = column.max_length if column.max_length is not None else 255
        if length > MAX_VARCHAR_LENGTH:
            return 'TEXT'
        return f"VARCHAR({length})"

    if data_type == 'enum':
        # Legal values are enforced by the value sanitizer, not a CHECK constraint
        return f"VARCHAR({ENUM_COLUMN_LENGTH})"

    if data_type in TYPE_MAPPING:
        return TYPE_MAPPING[data_type]

    logger.warning(f"Unknown source type '{column.source_type}' for column {column.name}, using TEXT")
    return 'TEXT'


def get_enum_values(raw_type: str) -> List[str]:
    """
    Extract the legal values of an enum (or set) column type.

    Example:
        "enum('draft','published')" -> ['draft', 'published']
    """
    match = _ENUM_BODY.match(raw_type or '')
    if not match:
        return []

    values = []
    for item in re.findall(r"'((?:[^']|'')*)'", match.group(1)):
        values.append(item.replace("''", "'"))
    return values


def strip_quotes(value: str) -> str:
    return value.strip().strip("'\"")


def is_zero_date(value) -> bool:
    return isinstance(value, str) and strip_quotes(value) in ZERO_DATES


def is_nullable(column: ColumnDef) -> bool:
    return column.nullable


def should_force_nullable(column: ColumnDef) -> bool:
    """
    Whether a NOT NULL source column must be created nullable in the target.

    True when the column has no usable default, or when its default is a
    zero-date on a date/time column (PostgreSQL rejects '0000-00-00').
    """
    if column.nullable or column.strict_nullability:
        return False

    default = column.default_expr
    if default is None:
        return True

    normalized = strip_quotes(str(default))
    if normalized == '' or normalized.upper() == 'NULL':
        return True

    if normalized in ZERO_DATES and column.source_type.lower() in DATE_LIKE_TYPES:
        return True

    return False


def map_default_value(column: ColumnDef) -> Optional[str]:
    """
    Translate a source column default into a PostgreSQL DDL default expression.

    Args:
        column: Source column definition

    Returns:
        Default expression, or None when the column gets no DDL default
    """
    default = column.default_expr
    if default is None or str(default).strip().upper() == 'NULL':
        return None

    raw = str(default)
    normalized = strip_quotes(raw)

    if is_boolean(column) and normalized in ('0', '1'):
        return 'true' if normalized == '1' else 'false'

    if normalized in ZERO_DATES:
        return None

    if 'current_timestamp' in raw.lower():
        return 'CURRENT_TIMESTAMP'

    if _NUMERIC_LITERAL.match(normalized):
        return normalized

    escaped = normalized.replace("'", "''")
    return f"'{escaped}'"


def column_definition(column: ColumnDef) -> str:
    """
    Build the PostgreSQL column clause used inside CREATE TABLE.

    Example:
        '"created_at" TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP'
    """
    pg_type = map_type(column)
    nullable = is_nullable(column) or should_force_nullable(column)
    parts = [quote_pg_identifier(column.name), pg_type]
    if not nullable:
        parts.append('NOT NULL')

    # SERIAL types bring their own sequence default
    if not column.is_auto_increment:
        default = map_default_value(column)
        if default is not None:
            parts.append(f"DEFAULT {default}")

    return ' '.join(parts)


def quote_pg_identifier(name: str) -> str:
    """Double-quote a PostgreSQL identifier, escaping embedded quotes."""
    return '"' + str(name).replace('"', '""') + '"'
