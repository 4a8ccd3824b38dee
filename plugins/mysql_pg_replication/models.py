"""
Replication Data Model

Plain data classes for the schema snapshots read from the source/target
catalogs and the rows of the three bookkeeping tables (audit log, error log,
sync progress).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple
import json
import re


def _text(value: Any) -> Optional[str]:
    # information_schema columns may come back as bytes depending on collation
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode('utf-8', errors='replace')
    return value


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


# PostgreSQL information_schema data_type -> (MySQL data type, column type template)
_TARGET_TYPE_EQUIVALENTS = {
    'smallint': ('smallint', 'smallint'),
    'integer': ('int', 'int'),
    'bigint': ('bigint', 'bigint'),
    'boolean': ('tinyint', 'tinyint(1)'),
    'real': ('float', 'float'),
    'double precision': ('double', 'double'),
    'numeric': ('decimal', 'decimal({precision},{scale})'),
    'character varying': ('varchar', 'varchar({length})'),
    'character': ('char', 'char({length})'),
    'text': ('text', 'text'),
    'bytea': ('blob', 'blob'),
    'date': ('date', 'date'),
    'timestamp without time zone': ('datetime', 'datetime'),
    'timestamp with time zone': ('datetime', 'datetime'),
    'time without time zone': ('time', 'time'),
    'time with time zone': ('time', 'time'),
    'json': ('json', 'json'),
    'jsonb': ('json', 'json'),
}

_PG_CAST_SUFFIX = re.compile(r"::[\w\s\"\[\]]+$")


def _normalize_target_default(default: Optional[str], data_type: str) -> Optional[str]:
    """Rewrite a PostgreSQL column_default into MySQL COLUMN_DEFAULT form."""
    if default is None:
        return None
    text = default.strip()
    if text.lower().startswith('nextval('):
        return None
    lowered = text.lower()
    if 'current_timestamp' in lowered or lowered.startswith('now()'):
        return 'CURRENT_TIMESTAMP'
    text = _PG_CAST_SUFFIX.sub('', text).strip()
    if text.startswith('(') and text.endswith(')'):
        text = text[1:-1].strip()
    if data_type == 'boolean' and text.lower() in ('true', 'false'):
        return '1' if text.lower() == 'true' else '0'
    if text.upper() == 'NULL':
        return None
    return text


@dataclass(frozen=True)
class ColumnDef:
    """One column of a table as seen in catalog metadata."""

    name: str
    source_type: str
    raw_type: str
    nullable: bool = True
    default_expr: Optional[str] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    is_auto_increment: bool = False
    # Target-side columns: PostgreSQL enforces NOT NULL, never relax it
    strict_nullability: bool = False

    @classmethod
    def from_source(cls, row: Mapping[str, Any]) -> "ColumnDef":
        """
        Build from a MySQL INFORMATION_SCHEMA.COLUMNS row.

        Args:
            row: Mapping with column_name, data_type, column_type, is_nullable,
                 column_default, extra, character_maximum_length,
                 numeric_precision and numeric_scale keys (any case)

        Returns:
            ColumnDef instance
        """
        r = {str(k).lower(): _text(v) for k, v in row.items()}
        return cls(
            name=r['column_name'],
            source_type=(r.get('data_type') or '').lower(),
            raw_type=(r.get('column_type') or r.get('data_type') or '').lower(),
            nullable=str(r.get('is_nullable') or '').upper() == 'YES',
            default_expr=r.get('column_default'),
            max_length=_int_or_none(r.get('character_maximum_length')),
            precision=_int_or_none(r.get('numeric_precision')),
            scale=_int_or_none(r.get('numeric_scale')),
            is_auto_increment='auto_increment' in (r.get('extra') or '').lower(),
        )

    @classmethod
    def from_target(cls, row: Mapping[str, Any]) -> "ColumnDef":
        """
        Build from a PostgreSQL information_schema.columns row.

        The PostgreSQL type is translated to the equivalent MySQL family so the
        same value sanitizer serves rows bound for either side.
        """
        r = {str(k).lower(): v for k, v in row.items()}
        data_type = (r.get('data_type') or '').lower()
        max_length = _int_or_none(r.get('character_maximum_length'))
        precision = _int_or_none(r.get('numeric_precision'))
        scale = _int_or_none(r.get('numeric_scale'))

        source_type, template = _TARGET_TYPE_EQUIVALENTS.get(
            data_type, ((r.get('udt_name') or data_type).lower(), (r.get('udt_name') or data_type).lower())
        )
        if source_type == 'varchar' and max_length is None:
            source_type, template = 'text', 'text'
        raw_type = template.format(
            length=max_length or 1,
            precision=precision if precision is not None else 10,
            scale=scale if scale is not None else 0,
        )

        column_default = r.get('column_default')
        return cls(
            name=r['column_name'],
            source_type=source_type,
            raw_type=raw_type,
            nullable=str(r.get('is_nullable') or '').upper() == 'YES',
            default_expr=_normalize_target_default(column_default, data_type),
            max_length=max_length,
            precision=precision,
            scale=scale,
            is_auto_increment=bool(column_default and 'nextval(' in column_default.lower()),
            strict_nullability=True,
        )


@dataclass(frozen=True)
class ForeignKeyRef:
    column: str
    referenced_table: str
    referenced_column: str
    constraint_name: Optional[str] = None


@dataclass(frozen=True)
class TableSchema:
    """Read-only snapshot of a source table's structure."""

    name: str
    columns: Tuple[ColumnDef, ...]
    primary_key: Tuple[str, ...] = ()
    foreign_keys: Tuple[ForeignKeyRef, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def columns_by_name(self) -> Dict[str, ColumnDef]:
        return {c.name: c for c in self.columns}


OPERATIONS = ('INSERT', 'UPDATE', 'DELETE')


def _load_json(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode('utf-8')
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


@dataclass
class AuditRecord:
    """One captured row mutation waiting to be (or already) applied."""

    id: int
    table_name: str
    record_id: Optional[str]
    operation: str
    old_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    synced: bool = False
    synced_at: Optional[datetime] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuditRecord":
        """Build from an audit table row, decoding the JSON payloads."""
        return cls(
            id=int(row['id']),
            table_name=row['table_name'],
            record_id=row.get('record_id'),
            operation=str(row['operation']).upper(),
            old_data=_load_json(row.get('old_data')),
            new_data=_load_json(row.get('new_data')),
            synced=bool(row.get('synced')),
            synced_at=row.get('synced_at'),
            error_message=row.get('error_message'),
            retry_count=int(row.get('retry_count') or 0),
            created_at=row.get('created_at'),
        )


@dataclass
class ErrorLogEntry:
    """A quarantined backfill batch (or single row) that could not be inserted."""

    table_name: str
    batch_offset: int
    batch_size: int
    error_message: str
    failed_columns: List[str] = field(default_factory=list)
    sample_data: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    error_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ErrorLogEntry":
        failed_columns = row.get('failed_columns')
        sample_data = row.get('sample_data')
        return cls(
            id=row.get('id'),
            table_name=row['table_name'],
            batch_offset=int(row['batch_offset']),
            batch_size=int(row['batch_size']),
            error_message=row.get('error_message') or '',
            failed_columns=json.loads(failed_columns) if isinstance(failed_columns, str) else (failed_columns or []),
            sample_data=json.loads(sample_data) if isinstance(sample_data, str) else (sample_data or {}),
            resolved=bool(row.get('resolved')),
            error_at=row.get('error_at'),
            resolved_at=row.get('resolved_at'),
        )


PROGRESS_STATUSES = ('pending', 'in_progress', 'completed', 'failed')


@dataclass
class SyncProgress:
    """Backfill progress of one table."""

    table_name: str
    status: str = 'pending'
    total_rows: int = 0
    synced_rows: int = 0
    failed_rows: int = 0
    last_synced_offset: int = 0
    batch_size: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def percent_complete(self) -> float:
        if not self.total_rows:
            return 0.0
        return round(self.synced_rows / self.total_rows * 100, 2)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SyncProgress":
        return cls(
            table_name=row['table_name'],
            status=row.get('status') or 'pending',
            total_rows=int(row.get('total_rows') or 0),
            synced_rows=int(row.get('synced_rows') or 0),
            failed_rows=int(row.get('failed_rows') or 0),
            last_synced_offset=int(row.get('last_synced_offset') or 0),
            batch_size=int(row.get('batch_size') or 0),
            started_at=row.get('started_at'),
            completed_at=row.get('completed_at'),
            error_message=row.get('error_message'),
        )
