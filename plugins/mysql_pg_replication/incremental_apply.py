"""
Incremental Apply Module

This module replays captured changes from the audit table onto PostgreSQL.

Pending audit rows (synced = 0 and retry_count below the attempt ceiling) are
read oldest first. Each one is applied in its own target transaction:
- INSERT: insert the post-image, ignoring duplicate keys
- UPDATE: update rows matched by the record identifier (or the pre-image)
- DELETE: delete rows matched the same way

Values are sanitized against the live target column types, read once per pass.
Success marks the audit row synced; failure rolls back, bumps retry_count
and stores the error. Rows that reach the ceiling are never selected again.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import logging
import threading
import time

import psutil
from airflow.providers.postgres.hooks.postgres import PostgresHook
from psycopg2 import sql

from mysql_pg_replication.backfill import bound_value, build_insert, value_placeholder
from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.events import LoggingEventSink, ReplicationEventSink
from mysql_pg_replication.exceptions import MemoryLimitExceeded, ReplicationError
from mysql_pg_replication.models import AuditRecord, ColumnDef
from mysql_pg_replication.mysql_helper import MySqlConnectionHelper, quote_identifier
from mysql_pg_replication.schema_discovery import SchemaCache, SchemaDiscovery
from mysql_pg_replication.value_sanitizer import (
    TaggedValue,
    ValueKind,
    column_kind,
    kind_of_value,
    sanitize_row,
    sanitize_value,
)

logger = logging.getLogger(__name__)


AUDIT_ERROR_LIMIT = 1000
CLEANUP_BATCH_SIZE = 1000
CLEANUP_PAUSE_SECONDS = 0.1


@dataclass
class ApplyStats:
    """Counts for one pass over the pending audit rows."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': self.processed,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'errors': list(self.errors),
        }


def parse_record_identifier(record_id: str) -> List[Tuple[str, Optional[str]]]:
    """
    Split 'pk:value[,pk:value...]' into (column, value) pairs.

    The literal value NULL becomes None.
    """
    pairs = []
    for pair in record_id.split(','):
        if ':' not in pair:
            raise ValueError(f"Malformed record identifier '{record_id}'")
        column, value = pair.split(':', 1)
        pairs.append((column, None if value == 'NULL' else value))
    return pairs


def memory_usage_mb() -> float:
    """Current resident memory of this process in megabytes."""
    return psutil.Process().memory_info().rss / 1024 / 1024


def build_where(conditions: Sequence[Tuple[str, TaggedValue]]) -> Tuple[sql.Composed, List[Any]]:
    """AND-joined equality conditions; NULL values become IS NULL."""
    if not conditions:
        raise ReplicationError("Refusing to build an empty WHERE clause")

    parts = []
    params: List[Any] = []
    for column, tagged in conditions:
        if tagged.kind is ValueKind.NULL:
            parts.append(sql.SQL("{} IS NULL").format(sql.Identifier(column)))
        else:
            parts.append(sql.SQL("{} = {}").format(sql.Identifier(column), value_placeholder(tagged)))
            params.append(bound_value(tagged))
    return sql.SQL(' AND ').join(parts), params


class IncrementalApplier:
    """Apply pending audit records to the target, one transaction each."""

    def __init__(
        self,
        config: ReplicationConfig,
        source: Optional[MySqlConnectionHelper] = None,
        target_hook: Optional[PostgresHook] = None,
        discovery: Optional[SchemaDiscovery] = None,
        events: Optional[ReplicationEventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
        memory_reader: Callable[[], float] = memory_usage_mb,
    ):
        """
        Initialize the applier.

        Args:
            config: Replication configuration
            source: Source connection helper (audit table lives there)
            target_hook: PostgreSQL hook for the target
            discovery: Source schema discovery
            events: Event sink (logs by default)
            sleep: Function used between daemon passes and cleanup batches
            memory_reader: Returns current memory usage in megabytes
        """
        self.config = config
        self.source = source or MySqlConnectionHelper(
            config.source_conn_id, database=config.source_database
        )
        self.postgres_hook = target_hook or PostgresHook(postgres_conn_id=config.target_conn_id)
        self.discovery = discovery or SchemaDiscovery(config, source=self.source)
        self.events = events or LoggingEventSink()
        self._sleep = sleep
        self._memory_reader = memory_reader
        self._shutdown = threading.Event()
        self._audit = quote_identifier(config.audit_table)
        self._cache = SchemaCache(self.discovery, self.postgres_hook)

    def request_shutdown(self) -> None:
        self._shutdown.set()

    # -- selection ----------------------------------------------------------

    def fetch_pending(self, limit: Optional[int] = None) -> List[AuditRecord]:
        """Unsynced records below the attempt ceiling, oldest first."""
        rows = self.source.get_dicts(
            f"""
            SELECT * FROM {self._audit}
            WHERE synced = 0 AND retry_count < %s
            ORDER BY id
            LIMIT %s
            """,
            [self.config.max_attempts, limit or self.config.batch_size],
        )
        return [AuditRecord.from_row(row) for row in rows]

    def fetch_pending_ids(self, limit: Optional[int] = None) -> List[int]:
        rows = self.source.get_records(
            f"""
            SELECT id FROM {self._audit}
            WHERE synced = 0 AND retry_count < %s
            ORDER BY id
            LIMIT %s
            """,
            [self.config.max_attempts, limit or self.config.batch_size],
        )
        return [int(row[0]) for row in rows]

    # -- apply --------------------------------------------------------------

    def process_pending(self) -> ApplyStats:
        """
        Apply one batch of pending audit records in id order.

        Returns:
            ApplyStats for this pass
        """
        self._cache = SchemaCache(self.discovery, self.postgres_hook)
        stats = ApplyStats()

        records = self.fetch_pending()
        if not records:
            return stats

        conn = self.postgres_hook.get_conn()
        try:
            for record in records:
                stats.processed += 1
                if self._apply(conn, record):
                    stats.succeeded += 1
                else:
                    stats.failed += 1
                    stats.errors.append({
                        'id': record.id,
                        'table': record.table_name,
                        'operation': record.operation,
                    })
        finally:
            conn.close()

        if stats.failed:
            logger.warning(f"{stats.failed} of {stats.processed} records failed to sync")
        return stats

    def sync_record(self, record: AuditRecord) -> bool:
        """Apply a single audit record in its own target transaction."""
        conn = self.postgres_hook.get_conn()
        try:
            return self._apply(conn, record)
        finally:
            conn.close()

    def sync_record_by_id(self, audit_id: int) -> bool:
        """
        Load one audit record and apply it.

        Records already synced are skipped and reported as success.

        Raises:
            ReplicationError: If the audit row does not exist
        """
        rows = self.source.get_dicts(f"SELECT * FROM {self._audit} WHERE id = %s", [audit_id])
        if not rows:
            raise ReplicationError(f"Audit record {audit_id} not found")

        record = AuditRecord.from_row(rows[0])
        if record.synced:
            logger.info(f"Audit record {audit_id} already synced, skipping")
            return True

        self._cache = SchemaCache(self.discovery, self.postgres_hook)
        return self.sync_record(record)

    def _apply(self, conn, record: AuditRecord) -> bool:
        logger.debug(f"Syncing audit id {record.id}: {record.operation} on {record.table_name}")
        try:
            with conn.cursor() as cursor:
                if record.operation == 'INSERT':
                    self._handle_insert(cursor, record)
                elif record.operation == 'UPDATE':
                    self._handle_update(cursor, record)
                elif record.operation == 'DELETE':
                    self._handle_delete(cursor, record)
                else:
                    raise ReplicationError(f"Unknown operation '{record.operation}'")
            conn.commit()
            self._mark_synced(record.id)
        except Exception as e:
            conn.rollback()
            self._mark_failed(record.id, str(e))
            if self.config.monitoring_enabled:
                self.events.record_failed(record.id, record.table_name, record.operation, str(e))
            return False

        if self.config.monitoring_enabled:
            self.events.record_applied(record.id, record.table_name, record.operation)
        return True

    def _target_columns(self, table_name: str) -> Dict[str, ColumnDef]:
        return self._cache.target_columns(table_name)

    def _table(self, table_name: str) -> sql.Composed:
        return sql.SQL("{}.{}").format(
            sql.Identifier(self.config.target_schema), sql.Identifier(table_name)
        )

    def _handle_insert(self, cursor, record: AuditRecord) -> None:
        if not record.new_data:
            raise ReplicationError(f"Audit record {record.id} has no new_data")
        row = sanitize_row(
            record.new_data, self._target_columns(record.table_name), record.table_name, self.events
        )
        query, params = build_insert(
            self.config.target_schema, record.table_name, [row], on_conflict_do_nothing=True
        )
        cursor.execute(query, params)

    def _handle_update(self, cursor, record: AuditRecord) -> None:
        if not record.new_data:
            raise ReplicationError(f"Audit record {record.id} has no new_data")
        row = sanitize_row(
            record.new_data, self._target_columns(record.table_name), record.table_name, self.events
        )
        assignments = []
        params: List[Any] = []
        for column, tagged in row.items():
            assignments.append(
                sql.SQL("{} = {}").format(sql.Identifier(column), value_placeholder(tagged))
            )
            params.append(bound_value(tagged))

        where, where_params = build_where(self._match_conditions(record))
        cursor.execute(
            sql.SQL("UPDATE {table} SET {assignments} WHERE {where}").format(
                table=self._table(record.table_name),
                assignments=sql.SQL(', ').join(assignments),
                where=where,
            ),
            params + where_params,
        )

    def _handle_delete(self, cursor, record: AuditRecord) -> None:
        where, params = build_where(self._match_conditions(record))
        cursor.execute(
            sql.SQL("DELETE FROM {table} WHERE {where}").format(
                table=self._table(record.table_name),
                where=where,
            ),
            params,
        )

    def _match_conditions(self, record: AuditRecord) -> List[Tuple[str, TaggedValue]]:
        """
        Columns and values identifying the target row(s) of an UPDATE/DELETE.

        Uses the record identifier when present, else every old_data field.
        """
        columns = self._target_columns(record.table_name)
        if record.record_id:
            pairs = parse_record_identifier(record.record_id)
        elif record.old_data:
            pairs = list(record.old_data.items())
        else:
            raise ReplicationError(
                f"Audit record {record.id} has neither record_id nor old_data"
            )

        conditions = []
        for name, value in pairs:
            column = columns.get(name)
            if value is None:
                conditions.append((name, TaggedValue(ValueKind.NULL, None)))
                continue
            if column is None:
                conditions.append((name, TaggedValue(kind_of_value(value), value)))
                continue
            kind = column_kind(column)
            if kind is ValueKind.JSON:
                # json has no equality operator
                continue
            clean = sanitize_value(value, column, record.table_name)
            conditions.append(
                (name, TaggedValue(ValueKind.NULL, None) if clean is None else TaggedValue(kind, clean))
            )
        return conditions

    def _mark_synced(self, audit_id: int) -> None:
        self.source.run(
            f"""
            UPDATE {self._audit}
            SET synced = 1, synced_at = NOW(), error_message = NULL
            WHERE id = %s
            """,
            [audit_id],
        )

    def _mark_failed(self, audit_id: int, error_message: str) -> None:
        self.source.run(
            f"""
            UPDATE {self._audit}
            SET retry_count = retry_count + 1, error_message = %s
            WHERE id = %s
            """,
            [error_message[:AUDIT_ERROR_LIMIT], audit_id],
        )

    # -- reporting ----------------------------------------------------------

    def get_stats(self) -> Dict[str, int]:
        """
        Aggregate audit counts.

        Returns:
            Dict with total, synced, pending and failed (unsynced rows that
            reached the attempt ceiling)
        """
        row = self.source.get_first(
            f"""
            SELECT
                COUNT(*),
                COALESCE(SUM(synced = 0), 0),
                COALESCE(SUM(synced = 0 AND retry_count >= %s), 0)
            FROM {self._audit}
            """,
            [self.config.max_attempts],
        )
        total, pending, failed = (int(v or 0) for v in (row or (0, 0, 0)))
        return {
            'total': total,
            'synced': total - pending,
            'pending': pending,
            'failed': failed,
        }

    # -- continuous mode ----------------------------------------------------

    def run_daemon(self, interval: Optional[int] = None, max_iterations: Optional[int] = None) -> Dict[str, int]:
        """
        Apply pending records repeatedly until stopped.

        Args:
            interval: Seconds between passes (config.sync_interval by default)
            max_iterations: Stop after this many passes (runs until shutdown when None)

        Returns:
            Totals across all passes

        Raises:
            MemoryLimitExceeded: When memory usage passes config.memory_limit_mb
        """
        interval = self.config.sync_interval if interval is None else interval
        logger.info(f"Starting daemon mode (interval: {interval}s)")

        totals = {'iterations': 0, 'processed': 0, 'succeeded': 0, 'failed': 0}
        while not self._shutdown.is_set():
            totals['iterations'] += 1
            started = time.monotonic()

            stats = self.process_pending()
            totals['processed'] += stats.processed
            totals['succeeded'] += stats.succeeded
            totals['failed'] += stats.failed

            elapsed_ms = round((time.monotonic() - started) * 1000, 2)
            overall = self.get_stats()
            logger.info(
                f"Iteration: {totals['iterations']} | Processed: {stats.processed} | "
                f"Success: {stats.succeeded} | Failed: {stats.failed} | "
                f"Pending: {overall['pending']} | Time: {elapsed_ms}ms"
            )

            usage = self._memory_reader()
            if usage > self.config.memory_limit_mb:
                logger.error(f"Memory limit exceeded ({usage:.2f}MB > {self.config.memory_limit_mb}MB). Exiting...")
                raise MemoryLimitExceeded(usage, self.config.memory_limit_mb)

            if max_iterations is not None and totals['iterations'] >= max_iterations:
                break

            self._sleep(interval)

        return totals

    # -- retention ----------------------------------------------------------

    def cleanup_audit_log(self, keep_days: Optional[int] = None, dry_run: bool = False) -> int:
        """
        Delete synced audit rows older than the retention window.

        Rows are deleted in batches with a short pause in between so the
        audit table is never locked for long.

        Args:
            keep_days: Days to keep (config.keep_days by default)
            dry_run: Only count what would be deleted

        Returns:
            Number of rows deleted (or that would be deleted on a dry run)
        """
        keep_days = self.config.keep_days if keep_days is None else keep_days
        condition = "synced = 1 AND created_at < NOW() - INTERVAL %s DAY"
        logger.info(f"Cleaning up audit log records older than {keep_days} days")

        row = self.source.get_first(f"SELECT COUNT(*) FROM {self._audit} WHERE {condition}", [keep_days])
        count = int(row[0]) if row else 0

        if count == 0:
            logger.info("No records to cleanup")
            return 0

        if dry_run:
            logger.info(f"DRY RUN: Would delete {count} records")
            return count

        deleted = 0
        while deleted < count:
            batch = self.source.run(
                f"DELETE FROM {self._audit} WHERE {condition} LIMIT {CLEANUP_BATCH_SIZE}",
                [keep_days],
            )
            if not batch:
                break
            deleted += batch
            self._sleep(CLEANUP_PAUSE_SECONDS)

        logger.info(f"Cleanup completed! Deleted {deleted} records")
        return deleted
