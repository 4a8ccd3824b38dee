"""
Bulk Backfill Module

This module copies the existing rows of each source table into PostgreSQL:
- Ordered offset paging over the source table
- Multi-row INSERT per page, falling back to row-by-row with bounded retries
- Rows that keep failing are quarantined in the error log, never dropped
- Progress persisted after every batch so an interrupted run can resume
- Retry mode that replays only quarantined batches
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import threading
import time

import psycopg2
from airflow.providers.postgres.hooks.postgres import PostgresHook
from psycopg2 import sql

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.ddl_generator import DDLGenerator
from mysql_pg_replication.events import LoggingEventSink, ReplicationEventSink
from mysql_pg_replication.exceptions import SchemaError
from mysql_pg_replication.models import ErrorLogEntry, TableSchema
from mysql_pg_replication.mysql_helper import MySqlConnectionHelper, quote_identifier
from mysql_pg_replication.schema_discovery import SchemaCache, SchemaDiscovery
from mysql_pg_replication.sync_state import SyncStateStore
from mysql_pg_replication.value_sanitizer import (
    TaggedValue,
    ValueKind,
    plain_values,
    sanitize_row,
    to_hex,
)

logger = logging.getLogger(__name__)


ROW_RETRY_ATTEMPTS = 3
# Seconds to wait before attempt 2, 3, ...
ROW_RETRY_BACKOFF = (0.1, 0.2, 0.4)

TaggedRow = Mapping[str, TaggedValue]


@dataclass
class BackfillResult:
    """Outcome of backfilling one table."""

    table_name: str
    status: str
    total_rows: int = 0
    synced_rows: int = 0
    failed_rows: int = 0
    last_offset: int = 0
    interrupted: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'table_name': self.table_name,
            'status': self.status,
            'total_rows': self.total_rows,
            'synced_rows': self.synced_rows,
            'failed_rows': self.failed_rows,
            'last_offset': self.last_offset,
            'interrupted': self.interrupted,
            'error': self.error,
        }


def value_placeholder(tagged: TaggedValue) -> sql.Composable:
    """Placeholder for one value; binary values are bound as hex and decoded server-side."""
    if tagged.kind is ValueKind.BINARY:
        return sql.SQL("decode({}, 'hex')").format(sql.Placeholder())
    return sql.Placeholder()


def bound_value(tagged: TaggedValue) -> Any:
    if tagged.kind is ValueKind.BINARY:
        return to_hex(tagged.value)
    return tagged.value


def build_insert(
    schema_name: str,
    table_name: str,
    rows: Sequence[TaggedRow],
    on_conflict_do_nothing: bool = False,
) -> Tuple[sql.Composed, List[Any]]:
    """
    Build a multi-row INSERT for sanitized rows.

    All rows must share the column order of the first row.

    Args:
        schema_name: Target schema
        table_name: Target table
        rows: Tagged rows to insert
        on_conflict_do_nothing: Make duplicate-key rows a no-op

    Returns:
        Tuple of (composed query, flat parameter list)
    """
    if not rows:
        raise ValueError("Cannot build an INSERT without rows")

    columns = list(rows[0].keys())
    values = []
    params: List[Any] = []
    for row in rows:
        values.append(
            sql.SQL('({})').format(
                sql.SQL(', ').join(value_placeholder(row[c]) for c in columns)
            )
        )
        params.extend(bound_value(row[c]) for c in columns)

    query = sql.SQL("INSERT INTO {schema}.{table} ({columns}) VALUES {values}").format(
        schema=sql.Identifier(schema_name),
        table=sql.Identifier(table_name),
        columns=sql.SQL(', ').join(sql.Identifier(c) for c in columns),
        values=sql.SQL(', ').join(values),
    )
    if on_conflict_do_nothing:
        query = query + sql.SQL(" ON CONFLICT DO NOTHING")
    return query, params


class BackfillExecutor:
    """Resumable, fault-tolerant bulk copy of source tables into PostgreSQL."""

    def __init__(
        self,
        config: ReplicationConfig,
        source: Optional[MySqlConnectionHelper] = None,
        target_hook: Optional[PostgresHook] = None,
        discovery: Optional[SchemaDiscovery] = None,
        state: Optional[SyncStateStore] = None,
        ddl: Optional[DDLGenerator] = None,
        events: Optional[ReplicationEventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the backfill executor.

        Args:
            config: Replication configuration
            source: Source connection helper
            target_hook: PostgreSQL hook for the target
            discovery: Source schema discovery
            state: Progress/error-log store
            ddl: Target DDL generator
            events: Event sink (logs by default)
            sleep: Function used for retry backoff
        """
        self.config = config
        self.source = source or MySqlConnectionHelper(
            config.source_conn_id, database=config.source_database
        )
        self.postgres_hook = target_hook or PostgresHook(postgres_conn_id=config.target_conn_id)
        self.discovery = discovery or SchemaDiscovery(config, source=self.source)
        self.state = state or SyncStateStore(config, source=self.source)
        self.ddl = ddl or DDLGenerator(
            config.target_conn_id, config.target_schema, hook=self.postgres_hook
        )
        self.events = events or LoggingEventSink()
        self._sleep = sleep
        self._shutdown = threading.Event()
        self._cache = SchemaCache(self.discovery, self.postgres_hook)

    # -- control ------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Ask the running backfill to stop after the in-flight batch."""
        logger.warning("Shutdown requested. Finishing current batch...")
        self._shutdown.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    # -- entry points -------------------------------------------------------

    def run(
        self,
        table: Optional[str] = None,
        create_tables: bool = False,
        drop_target: bool = False,
        resume: bool = False,
        batch_size: Optional[int] = None,
    ) -> List[BackfillResult]:
        """
        Backfill one table or every discovered table in dependency order.

        Args:
            table: Only backfill this table
            create_tables: Create missing target tables from the source schema
            drop_target: Drop every target table first
            resume: Continue unfinished tables from their saved offset
            batch_size: Rows per page (config.backfill_batch_size by default)

        Returns:
            One BackfillResult per table attempted
        """
        self._cache = SchemaCache(self.discovery, self.postgres_hook)
        batch_size = batch_size or self.config.backfill_batch_size

        if drop_target:
            self.drop_all_target_tables()

        tables = [table] if table else self.discovery.topological_order(self.discovery.list_tables())
        logger.info(f"Starting backfill for {len(tables)} tables")

        results = []
        for table_name in tables:
            if self.shutdown_requested:
                logger.warning(f"Shutdown requested; skipping remaining tables from {table_name}")
                break
            results.append(
                self.sync_table(
                    table_name,
                    batch_size=batch_size,
                    create_tables=create_tables,
                    resume=resume,
                )
            )

        synced = sum(r.synced_rows for r in results)
        failed = sum(r.failed_rows for r in results)
        logger.info(f"Backfill finished: {len(results)} tables, {synced:,} rows synced, {failed:,} rows failed")

        errors = self.error_summary()
        if errors:
            for table_name, count in errors.items():
                logger.warning(f"Outstanding errors: {table_name}: {count} unresolved")
        return results

    def sync_table(
        self,
        table_name: str,
        batch_size: Optional[int] = None,
        create_tables: bool = False,
        resume: bool = False,
    ) -> BackfillResult:
        """
        Copy one table, page by page.

        State moves pending -> in_progress -> completed | failed. A shutdown
        request leaves the table in_progress at the last finished offset.
        """
        batch_size = batch_size or self.config.backfill_batch_size
        logger.info(f"Syncing table: {table_name}")

        if not self.ddl.table_exists(table_name):
            if not create_tables:
                message = f"Table {table_name} does not exist in target. Enable create_tables to auto-create."
                logger.warning(message)
                return BackfillResult(table_name, 'schema_error', error=message)
            try:
                self.create_table(table_name)
            except SchemaError as e:
                return BackfillResult(table_name, 'schema_error', error=str(e))

        table_schema = self._cache.table_schema(table_name)
        columns_by_name = table_schema.columns_by_name()
        total_rows = self._count_rows(table_name)

        offset = synced = failed = 0
        if resume:
            progress = self.state.get_resume_point(table_name)
            if progress is not None:
                offset = progress.last_synced_offset
                synced = progress.synced_rows
                failed = progress.failed_rows

        self.state.init_progress(table_name, total_rows, batch_size, offset)

        if total_rows == 0:
            logger.info(f"{table_name} is empty, skipping")
            self.state.update_progress(table_name, 'completed', 0, 0, 0, 0)
            self.events.table_completed(table_name, 'completed', 0, 0)
            return BackfillResult(table_name, 'completed')

        logger.info(f"{table_name}: {total_rows:,} rows")
        if offset > 0:
            logger.info(f"{table_name}: resuming from offset {offset:,}")

        self.state.update_progress(table_name, 'in_progress', total_rows, synced, failed, offset)

        conn = self.postgres_hook.get_conn()
        try:
            while offset < total_rows:
                if self.shutdown_requested:
                    logger.warning(f"Sync interrupted. Progress saved at offset {offset:,}.")
                    self.state.update_progress(table_name, 'in_progress', total_rows, synced, failed, offset)
                    return BackfillResult(
                        table_name, 'in_progress', total_rows, synced, failed, offset, interrupted=True
                    )

                raw_rows = self._fetch_page(table_schema, offset, batch_size)
                if not raw_rows:
                    break

                rows = [sanitize_row(r, columns_by_name, table_name, self.events) for r in raw_rows]
                batch_synced, batch_failed = self._write_batch(conn, table_name, rows, offset)
                synced += batch_synced
                failed += batch_failed

                offset += batch_size
                self.state.update_progress(table_name, 'in_progress', total_rows, synced, failed, offset)
        finally:
            conn.close()

        status = 'failed' if failed else 'completed'
        self.state.update_progress(table_name, status, total_rows, synced, failed, offset)
        self.events.table_completed(table_name, status, synced, failed)
        return BackfillResult(table_name, status, total_rows, synced, failed, offset)

    def retry_errors(self, table: Optional[str] = None) -> Dict[str, int]:
        """
        Replay quarantined batches from the error log.

        Each unresolved entry's page is fetched again and inserted as one
        batch; success resolves the entry, failure refreshes its message.

        Returns:
            Dict with retried, resolved and still_failing counts
        """
        self._cache = SchemaCache(self.discovery, self.postgres_hook)
        entries = self.state.unresolved_errors(table)
        stats = {'retried': 0, 'resolved': 0, 'still_failing': 0}
        if not entries:
            logger.info("No failed batches found")
            return stats

        logger.info(f"Found {len(entries)} failed batches to retry")
        conn = self.postgres_hook.get_conn()
        try:
            for entry in entries:
                stats['retried'] += 1
                if self._retry_entry(conn, entry):
                    stats['resolved'] += 1
                else:
                    stats['still_failing'] += 1
        finally:
            conn.close()

        logger.info(
            f"Retry finished: {stats['resolved']} resolved, {stats['still_failing']} still failing"
        )
        return stats

    def reset_progress(self, table: Optional[str] = None) -> None:
        self.state.reset_progress(table)

    def create_table(self, table_name: str) -> str:
        """Create the target table from the source schema snapshot."""
        logger.info(f"Creating table {table_name} in target database")
        return self.ddl.create_table(self._cache.table_schema(table_name))

    def drop_all_target_tables(self) -> List[str]:
        return self.ddl.drop_all_tables()

    def error_summary(self) -> Dict[str, int]:
        return self.state.error_summary()

    def progress_summary(self) -> List[Dict[str, Any]]:
        """Per-table progress rows with completion percentage."""
        return [
            {
                'table_name': p.table_name,
                'status': p.status,
                'total_rows': p.total_rows,
                'synced_rows': p.synced_rows,
                'failed_rows': p.failed_rows,
                'percent_complete': p.percent_complete,
            }
            for p in self.state.all_progress()
        ]

    # -- internals ----------------------------------------------------------

    def _count_rows(self, table_name: str) -> int:
        row = self.source.get_first(f"SELECT COUNT(*) FROM {quote_identifier(table_name)}")
        return int(row[0]) if row else 0

    def _fetch_page(self, table_schema: TableSchema, offset: int, limit: int) -> List[Dict[str, Any]]:
        """
        Read one page of source rows.

        Pages are ordered by primary key (or every column when there is none)
        so offsets stay stable between runs.
        """
        order_columns = table_schema.primary_key or table_schema.column_names
        order_by = ', '.join(quote_identifier(c) for c in order_columns)
        return self.source.get_dicts(
            f"SELECT * FROM {quote_identifier(table_schema.name)} "
            f"ORDER BY {order_by} LIMIT %s OFFSET %s",
            [limit, offset],
        )

    def _insert(self, conn, table_name: str, rows: Sequence[TaggedRow]) -> None:
        query, params = build_insert(self.config.target_schema, table_name, rows)
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _write_batch(self, conn, table_name: str, rows: List[TaggedRow], offset: int) -> Tuple[int, int]:
        """
        Insert one page, falling back to row-by-row on failure.

        Returns:
            Tuple of (synced rows, failed rows)
        """
        try:
            self._insert(conn, table_name, rows)
        except psycopg2.Error as e:
            self.events.batch_failed(table_name, offset, str(e))
        else:
            self.state.resolve_range(table_name, offset, offset + len(rows))
            return len(rows), 0

        synced = failed = 0
        for index, row in enumerate(rows):
            if self._insert_row_with_retry(conn, table_name, row, offset + index):
                synced += 1
            else:
                failed += 1

        if synced:
            logger.info(f"Saved {synced}/{len(rows)} rows individually")
        if failed:
            logger.warning(f"Failed {failed} rows (logged to error table)")
        return synced, failed

    def _insert_row_with_retry(self, conn, table_name: str, row: TaggedRow, row_offset: int) -> bool:
        """Try one row up to ROW_RETRY_ATTEMPTS times; quarantine it when all fail."""
        for attempt in range(1, ROW_RETRY_ATTEMPTS + 1):
            try:
                self._insert(conn, table_name, [row])
                return True
            except psycopg2.Error as e:
                error = str(e)
                if attempt < ROW_RETRY_ATTEMPTS:
                    self.events.row_retry(table_name, row_offset, attempt, error)
                    self._sleep(ROW_RETRY_BACKOFF[attempt - 1])
                    continue
                self.events.row_quarantined(table_name, row_offset, error)
                self.state.log_error(table_name, row_offset, 1, error, plain_values(row))
        return False

    def _retry_entry(self, conn, entry: ErrorLogEntry) -> bool:
        logger.info(f"Retrying {entry.table_name} batch at offset {entry.batch_offset}")
        table_schema = self._cache.table_schema(entry.table_name)
        raw_rows = self._fetch_page(table_schema, entry.batch_offset, entry.batch_size)

        if not raw_rows:
            logger.warning(f"No data found at offset {entry.batch_offset}, marking as resolved")
            self.state.resolve_entry(entry.id)
            return True

        columns_by_name = table_schema.columns_by_name()
        rows = [sanitize_row(r, columns_by_name, entry.table_name, self.events) for r in raw_rows]
        try:
            self._insert(conn, entry.table_name, rows)
        except psycopg2.Error as e:
            logger.error(f"Still failing: {e}")
            self.state.update_entry_error(entry.id, str(e))
            return False

        logger.info(f"Success! Synced {len(rows)} rows")
        self.state.resolve_entry(entry.id)
        return True
