"""
Sync State Management Module

This module manages the bookkeeping tables that make backfill resumable and
its failures retryable:
- sync_progress: one row per table with status, counters and resume offset
- sync_error_log: quarantined batches/rows that could not be inserted

Both tables live in the source database next to the audit table.

Writes are best effort: a failure to record progress or an error is logged
and swallowed so it never aborts the data movement itself.
"""

from typing import Any, Dict, List, Optional
import json
import logging
import re

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.events import preview
from mysql_pg_replication.models import ErrorLogEntry, SyncProgress
from mysql_pg_replication.mysql_helper import MySqlConnectionHelper, quote_identifier

logger = logging.getLogger(__name__)


ERROR_MESSAGE_LIMIT = 5000
SAMPLE_COLUMNS = 10

AUDIT_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY,
    table_name VARCHAR(64) NOT NULL,
    record_id VARCHAR(255) NULL,
    operation ENUM('INSERT', 'UPDATE', 'DELETE') NOT NULL,
    old_data JSON NULL,
    new_data JSON NULL,
    synced TINYINT(1) NOT NULL DEFAULT 0,
    synced_at TIMESTAMP NULL,
    error_message TEXT NULL,
    retry_count INT NOT NULL DEFAULT 0,
    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    INDEX idx_table_name (table_name),
    INDEX idx_operation (operation),
    INDEX idx_sync_status (synced, created_at),
    INDEX idx_table_sync (table_name, synced)
)
"""

ERROR_LOG_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY,
    table_name VARCHAR(255) NOT NULL,
    batch_offset INT NOT NULL,
    batch_size INT NOT NULL,
    error_message TEXT NULL,
    failed_columns TEXT NULL,
    sample_data TEXT NULL,
    resolved TINYINT(1) NOT NULL DEFAULT 0,
    error_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    resolved_at TIMESTAMP NULL,
    INDEX idx_table_name (table_name),
    INDEX idx_batch_offset (batch_offset),
    INDEX idx_resolved (resolved),
    INDEX idx_table_resolved (table_name, resolved)
)
"""

PROGRESS_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGINT UNSIGNED AUTO_INCREMENT PRIMARY KEY,
    table_name VARCHAR(255) NOT NULL,
    status ENUM('pending', 'in_progress', 'completed', 'failed') NOT NULL DEFAULT 'pending',
    total_rows BIGINT NOT NULL DEFAULT 0,
    synced_rows BIGINT NOT NULL DEFAULT 0,
    failed_rows BIGINT NOT NULL DEFAULT 0,
    last_synced_offset BIGINT NOT NULL DEFAULT 0,
    batch_size INT NOT NULL DEFAULT 500,
    started_at TIMESTAMP NULL,
    completed_at TIMESTAMP NULL,
    error_message TEXT NULL,
    created_at TIMESTAMP NULL,
    updated_at TIMESTAMP NULL,
    UNIQUE KEY uq_sync_progress_table (table_name),
    INDEX idx_status (status)
)
"""


def extract_failed_columns(error_message: str) -> List[str]:
    """
    Pull column names out of a PostgreSQL error message.

    Recognizes 'column "name"' and 'Key (a, b)=(...)' fragments.
    """
    columns: List[str] = []

    match = re.search(r'column "([^"]+)"', error_message or '')
    if match:
        columns.append(match.group(1))

    match = re.search(r'Key \(([^)]+)\)', error_message or '')
    if match:
        columns.extend(col.strip() for col in match.group(1).split(','))

    # Keep first occurrence order
    return list(dict.fromkeys(columns))


def sample_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """First columns of a row with long values shortened, JSON-safe."""
    sample = {}
    for name in list(row)[:SAMPLE_COLUMNS]:
        value = preview(row[name])
        if isinstance(value, (bytes, bytearray)):
            value = '\\x' + bytes(value).hex()
        sample[name] = value
    return sample


class SyncStateStore:
    """Progress and error-log persistence for the backfill executor."""

    def __init__(self, config: ReplicationConfig, source: Optional[MySqlConnectionHelper] = None):
        """
        Initialize the state store.

        Args:
            config: Replication configuration (table names)
            source: Source connection helper (built from config when omitted)
        """
        self.config = config
        self.source = source or MySqlConnectionHelper(
            config.source_conn_id, database=config.source_database
        )
        self._progress = quote_identifier(config.progress_table)
        self._errors = quote_identifier(config.error_log_table)

    def ensure_tables(self) -> None:
        """
        Create the audit, error-log and progress tables if they don't exist.

        Safe to call multiple times (idempotent).
        """
        self.source.run(AUDIT_TABLE_DDL.format(table=quote_identifier(self.config.audit_table)))
        self.source.run(ERROR_LOG_DDL.format(table=self._errors))
        self.source.run(PROGRESS_DDL.format(table=self._progress))
        logger.info("Ensured bookkeeping tables exist")

    # -- progress -----------------------------------------------------------

    def init_progress(self, table_name: str, total_rows: int, batch_size: int, resume_offset: int = 0) -> None:
        """Create the progress row for a table, or refresh its run metadata."""
        try:
            self.source.run(
                f"""
                INSERT INTO {self._progress} (
                    table_name, status, total_rows, synced_rows, failed_rows,
                    last_synced_offset, batch_size, started_at, created_at, updated_at
                ) VALUES (%s, 'pending', %s, 0, 0, %s, %s, NOW(), NOW(), NOW())
                ON DUPLICATE KEY UPDATE
                    total_rows = VALUES(total_rows),
                    batch_size = VALUES(batch_size),
                    started_at = NOW(),
                    completed_at = NULL,
                    updated_at = NOW()
                """,
                [table_name, total_rows, resume_offset, batch_size],
            )
        except Exception as e:
            logger.warning(f"Could not initialize progress for {table_name}: {e}")

    def update_progress(
        self,
        table_name: str,
        status: str,
        total_rows: int,
        synced_rows: int,
        failed_rows: int,
        offset: int,
        error_message: Optional[str] = None,
    ) -> None:
        """Persist counters and resume offset; terminal statuses stamp completed_at."""
        completed = ", completed_at = NOW()" if status in ('completed', 'failed') else ""
        try:
            self.source.run(
                f"""
                UPDATE {self._progress} SET
                    status = %s,
                    total_rows = %s,
                    synced_rows = %s,
                    failed_rows = %s,
                    last_synced_offset = %s,
                    error_message = %s,
                    updated_at = NOW(){completed}
                WHERE table_name = %s
                """,
                [
                    status, total_rows, synced_rows, failed_rows, offset,
                    error_message[:ERROR_MESSAGE_LIMIT] if error_message else None,
                    table_name,
                ],
            )
        except Exception as e:
            logger.warning(f"Could not update progress for {table_name}: {e}")

    def get_progress(self, table_name: str) -> Optional[SyncProgress]:
        try:
            rows = self.source.get_dicts(
                f"SELECT * FROM {self._progress} WHERE table_name = %s",
                [table_name],
            )
        except Exception as e:
            logger.warning(f"Could not read progress for {table_name}: {e}")
            return None
        return SyncProgress.from_row(rows[0]) if rows else None

    def get_resume_point(self, table_name: str) -> Optional[SyncProgress]:
        """
        Progress of an unfinished (in_progress, pending or failed) table.

        Returns:
            SyncProgress to resume from, or None when the table completed or
            was never started
        """
        progress = self.get_progress(table_name)
        if progress is None or progress.status == 'completed':
            return None
        return progress

    def reset_progress(self, table_name: Optional[str] = None) -> None:
        """Forget progress for one table, or for every table."""
        if table_name:
            self.source.run(f"DELETE FROM {self._progress} WHERE table_name = %s", [table_name])
            logger.info(f"Progress reset for table: {table_name}")
        else:
            self.source.run(f"TRUNCATE TABLE {self._progress}")
            logger.info("All progress reset")

    def all_progress(self) -> List[SyncProgress]:
        try:
            rows = self.source.get_dicts(f"SELECT * FROM {self._progress} ORDER BY table_name")
        except Exception as e:
            logger.warning(f"Could not read progress: {e}")
            return []
        return [SyncProgress.from_row(row) for row in rows]

    def progress_summary(self) -> Dict[str, int]:
        """Number of tables per status."""
        summary: Dict[str, int] = {}
        for progress in self.all_progress():
            summary[progress.status] = summary.get(progress.status, 0) + 1
        return summary

    def incomplete_tables(self) -> List[SyncProgress]:
        return [p for p in self.all_progress() if p.status != 'completed']

    # -- error log ----------------------------------------------------------

    def log_error(
        self,
        table_name: str,
        offset: int,
        batch_size: int,
        error_message: str,
        row: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Quarantine a batch (or single row) that could not be inserted.

        An unresolved entry for the same table and offset is updated in place
        instead of adding a duplicate.
        """
        message = (error_message or '')[:ERROR_MESSAGE_LIMIT]
        failed_columns = json.dumps(extract_failed_columns(message))
        sample = json.dumps(sample_row(row or {}), default=str)

        try:
            existing = self.source.get_records(
                f"""
                SELECT id FROM {self._errors}
                WHERE table_name = %s AND batch_offset = %s AND resolved = 0
                ORDER BY id
                LIMIT 1
                """,
                [table_name, offset],
            )
            if existing:
                self.source.run(
                    f"""
                    UPDATE {self._errors} SET
                        batch_size = %s,
                        error_message = %s,
                        failed_columns = %s,
                        sample_data = %s,
                        error_at = NOW()
                    WHERE id = %s
                    """,
                    [batch_size, message, failed_columns, sample, existing[0][0]],
                )
            else:
                self.source.run(
                    f"""
                    INSERT INTO {self._errors} (
                        table_name, batch_offset, batch_size, error_message,
                        failed_columns, sample_data, resolved, error_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, 0, NOW())
                    """,
                    [table_name, offset, batch_size, message, failed_columns, sample],
                )
        except Exception as e:
            logger.warning(f"Could not log error for {table_name} at offset {offset}: {e}")

    def resolve_range(self, table_name: str, start_offset: int, end_offset: int) -> None:
        """Mark unresolved entries with start_offset <= batch_offset < end_offset resolved."""
        try:
            self.source.run(
                f"""
                UPDATE {self._errors} SET resolved = 1, resolved_at = NOW()
                WHERE table_name = %s
                  AND batch_offset >= %s AND batch_offset < %s
                  AND resolved = 0
                """,
                [table_name, start_offset, end_offset],
            )
        except Exception as e:
            logger.warning(f"Could not resolve errors for {table_name}: {e}")

    def resolve_entry(self, entry_id: int) -> None:
        try:
            self.source.run(
                f"UPDATE {self._errors} SET resolved = 1, resolved_at = NOW() WHERE id = %s",
                [entry_id],
            )
        except Exception as e:
            logger.warning(f"Could not resolve error entry {entry_id}: {e}")

    def update_entry_error(self, entry_id: int, error_message: str) -> None:
        """Replace the message of a still-failing entry and bump its timestamp."""
        message = (error_message or '')[:ERROR_MESSAGE_LIMIT]
        try:
            self.source.run(
                f"""
                UPDATE {self._errors} SET
                    error_message = %s,
                    failed_columns = %s,
                    error_at = NOW()
                WHERE id = %s
                """,
                [message, json.dumps(extract_failed_columns(message)), entry_id],
            )
        except Exception as e:
            logger.warning(f"Could not update error entry {entry_id}: {e}")

    def unresolved_errors(self, table_name: Optional[str] = None) -> List[ErrorLogEntry]:
        """Unresolved entries ordered by table then offset."""
        query = f"SELECT * FROM {self._errors} WHERE resolved = 0"
        params: List[Any] = []
        if table_name:
            query += " AND table_name = %s"
            params.append(table_name)
        query += " ORDER BY table_name, batch_offset"

        try:
            rows = self.source.get_dicts(query, params or None)
        except Exception as e:
            logger.warning(f"Could not read error log: {e}")
            return []
        return [ErrorLogEntry.from_row(row) for row in rows]

    def error_summary(self) -> Dict[str, int]:
        """Unresolved entry count per table."""
        try:
            rows = self.source.get_records(
                f"""
                SELECT table_name, COUNT(*)
                FROM {self._errors}
                WHERE resolved = 0
                GROUP BY table_name
                ORDER BY table_name
                """
            )
        except Exception as e:
            logger.warning(f"Could not summarize error log: {e}")
            return {}
        return {row[0]: int(row[1]) for row in rows}
