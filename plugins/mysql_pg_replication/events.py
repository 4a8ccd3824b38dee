"""
Replication Event Sink Module

Components report what they did (sanitized values, row retries, quarantined
rows, finished tables, applied audit records) to an event sink instead of
logging inline. The default sink writes to the standard logging module;
tests and callers can substitute their own.
"""

from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


def preview(value: Any, length: int = PREVIEW_LENGTH) -> Any:
    """Shorten long strings/bytes for reporting, leaving other values alone."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if len(raw) > length:
            return raw[:length] + b"..."
        return raw
    if isinstance(value, str) and len(value) > length:
        return value[:length] + "..."
    return value


class ReplicationEventSink:
    """No-op base sink. Override the hooks you care about."""

    def value_sanitized(
        self,
        table_name: Optional[str],
        column_name: str,
        data_type: str,
        original: Any,
        sanitized: Any,
    ) -> None:
        pass

    def row_retry(self, table_name: str, offset: int, attempt: int, error: str) -> None:
        pass

    def row_quarantined(self, table_name: str, offset: int, error: str) -> None:
        pass

    def batch_failed(self, table_name: str, offset: int, error: str) -> None:
        pass

    def table_completed(
        self, table_name: str, status: str, synced_rows: int, failed_rows: int
    ) -> None:
        pass

    def record_applied(self, record_id: int, table_name: str, operation: str) -> None:
        pass

    def record_failed(
        self, record_id: int, table_name: str, operation: str, error: str
    ) -> None:
        pass


class LoggingEventSink(ReplicationEventSink):
    """Sink that forwards every event to the module logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def value_sanitized(self, table_name, column_name, data_type, original, sanitized):
        self._log.info(
            f"[SANITIZE] {table_name}.{column_name} ({data_type}): "
            f"{preview(original)!r} -> {preview(sanitized)!r}"
        )

    def row_retry(self, table_name, offset, attempt, error):
        self._log.debug(
            f"Retrying row {offset} of {table_name} (attempt {attempt}): {error[:100]}"
        )

    def row_quarantined(self, table_name, offset, error):
        self._log.warning(f"Quarantined row {offset} of {table_name}: {error[:100]}")

    def batch_failed(self, table_name, offset, error):
        self._log.warning(
            f"Batch insert failed for {table_name} at offset {offset}: {error[:100]}. "
            "Retrying row-by-row"
        )

    def table_completed(self, table_name, status, synced_rows, failed_rows):
        if failed_rows:
            self._log.warning(
                f"{table_name}: {status} ({synced_rows:,} synced, {failed_rows:,} failed)"
            )
        else:
            self._log.info(f"{table_name}: {status} ({synced_rows:,} synced)")

    def record_applied(self, record_id, table_name, operation):
        self._log.info(f"Synced {operation} on {table_name} (audit id {record_id})")

    def record_failed(self, record_id, table_name, operation, error):
        self._log.error(
            f"Failed to sync {operation} on {table_name} (audit id {record_id}): {error}"
        )
