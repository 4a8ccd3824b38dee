"""
Tests for Sync State Management Module

These tests validate progress bookkeeping, the one-entry-per-offset error
log and the best-effort behaviour of every write.
"""

import json
import pytest
from unittest.mock import Mock

import pymysql

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.sync_state import (
    SyncStateStore,
    extract_failed_columns,
    sample_row,
)


class TestExtractFailedColumns:
    """Test column extraction from PostgreSQL error messages."""

    def test_column_message(self):
        message = 'null value in column "email" of relation "users" violates not-null constraint'
        assert extract_failed_columns(message) == ['email']

    def test_key_message(self):
        message = 'duplicate key value violates unique constraint "pk"\nDETAIL:  Key (order_id, line_no)=(1, 2) already exists.'
        assert extract_failed_columns(message) == ['order_id', 'line_no']

    def test_no_columns(self):
        assert extract_failed_columns('connection reset') == []
        assert extract_failed_columns(None) == []


class TestSampleRow:

    def test_first_ten_columns_previewed(self):
        row = {f"c{i}": i for i in range(15)}
        row['c0'] = 'x' * 150

        sample = sample_row(row)

        assert list(sample) == [f"c{i}" for i in range(10)]
        assert sample['c0'] == 'x' * 100 + '...'

    def test_binary_sample_is_json_safe(self):
        sample = sample_row({'avatar': b'\x01\x02'})
        assert json.dumps(sample) == '{"avatar": "\\\\x0102"}'


class TestSyncStateStore:
    """Test progress and error-log persistence."""

    @pytest.fixture
    def source(self):
        source = Mock()
        source.get_records.return_value = []
        return source

    @pytest.fixture
    def store(self, source):
        return SyncStateStore(ReplicationConfig(), source=source)

    def test_ensure_tables(self, store, source):
        store.ensure_tables()

        statements = [c[0][0] for c in source.run.call_args_list]
        assert len(statements) == 3
        assert 'CREATE TABLE IF NOT EXISTS `sync_audit_log`' in statements[0]
        assert 'CREATE TABLE IF NOT EXISTS `sync_error_log`' in statements[1]
        assert 'CREATE TABLE IF NOT EXISTS `sync_progress`' in statements[2]

    def test_init_progress_upserts(self, store, source):
        store.init_progress('orders', 250, 100, resume_offset=100)

        sql, params = source.run.call_args[0]
        assert 'ON DUPLICATE KEY UPDATE' in sql
        assert params == ['orders', 250, 100, 100]

    def test_update_progress_terminal_status(self, store, source):
        store.update_progress('orders', 'completed', 250, 250, 0, 300)

        sql, params = source.run.call_args[0]
        assert 'completed_at = NOW()' in sql
        assert params == ['completed', 250, 250, 0, 300, None, 'orders']

    def test_update_progress_in_progress(self, store, source):
        store.update_progress('orders', 'in_progress', 250, 100, 0, 100)

        sql, _ = source.run.call_args[0]
        assert 'completed_at' not in sql

    def test_progress_write_failure_swallowed(self, store, source):
        source.run.side_effect = pymysql.OperationalError(2006, 'MySQL server has gone away')

        store.update_progress('orders', 'in_progress', 250, 100, 0, 100)
        store.init_progress('orders', 250, 100)
        store.log_error('orders', 0, 1, 'boom')
        store.resolve_range('orders', 0, 100)

    def test_get_resume_point(self, store, source):
        source.get_dicts.return_value = [{
            'table_name': 'orders', 'status': 'in_progress', 'total_rows': 250,
            'synced_rows': 100, 'failed_rows': 0, 'last_synced_offset': 100, 'batch_size': 100,
        }]

        progress = store.get_resume_point('orders')

        assert progress.last_synced_offset == 100
        assert progress.percent_complete == 40.0

    def test_completed_table_has_no_resume_point(self, store, source):
        source.get_dicts.return_value = [{'table_name': 'orders', 'status': 'completed'}]
        assert store.get_resume_point('orders') is None

    def test_unknown_table_has_no_resume_point(self, store, source):
        source.get_dicts.return_value = []
        assert store.get_resume_point('orders') is None

    def test_reset_progress_single_table(self, store, source):
        store.reset_progress('orders')
        source.run.assert_called_once_with('DELETE FROM `sync_progress` WHERE table_name = %s', ['orders'])

    def test_reset_progress_all(self, store, source):
        store.reset_progress()
        source.run.assert_called_once_with('TRUNCATE TABLE `sync_progress`')

    def test_progress_summary(self, store, source):
        source.get_dicts.return_value = [
            {'table_name': 'a', 'status': 'completed'},
            {'table_name': 'b', 'status': 'completed'},
            {'table_name': 'c', 'status': 'failed'},
        ]
        assert store.progress_summary() == {'completed': 2, 'failed': 1}
        assert [p.table_name for p in store.incomplete_tables()] == ['c']

    def test_log_error_updates_existing_entry(self, store, source):
        """An unresolved entry for the same offset is updated instead of duplicated."""
        source.get_records.return_value = [(9,)]

        store.log_error('orders', 150, 1, 'null value in column "total"', {'id': 151})

        lookup_sql, lookup_params = source.get_records.call_args[0]
        assert 'resolved = 0' in lookup_sql
        assert lookup_params == ['orders', 150]
        assert source.run.call_count == 1
        sql, params = source.run.call_args[0]
        assert sql.strip().startswith('UPDATE')
        assert params[-1] == 9

    def test_log_error_identical_entry_not_duplicated(self, store, source):
        """An update that changes nothing (rowcount 0) still never inserts a second entry."""
        source.get_records.return_value = [(9,)]
        source.run.return_value = 0

        store.log_error('orders', 150, 1, 'boom', {'id': 151})
        store.log_error('orders', 150, 1, 'boom', {'id': 151})

        statements = [c[0][0] for c in source.run.call_args_list]
        assert len(statements) == 2
        assert all('INSERT' not in s for s in statements)

    def test_log_error_inserts_new_entry(self, store, source):
        source.get_records.return_value = []

        store.log_error('orders', 150, 1, 'null value in column "total"', {'id': 151})

        assert source.run.call_count == 1
        sql, params = source.run.call_args[0]
        assert 'INSERT INTO `sync_error_log`' in sql
        assert params[:3] == ['orders', 150, 1]
        assert json.loads(params[4]) == ['total']
        assert json.loads(params[5]) == {'id': 151}

    def test_log_error_truncates_message(self, store, source):
        source.run.return_value = 0
        store.log_error('orders', 0, 1, 'x' * 6000)
        _, params = source.run.call_args[0]
        assert len(params[3]) == 5000

    def test_resolve_range(self, store, source):
        store.resolve_range('orders', 100, 200)

        sql, params = source.run.call_args[0]
        assert 'batch_offset >= %s AND batch_offset < %s' in sql
        assert params == ['orders', 100, 200]

    def test_unresolved_errors(self, store, source):
        source.get_dicts.return_value = [{
            'id': 9, 'table_name': 'orders', 'batch_offset': 150, 'batch_size': 1,
            'error_message': 'boom', 'failed_columns': '["total"]',
            'sample_data': '{"id": 151}', 'resolved': 0,
        }]

        entries = store.unresolved_errors('orders')

        assert entries[0].id == 9
        assert entries[0].failed_columns == ['total']
        assert entries[0].sample_data == {'id': 151}
        assert source.get_dicts.call_args[0][1] == ['orders']

    def test_error_summary(self, store, source):
        source.get_records.return_value = [('orders', 2), ('users', 1)]
        assert store.error_summary() == {'orders': 2, 'users': 1}

    def test_error_summary_unavailable(self, store, source):
        source.get_records.side_effect = pymysql.ProgrammingError(1146, "Table doesn't exist")
        assert store.error_summary() == {}
