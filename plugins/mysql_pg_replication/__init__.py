"""
MySQL/MariaDB to PostgreSQL Replication Utilities

This package replicates a MySQL/MariaDB database into PostgreSQL using Apache
Airflow: a resumable bulk backfill followed by trigger-based change capture.

Modules:
- config: Immutable configuration built from SYNC_* environment variables
- mysql_helper: PyMySQL access to the source through an Airflow connection
- schema_discovery: Source catalog introspection and dependency ordering
- type_mapping: Map MySQL types to PostgreSQL DDL
- value_sanitizer: Make source values acceptable to the target column types
- ddl_generator: Generate and run PostgreSQL DDL
- change_capture: Install the audit triggers on source tables
- sync_state: Backfill progress and quarantined-error bookkeeping
- backfill: Bulk copy with row-level fallback and resume
- incremental_apply: Replay audit records onto the target

Environment Options:
- SYNC_BATCH_SIZE=N: Audit records applied per pass
- SYNC_BACKFILL_BATCH_SIZE=N: Rows per backfill page
- SYNC_RETRY_MAX=N: Attempts before an audit record is given up on
"""

__version__ = "1.0.0"

# Core modules
from mysql_pg_replication import config
from mysql_pg_replication import mysql_helper
from mysql_pg_replication import schema_discovery
from mysql_pg_replication import type_mapping
from mysql_pg_replication import value_sanitizer
from mysql_pg_replication import ddl_generator

# Replication modules
from mysql_pg_replication import change_capture
from mysql_pg_replication import sync_state
from mysql_pg_replication import backfill
from mysql_pg_replication import incremental_apply

__all__ = [
    "config",
    "mysql_helper",
    "schema_discovery",
    "type_mapping",
    "value_sanitizer",
    "ddl_generator",
    "change_capture",
    "sync_state",
    "backfill",
    "incremental_apply",
]
