"""
Audit Log Cleanup DAG

Deletes audit rows that were synced more than keep_days ago, in batches of
1000 so the audit table is never locked for long. Unsynced rows (including
permanently failed ones) are never deleted.

Disabled when SYNC_CLEANUP_ENABLED=false.
"""

from airflow.decorators import dag, task
from airflow.exceptions import AirflowSkipException
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Dict, Any
import logging

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.incremental_apply import IncrementalApplier

logger = logging.getLogger(__name__)


@dag(
    dag_id="mysql_pg_audit_cleanup",
    start_date=datetime(2025, 1, 1),
    schedule="@daily",
    catchup=False,
    max_active_runs=1,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 2,
        "retry_delay": timedelta(minutes=5),
    },
    params={
        "source_conn_id": Param(
            default="mysql_source",
            type="string",
            description="MySQL/MariaDB connection ID"
        ),
        "keep_days": Param(
            default=None,
            type=["null", "integer"],
            minimum=0,
            description="Days of synced audit rows to keep (SYNC_CLEANUP_KEEP_DAYS when empty)"
        ),
        "dry_run": Param(
            default=False,
            type="boolean",
            description="Only count the rows that would be deleted"
        ),
    },
    tags=["replication", "mysql", "maintenance"],
)
def mysql_pg_audit_cleanup():
    """Purge old synced rows from the audit table."""

    @task
    def cleanup_audit_log(**context) -> Dict[str, Any]:
        params = context["params"]
        config = ReplicationConfig.from_env().with_overrides(
            source_conn_id=params["source_conn_id"],
        )
        if not config.cleanup_enabled:
            raise AirflowSkipException("Audit log cleanup is disabled (SYNC_CLEANUP_ENABLED)")

        applier = IncrementalApplier(config)
        count = applier.cleanup_audit_log(
            keep_days=params.get("keep_days"),
            dry_run=params.get("dry_run", False),
        )
        return {"dry_run": params.get("dry_run", False), "records": count}

    cleanup_audit_log()


mysql_pg_audit_cleanup()
