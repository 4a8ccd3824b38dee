"""
MySQL to PostgreSQL Backfill DAG

This DAG copies the existing rows of the source database into PostgreSQL:

1. Optionally drop every target table, then create missing ones from the
   source schema (create_tables=true)
2. Copy each table in foreign-key dependency order, page by page
3. Failed pages fall back to row-by-row inserts with retries; rows that still
   fail are quarantined in the error log instead of aborting the run
4. Progress is saved after every page (resume=true continues from there)

Maintenance modes:
- retry_errors=true: replay only the quarantined batches
- reset_progress=true: forget saved progress (for one table or all)

Install the change-capture triggers first so changes made during the backfill
are picked up by the incremental DAG afterwards.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from typing import Dict, Any
import logging
import os

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.backfill import BackfillExecutor

# Configuration from environment
DEFAULT_BATCH_SIZE = int(os.environ.get('SYNC_BACKFILL_BATCH_SIZE', '1000'))

logger = logging.getLogger(__name__)


@dag(
    dag_id="mysql_to_postgres_backfill",
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
    },
    params={
        "source_conn_id": Param(
            default="mysql_source",
            type="string",
            description="MySQL/MariaDB connection ID"
        ),
        "target_conn_id": Param(
            default="postgres_target",
            type="string",
            description="PostgreSQL connection ID"
        ),
        "target_schema": Param(
            default="public",
            type="string",
            description="Target schema in PostgreSQL"
        ),
        "table": Param(
            default=None,
            type=["null", "string"],
            description="Only backfill this table (all tables when empty)"
        ),
        "create_tables": Param(
            default=False,
            type="boolean",
            description="Create missing target tables from the source schema"
        ),
        "drop_target": Param(
            default=False,
            type="boolean",
            description="DROP ALL TABLES in the target schema before the backfill"
        ),
        "batch_size": Param(
            default=DEFAULT_BATCH_SIZE,
            type="integer",
            minimum=1,
            maximum=100000,
            description="Rows per page"
        ),
        "resume": Param(
            default=False,
            type="boolean",
            description="Resume unfinished tables from their last saved offset"
        ),
        "retry_errors": Param(
            default=False,
            type="boolean",
            description="Only retry batches quarantined in the error log"
        ),
        "reset_progress": Param(
            default=False,
            type="boolean",
            description="Reset saved progress (for 'table', or all tables) and stop"
        ),
    },
    tags=["replication", "mysql", "postgres", "backfill"],
)
def mysql_to_postgres_backfill():
    """Backfill DAG: resumable bulk copy from MySQL into PostgreSQL."""

    @task
    def run_backfill(**context) -> Dict[str, Any]:
        """
        Run the requested backfill mode.

        Returns:
            Summary with the mode, per-table results and outstanding errors
        """
        params = context["params"]
        config = ReplicationConfig.from_env().with_overrides(
            source_conn_id=params["source_conn_id"],
            target_conn_id=params["target_conn_id"],
            target_schema=params["target_schema"],
            backfill_batch_size=params["batch_size"],
        )
        executor = BackfillExecutor(config)
        table = params.get("table") or None

        if params.get("reset_progress"):
            executor.reset_progress(table)
            return {"mode": "reset_progress", "table": table}

        if params.get("retry_errors"):
            stats = executor.retry_errors(table)
            return {"mode": "retry_errors", **stats, "errors": executor.error_summary()}

        results = executor.run(
            table=table,
            create_tables=params.get("create_tables", False),
            drop_target=params.get("drop_target", False),
            resume=params.get("resume", False),
        )
        return {
            "mode": "backfill",
            "tables": [r.to_dict() for r in results],
            "errors": executor.error_summary(),
        }

    @task
    def report_progress(summary: Dict[str, Any], **context) -> Dict[str, Any]:
        """Log per-table completion and outstanding errors."""
        params = context["params"]
        config = ReplicationConfig.from_env().with_overrides(
            source_conn_id=params["source_conn_id"],
            target_conn_id=params["target_conn_id"],
        )
        executor = BackfillExecutor(config)

        progress = executor.progress_summary()
        for row in progress:
            logger.info(
                f"{row['table_name']}: {row['status']} "
                f"{row['synced_rows']:,}/{row['total_rows']:,} ({row['percent_complete']}%)"
                + (f", {row['failed_rows']:,} failed" if row['failed_rows'] else "")
            )

        errors = summary.get("errors") or {}
        if errors:
            logger.warning(
                "Outstanding errors (run with retry_errors=true): "
                + ", ".join(f"{t}: {n}" for t, n in errors.items())
            )

        return {"mode": summary.get("mode"), "progress": progress, "errors": errors}

    report_progress(run_backfill())


mysql_to_postgres_backfill()
