"""
MySQL to PostgreSQL Incremental Replication DAG

This DAG replays row changes captured by the audit triggers onto PostgreSQL.

Each run reads pending audit records (unsynced, below the retry ceiling) in
id order and applies every record in its own target transaction. Failed
records are retried on later runs until SYNC_RETRY_MAX attempts are used up.

Modes:
- default: one pass per run, scheduled every minute
- daemon=true: keep polling every SYNC_INTERVAL seconds inside one task
  (stops after max_iterations, or when the memory ceiling is exceeded)
- use_queue=true: fan pending records out to mapped apply_record tasks. They
  run one at a time in audit id order, so a change never overtakes an earlier
  change to the same row. Each task gets 3 attempts; Airflow waits 1 minute,
  then 2 minutes (exponential backoff capped at 15 minutes), rather than a
  fixed 1/5/15-minute schedule.

Requires the triggers from mysql_pg_setup_triggers and the target tables
created by the backfill.
"""

from airflow.decorators import dag, task
from airflow.exceptions import AirflowException, AirflowSkipException
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Dict, List, Any
import logging

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.incremental_apply import IncrementalApplier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = ReplicationConfig.from_env()


def _applier(params: Dict[str, Any]) -> IncrementalApplier:
    config = DEFAULT_CONFIG.with_overrides(
        source_conn_id=params.get("source_conn_id"),
        target_conn_id=params.get("target_conn_id"),
        target_schema=params.get("target_schema"),
    )
    return IncrementalApplier(config)


@dag(
    dag_id="mysql_to_postgres_incremental",
    start_date=datetime(2025, 1, 1),
    schedule="* * * * *",
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=True,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
    },
    params={
        "source_conn_id": Param(
            default=DEFAULT_CONFIG.source_conn_id,
            type="string",
            description="MySQL/MariaDB connection ID"
        ),
        "target_conn_id": Param(
            default=DEFAULT_CONFIG.target_conn_id,
            type="string",
            description="PostgreSQL connection ID"
        ),
        "target_schema": Param(
            default=DEFAULT_CONFIG.target_schema,
            type="string",
            description="Target schema in PostgreSQL"
        ),
        "daemon": Param(
            default=False,
            type="boolean",
            description="Keep polling inside one task instead of a single pass"
        ),
        "max_iterations": Param(
            default=None,
            type=["null", "integer"],
            minimum=1,
            description="Stop the daemon after this many passes"
        ),
        "use_queue": Param(
            default=DEFAULT_CONFIG.use_queue,
            type="boolean",
            description="Apply each record in its own mapped task with retries"
        ),
    },
    tags=["replication", "mysql", "postgres", "cdc", "incremental"],
)
def mysql_to_postgres_incremental():
    """Incremental DAG: apply captured changes from the audit table."""

    @task
    def apply_pending(**context) -> Dict[str, Any]:
        """
        Apply pending records directly (single pass or daemon).

        Returns:
            Pass statistics plus overall audit counts
        """
        params = context["params"]
        if params.get("use_queue"):
            raise AirflowSkipException("Records are dispatched to apply_record tasks")

        applier = _applier(params)
        if params.get("daemon"):
            totals = applier.run_daemon(max_iterations=params.get("max_iterations"))
            return {"mode": "daemon", **totals, "overall": applier.get_stats()}

        stats = applier.process_pending()
        logger.info(
            f"Processed: {stats.processed} | Success: {stats.succeeded} | Failed: {stats.failed}"
        )
        if stats.failed:
            logger.warning("Some records failed to sync. Check the audit table error_message column.")
        return {"mode": "once", **stats.to_dict(), "overall": applier.get_stats()}

    @task
    def collect_pending_ids(**context) -> List[int]:
        """Pending audit ids for the mapped apply tasks (empty unless use_queue)."""
        params = context["params"]
        if not params.get("use_queue"):
            return []
        ids = _applier(params).fetch_pending_ids()
        logger.info(f"Dispatching {len(ids)} audit records")
        return ids

    @task(
        max_active_tis_per_dagrun=1,
        retries=2,
        retry_delay=timedelta(minutes=1),
        retry_exponential_backoff=True,
        max_retry_delay=timedelta(minutes=15),
    )
    def apply_record(audit_id: int, **context) -> int:
        """Apply one audit record; raising lets Airflow retry it."""
        if not _applier(context["params"]).sync_record_by_id(audit_id):
            raise AirflowException(f"Audit record {audit_id} failed to sync")
        return audit_id

    apply_pending()
    apply_record.expand(audit_id=collect_pending_ids())


mysql_to_postgres_incremental()
