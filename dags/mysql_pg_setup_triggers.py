"""
MySQL Change Capture Setup DAG

This DAG prepares the source database for incremental replication:
1. Create the bookkeeping tables (audit log, error log, progress) if missing
2. Install AFTER INSERT/UPDATE/DELETE triggers that write every row change
   into the audit table

Run it once before the first backfill, and again whenever a table's columns
change so the triggers capture the new column list (use drop=true).
Set remove_only=true to drop the triggers instead.

The record_id logged for an UPDATE is built from the row before the change
(OLD), as it is for DELETE, so an update that changes the primary key still
finds the existing target row. INSERT uses the new row.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Dict, List, Any
import logging

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.change_capture import TriggerManager
from mysql_pg_replication.sync_state import SyncStateStore

logger = logging.getLogger(__name__)


def _config(params: Dict[str, Any]) -> ReplicationConfig:
    return ReplicationConfig.from_env().with_overrides(
        source_conn_id=params.get("source_conn_id"),
        source_database=params.get("source_database"),
    )


@dag(
    dag_id="mysql_pg_setup_triggers",
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 1,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="mysql_source",
            type="string",
            description="MySQL/MariaDB connection ID"
        ),
        "source_database": Param(
            default=None,
            type=["null", "string"],
            description="Source database (defaults to the connection schema)"
        ),
        "table": Param(
            default=None,
            type=["null", "string"],
            description="Only this table (all replicated tables when empty)"
        ),
        "drop": Param(
            default=False,
            type="boolean",
            description="Drop existing triggers before creating them"
        ),
        "remove_only": Param(
            default=False,
            type="boolean",
            description="Drop the triggers without recreating them"
        ),
    },
    tags=["replication", "mysql", "postgres", "cdc"],
)
def mysql_pg_setup_triggers():
    """Create bookkeeping tables and install change-capture triggers."""

    @task
    def ensure_bookkeeping_tables(**context) -> str:
        config = _config(context["params"])
        SyncStateStore(config).ensure_tables()
        return "Bookkeeping tables ready"

    @task
    def configure_triggers(**context) -> Dict[str, List[str]]:
        """
        Install (or remove) the audit triggers.

        Returns:
            Dict of table -> trigger names created (or dropped)
        """
        params = context["params"]
        config = _config(params)
        manager = TriggerManager(config)
        tables = [params["table"]] if params.get("table") else None

        if params.get("remove_only"):
            removed = manager.remove(tables)
            logger.info(f"Removed triggers from {len(removed)} tables")
            return {table: [] for table in removed}

        result = manager.setup(tables, drop_existing=params.get("drop", False))
        logger.info(f"Triggers installed on {len(result)} tables")
        return result

    ensure_bookkeeping_tables() >> configure_triggers()


mysql_pg_setup_triggers()
