"""
Change Capture (Trigger) Module

Installs AFTER INSERT / UPDATE / DELETE row triggers on source tables. Each
trigger appends one row to the audit table with the table name, operation,
serialized primary key and JSON snapshots of the pre/post row images, which
turns the audit table into an ordered change stream for incremental apply.
"""

from typing import Dict, List, Optional, Sequence
import logging

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.models import OPERATIONS
from mysql_pg_replication.mysql_helper import MySqlConnectionHelper, quote_identifier
from mysql_pg_replication.schema_discovery import SchemaDiscovery

logger = logging.getLogger(__name__)


def trigger_name(table_name: str, operation: str) -> str:
    return f"{table_name}_after_{operation.upper()}_trigger"


def _sql_string(value: str) -> str:
    return "'" + str(value).replace("\\", "\\\\").replace("'", "''") + "'"


def json_object_expr(columns: Sequence[str], alias: str) -> str:
    """JSON_OBJECT('col', ALIAS.`col`, ...) over every column of the table."""
    pairs = [f"{_sql_string(c)}, {alias}.{quote_identifier(c)}" for c in columns]
    return f"JSON_OBJECT({', '.join(pairs)})"


def record_identifier_expr(primary_key: Sequence[str], alias: str) -> str:
    """
    Expression producing 'pk:value[,pk:value...]' from a row image.

    NULL key values are rendered as the literal text NULL; tables without a
    primary key get a NULL identifier.
    """
    if not primary_key:
        return "NULL"
    parts = [
        f"{_sql_string(pk + ':')}, COALESCE({alias}.{quote_identifier(pk)}, 'NULL')"
        for pk in primary_key
    ]
    return "CONCAT(" + ", ',', ".join(parts) + ")"


def build_trigger_sql(
    table_name: str,
    operation: str,
    columns: Sequence[str],
    primary_key: Sequence[str],
    audit_table: str,
) -> str:
    """
    Build the CREATE TRIGGER statement for one table and operation.

    INSERT identifies the row by its post-image; UPDATE and DELETE by the
    pre-image, so a changed key still finds the target row. old_data is
    absent for INSERT, new_data for DELETE.

    Args:
        table_name: Source table
        operation: INSERT, UPDATE or DELETE
        columns: All column names of the table
        primary_key: Primary key column names (may be empty)
        audit_table: Table receiving the audit rows

    Returns:
        CREATE TRIGGER statement
    """
    operation = operation.upper()
    if operation not in OPERATIONS:
        raise ValueError(f"Unsupported trigger operation '{operation}'")

    key_alias = 'NEW' if operation == 'INSERT' else 'OLD'
    old_data = json_object_expr(columns, 'OLD') if operation in ('UPDATE', 'DELETE') else 'NULL'
    new_data = json_object_expr(columns, 'NEW') if operation in ('INSERT', 'UPDATE') else 'NULL'

    return f"""
CREATE TRIGGER {quote_identifier(trigger_name(table_name, operation))}
AFTER {operation} ON {quote_identifier(table_name)}
FOR EACH ROW
BEGIN
    INSERT INTO {quote_identifier(audit_table)} (
        table_name,
        record_id,
        operation,
        old_data,
        new_data,
        synced,
        retry_count,
        created_at
    ) VALUES (
        {_sql_string(table_name)},
        {record_identifier_expr(primary_key, key_alias)},
        {_sql_string(operation)},
        {old_data},
        {new_data},
        FALSE,
        0,
        NOW()
    );
END
"""


class TriggerManager:
    """Create and drop the capture triggers on the source database."""

    def __init__(
        self,
        config: ReplicationConfig,
        source: Optional[MySqlConnectionHelper] = None,
        discovery: Optional[SchemaDiscovery] = None,
    ):
        self.config = config
        self.source = source or MySqlConnectionHelper(
            config.source_conn_id, database=config.source_database
        )
        self.discovery = discovery or SchemaDiscovery(config, source=self.source)

    def drop_triggers(self, table_name: str) -> None:
        """Drop the three capture triggers of a table if they exist."""
        for operation in OPERATIONS:
            self.source.run(
                f"DROP TRIGGER IF EXISTS {quote_identifier(trigger_name(table_name, operation))}"
            )

    def install_triggers(self, table_name: str, drop_existing: bool = False) -> List[str]:
        """
        Create the INSERT/UPDATE/DELETE triggers for a table.

        Args:
            table_name: Source table
            drop_existing: Drop previously installed triggers first

        Returns:
            Names of the created triggers
        """
        if drop_existing:
            self.drop_triggers(table_name)

        columns = [c.name for c in self.discovery.get_columns(table_name)]
        primary_key = self.discovery.get_primary_key(table_name)
        if not primary_key:
            logger.warning(
                f"{table_name} has no primary key; changes will be matched on full row images"
            )

        created = []
        for operation in OPERATIONS:
            self.source.run(
                build_trigger_sql(table_name, operation, columns, primary_key, self.config.audit_table)
            )
            created.append(trigger_name(table_name, operation))

        logger.debug(f"Installed triggers on {table_name}")
        return created

    def setup(self, tables: Optional[List[str]] = None, drop_existing: bool = False) -> Dict[str, List[str]]:
        """
        Install capture triggers on the given tables (all discovered tables by default).

        Returns:
            Dict of table -> created trigger names
        """
        table_list = tables if tables else self.discovery.list_tables()
        logger.info(f"Setting up triggers for {len(table_list)} tables")

        result = {}
        for table_name in table_list:
            result[table_name] = self.install_triggers(table_name, drop_existing=drop_existing)

        logger.info("Triggers setup completed")
        return result

    def remove(self, tables: Optional[List[str]] = None) -> List[str]:
        """Drop capture triggers from the given tables (all discovered tables by default)."""
        table_list = tables if tables else self.discovery.list_tables()
        for table_name in table_list:
            self.drop_triggers(table_name)
        logger.info(f"Dropped triggers on {len(table_list)} tables")
        return table_list
