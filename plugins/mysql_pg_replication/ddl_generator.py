"""
PostgreSQL DDL Generation Module

This module generates and executes target-side DDL: CREATE TABLE statements
synthesized from source schema snapshots, table existence checks and the
destructive drop-everything reset used before a fresh backfill.
"""

from typing import List, Optional
from airflow.providers.postgres.hooks.postgres import PostgresHook
import logging

from mysql_pg_replication.exceptions import SchemaError
from mysql_pg_replication.models import TableSchema
from mysql_pg_replication.type_mapping import column_definition, quote_pg_identifier

logger = logging.getLogger(__name__)


class DDLGenerator:
    """Generate and run PostgreSQL DDL for replicated tables."""

    def __init__(self, postgres_conn_id: str, target_schema: str = 'public', hook: Optional[PostgresHook] = None):
        """
        Initialize the DDL generator.

        Args:
            postgres_conn_id: Airflow connection ID for PostgreSQL
            target_schema: Schema the replicated tables live in
            hook: Pre-built hook (built from postgres_conn_id when omitted)
        """
        self.target_schema = target_schema
        self.postgres_hook = hook or PostgresHook(postgres_conn_id=postgres_conn_id)

    def _qualified(self, table_name: str) -> str:
        return f"{quote_pg_identifier(self.target_schema)}.{quote_pg_identifier(table_name)}"

    def generate_create_table(self, table_schema: TableSchema) -> str:
        """
        Generate CREATE TABLE statement for PostgreSQL.

        Every column is mapped through the type mapper; the primary key (possibly
        composite) is added as a table constraint.

        Args:
            table_schema: Source table snapshot

        Returns:
            CREATE TABLE DDL statement
        """
        definitions = [column_definition(column) for column in table_schema.columns]

        if table_schema.primary_key:
            pk_columns = ', '.join(quote_pg_identifier(c) for c in table_schema.primary_key)
            definitions.append(f"PRIMARY KEY ({pk_columns})")

        return (
            f"CREATE TABLE IF NOT EXISTS {self._qualified(table_schema.name)} (\n    "
            + ',\n    '.join(definitions)
            + "\n)"
        )

    def generate_drop_table(self, table_name: str, cascade: bool = True) -> str:
        cascade_clause = " CASCADE" if cascade else ""
        return f"DROP TABLE IF EXISTS {self._qualified(table_name)}{cascade_clause}"

    def table_exists(self, table_name: str) -> bool:
        """Check whether a table exists in the target schema."""
        row = self.postgres_hook.get_first(
            """
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = %s AND table_name = %s
            )
            """,
            parameters=(self.target_schema, table_name),
        )
        return bool(row and row[0])

    def create_table(self, table_schema: TableSchema) -> str:
        """
        Create a target table from a source snapshot.

        Returns:
            The executed DDL

        Raises:
            SchemaError: If PostgreSQL rejects the statement
        """
        ddl = self.generate_create_table(table_schema)
        try:
            self.postgres_hook.run(ddl, autocommit=True)
        except Exception as e:
            logger.error(f"Failed to create table {table_schema.name}: {e}")
            logger.error(f"DDL: {ddl}")
            raise SchemaError(f"Could not create table {table_schema.name}: {e}") from e
        logger.info(f"Created table {self._qualified(table_schema.name)}")
        return ddl

    def list_tables(self) -> List[str]:
        rows = self.postgres_hook.get_records(
            "SELECT tablename FROM pg_tables WHERE schemaname = %s ORDER BY tablename",
            parameters=(self.target_schema,),
        )
        return [row[0] for row in rows]

    def drop_all_tables(self) -> List[str]:
        """
        Drop every table in the target schema.

        Runs with session_replication_role = replica so foreign keys and user
        triggers do not interfere; each table is dropped with CASCADE.

        Returns:
            Names of the tables dropped
        """
        tables = self.list_tables()
        if not tables:
            logger.info("No tables found in target schema")
            return []

        logger.warning(f"Dropping {len(tables)} tables in target schema '{self.target_schema}'")
        dropped = []
        conn = self.postgres_hook.get_conn()
        try:
            conn.autocommit = True
            with conn.cursor() as cursor:
                cursor.execute("SET session_replication_role = replica")
                try:
                    for table_name in tables:
                        try:
                            cursor.execute(self.generate_drop_table(table_name))
                            dropped.append(table_name)
                            logger.info(f"Dropped: {table_name}")
                        except Exception as e:
                            logger.error(f"Failed to drop {table_name}: {e}")
                finally:
                    cursor.execute("SET session_replication_role = DEFAULT")
        finally:
            conn.close()

        return dropped
