"""
Source Schema Discovery Module

Introspects the MySQL/MariaDB catalog (INFORMATION_SCHEMA) for the tables to
replicate, their columns, primary keys and foreign keys, and orders tables so
that referenced (parent) tables are always loaded before their children.
"""

from typing import Dict, Iterable, List, Optional
import logging
import re

from airflow.providers.postgres.hooks.postgres import PostgresHook

from mysql_pg_replication.config import ReplicationConfig
from mysql_pg_replication.exceptions import DependencyCycleError
from mysql_pg_replication.models import ColumnDef, ForeignKeyRef, TableSchema
from mysql_pg_replication.mysql_helper import MySqlConnectionHelper

logger = logging.getLogger(__name__)


class SchemaDiscovery:
    """Read-only introspection of the source catalog."""

    def __init__(
        self,
        config: ReplicationConfig,
        source: Optional[MySqlConnectionHelper] = None,
    ):
        """
        Initialize schema discovery.

        Args:
            config: Replication configuration
            source: Source connection helper (built from config when omitted)
        """
        self.config = config
        self.source = source or MySqlConnectionHelper(
            config.source_conn_id, database=config.source_database
        )

    @property
    def database(self) -> str:
        return self.config.source_database or self.source.database

    def should_include(self, table_name: str) -> bool:
        """
        Apply the include filter and the exclude set to a table name.

        The include filter is either '*' (everything) or a regular expression
        searched in the table name.
        """
        if table_name in self.config.excluded_tables:
            return False

        pattern = self.config.include_tables
        if not pattern or pattern == '*':
            return True

        return re.search(pattern, table_name) is not None

    def list_tables(self) -> List[str]:
        """
        Get the base tables of the source database that should be replicated.

        Returns:
            Table names in catalog order
        """
        rows = self.source.get_records(
            """
            SELECT TABLE_NAME
            FROM INFORMATION_SCHEMA.TABLES
            WHERE TABLE_SCHEMA = %s AND TABLE_TYPE = 'BASE TABLE'
            ORDER BY TABLE_NAME
            """,
            [self.database],
        )

        tables = []
        for row in rows:
            table_name = row[0]
            if self.should_include(table_name):
                tables.append(table_name)
            else:
                logger.debug(f"Excluding table {table_name}")

        logger.info(f"Found {len(tables)} tables in source database '{self.database}'")
        return tables

    def get_columns(self, table_name: str) -> List[ColumnDef]:
        """
        Get column metadata for a table, ordered by ordinal position.

        Args:
            table_name: Source table name

        Returns:
            List of ColumnDef
        """
        rows = self.source.get_dicts(
            """
            SELECT
                COLUMN_NAME AS column_name,
                DATA_TYPE AS data_type,
                COLUMN_TYPE AS column_type,
                IS_NULLABLE AS is_nullable,
                COLUMN_DEFAULT AS column_default,
                EXTRA AS extra,
                CHARACTER_MAXIMUM_LENGTH AS character_maximum_length,
                NUMERIC_PRECISION AS numeric_precision,
                NUMERIC_SCALE AS numeric_scale
            FROM INFORMATION_SCHEMA.COLUMNS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
            ORDER BY ORDINAL_POSITION
            """,
            [self.database, table_name],
        )
        return [ColumnDef.from_source(row) for row in rows]

    def get_primary_key(self, table_name: str) -> List[str]:
        """Primary key column names in key order (empty when there is none)."""
        rows = self.source.get_records(
            """
            SELECT COLUMN_NAME
            FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE
            WHERE TABLE_SCHEMA = %s
              AND TABLE_NAME = %s
              AND CONSTRAINT_NAME = 'PRIMARY'
            ORDER BY ORDINAL_POSITION
            """,
            [self.database, table_name],
        )
        return [row[0] for row in rows]

    def get_foreign_keys(self, table_name: str) -> List[ForeignKeyRef]:
        """Foreign key edges leaving a table."""
        rows = self.source.get_records(
            """
            SELECT CONSTRAINT_NAME, COLUMN_NAME, REFERENCED_TABLE_NAME, REFERENCED_COLUMN_NAME
            FROM INFORMATION_SCHEMA.KEY_COLUMN_USAGE
            WHERE TABLE_SCHEMA = %s
              AND TABLE_NAME = %s
              AND REFERENCED_TABLE_NAME IS NOT NULL
            ORDER BY CONSTRAINT_NAME, ORDINAL_POSITION
            """,
            [self.database, table_name],
        )
        return [
            ForeignKeyRef(
                column=row[1],
                referenced_table=row[2],
                referenced_column=row[3],
                constraint_name=row[0],
            )
            for row in rows
        ]

    def get_table_schema(self, table_name: str) -> TableSchema:
        return TableSchema(
            name=table_name,
            columns=tuple(self.get_columns(table_name)),
            primary_key=tuple(self.get_primary_key(table_name)),
            foreign_keys=tuple(self.get_foreign_keys(table_name)),
        )

    def build_dependency_graph(self, tables: Iterable[str]) -> Dict[str, List[str]]:
        """
        Map each table to the tables it references, restricted to the given set.

        Args:
            tables: Table names to consider

        Returns:
            Dict of table -> sorted list of referenced tables
        """
        table_list = list(tables)
        known = set(table_list)
        graph: Dict[str, List[str]] = {}

        for table in table_list:
            referenced = {
                fk.referenced_table
                for fk in self.get_foreign_keys(table)
                if fk.referenced_table in known
            }
            graph[table] = sorted(referenced)

        return graph

    def topological_order(self, tables: Iterable[str]) -> List[str]:
        """Order tables so every table comes after the tables it references."""
        table_list = list(tables)
        return order_by_dependencies(table_list, self.build_dependency_graph(table_list))


def order_by_dependencies(tables: List[str], graph: Dict[str, List[str]]) -> List[str]:
    """
    Depth-first topological sort over an explicit stack.

    Dependencies are visited before the table that references them, so the
    result lists parents first. Self-references are ignored; any other cycle
    raises DependencyCycleError.

    Args:
        tables: Tables in the order they should be visited
        graph: Table -> referenced tables

    Returns:
        Tables in load order
    """
    ordered: List[str] = []
    visited = set()

    for root in tables:
        if root in visited:
            continue

        # Each frame is (table, iterator over its remaining dependencies)
        stack = [(root, iter(graph.get(root, [])))]
        on_path = {root}
        visited.add(root)

        while stack:
            table, dependencies = stack[-1]
            advanced = False

            for dependency in dependencies:
                if dependency == table:
                    continue
                if dependency in on_path:
                    path = [frame[0] for frame in stack]
                    cycle = path[path.index(dependency):] + [dependency]
                    raise DependencyCycleError(cycle)
                if dependency in visited:
                    continue
                visited.add(dependency)
                on_path.add(dependency)
                stack.append((dependency, iter(graph.get(dependency, []))))
                advanced = True
                break

            if not advanced:
                stack.pop()
                on_path.discard(table)
                ordered.append(table)

    return ordered


class SchemaCache:
    """
    Short-lived memo of catalog lookups for one backfill or apply run.

    Create one per run (or call invalidate() between runs) so schema changes
    are picked up on the next run.
    """

    def __init__(self, discovery: SchemaDiscovery, target_hook: Optional[PostgresHook] = None):
        self.discovery = discovery
        self.target_hook = target_hook
        self._schemas: Dict[str, TableSchema] = {}
        self._target_columns: Dict[str, Dict[str, ColumnDef]] = {}

    def table_schema(self, table_name: str) -> TableSchema:
        if table_name not in self._schemas:
            self._schemas[table_name] = self.discovery.get_table_schema(table_name)
        return self._schemas[table_name]

    def target_columns(self, table_name: str) -> Dict[str, ColumnDef]:
        """
        Live column definitions of a target table, keyed by column name.

        Args:
            table_name: Target table name (in the configured target schema)

        Returns:
            Dict of column name -> ColumnDef built from the PostgreSQL catalog
        """
        if table_name not in self._target_columns:
            if self.target_hook is None:
                raise ValueError("SchemaCache has no target hook configured")
            rows = self.target_hook.get_records(
                """
                SELECT column_name, data_type, udt_name, is_nullable, column_default,
                       character_maximum_length, numeric_precision, numeric_scale
                FROM information_schema.columns
                WHERE table_schema = %s AND table_name = %s
                ORDER BY ordinal_position
                """,
                parameters=(self.discovery.config.target_schema, table_name),
            )
            keys = (
                'column_name', 'data_type', 'udt_name', 'is_nullable', 'column_default',
                'character_maximum_length', 'numeric_precision', 'numeric_scale',
            )
            columns = [ColumnDef.from_target(dict(zip(keys, row))) for row in rows]
            self._target_columns[table_name] = {c.name: c for c in columns}
        return self._target_columns[table_name]

    def invalidate(self) -> None:
        self._schemas.clear()
        self._target_columns.clear()
