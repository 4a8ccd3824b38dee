"""
MySQL Connection Helper

This module provides a lightweight hook-like wrapper around PyMySQL that reads
its settings from an Airflow connection, so the source database can be reached
without the MySQL provider package.

It offers the familiar get_records/get_first/run interface plus get_dicts for
queries whose rows are consumed by column name.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
from airflow.hooks.base import BaseHook
import pymysql
import pymysql.cursors
import logging

logger = logging.getLogger(__name__)


def quote_identifier(name: str) -> str:
    """Quote a MySQL identifier with backticks, escaping embedded backticks."""
    return "`" + str(name).replace("`", "``") + "`"


class MySqlConnectionHelper:
    """
    Helper class for MySQL/MariaDB connections that mimics the hook interface.

    Connections are opened per call and closed afterwards. Callers that need a
    multi-statement unit of work can use get_conn() directly.
    """

    def __init__(self, mysql_conn_id: str, database: Optional[str] = None):
        """
        Initialize the MySQL connection helper.

        Args:
            mysql_conn_id: Airflow connection ID for the source database
            database: Database name, overriding the one stored on the connection
        """
        self.conn_id = mysql_conn_id
        self._database = database
        self._conn_config: Optional[Dict[str, Any]] = None

    def _get_connection_config(self) -> Dict[str, Any]:
        """
        Get PyMySQL connect() keyword arguments from the Airflow connection.

        Returns:
            Dictionary of connection parameters
        """
        if self._conn_config is None:
            conn = BaseHook.get_connection(self.conn_id)
            extra = conn.extra_dejson or {}

            self._conn_config = {
                'host': conn.host or 'localhost',
                'port': int(conn.port or 3306),
                'user': conn.login,
                'password': conn.password or '',
                'database': self._database or conn.schema,
                'charset': extra.get('charset', 'utf8mb4'),
                'connect_timeout': int(extra.get('connect_timeout', 30)),
                'autocommit': False,
            }

        return self._conn_config

    @property
    def database(self) -> str:
        """Name of the source database (schema) this helper points at."""
        database = self._get_connection_config()['database']
        if not database:
            raise ValueError(
                f"Cannot determine database name from connection '{self.conn_id}'. "
                "Set the connection schema or SYNC_SOURCE_DATABASE."
            )
        return database

    def get_conn(self) -> pymysql.connections.Connection:
        """
        Open a new PyMySQL connection.

        Returns:
            PyMySQL Connection object
        """
        return pymysql.connect(**self._get_connection_config())

    def _execute(self, sql: str, parameters: Optional[Sequence[Any]], fetch: str, dict_rows: bool = False):
        conn = None
        try:
            conn = self.get_conn()
            cursor_class = pymysql.cursors.DictCursor if dict_rows else pymysql.cursors.Cursor
            with conn.cursor(cursor_class) as cursor:
                if parameters:
                    cursor.execute(sql, parameters)
                else:
                    cursor.execute(sql)

                if fetch == 'all':
                    result = cursor.fetchall()
                elif fetch == 'one':
                    result = cursor.fetchone()
                else:
                    result = cursor.rowcount
            conn.commit()
            return result
        except Exception as e:
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get_records(
        self,
        sql: str,
        parameters: Optional[Sequence[Any]] = None
    ) -> List[Tuple[Any, ...]]:
        """
        Execute a query and return all rows as a list of tuples.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            List of tuples, one per row
        """
        return list(self._execute(sql, parameters, 'all'))

    def get_dicts(
        self,
        sql: str,
        parameters: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """
        Execute a query and return all rows as dictionaries keyed by column name.

        Column order of each dict follows the SELECT list.
        """
        return list(self._execute(sql, parameters, 'all', dict_rows=True))

    def get_first(
        self,
        sql: str,
        parameters: Optional[Sequence[Any]] = None
    ) -> Optional[Tuple[Any, ...]]:
        """
        Execute a query and return the first row as a tuple.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            First row as a tuple, or None if no rows
        """
        return self._execute(sql, parameters, 'one')

    def run(
        self,
        sql: str,
        parameters: Optional[Sequence[Any]] = None
    ) -> int:
        """
        Execute a SQL statement (typically DDL or DML) and commit.

        Args:
            sql: SQL statement to execute
            parameters: Optional list of parameters for the statement

        Returns:
            Number of affected rows reported by the driver
        """
        return self._execute(sql, parameters, 'rowcount')
