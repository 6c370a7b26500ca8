"""
Remote Procedure Gateway for DataSync

Executes named stored procedures and simple table queries against the
remote SQL Server database that holds the spatial tables. The gateway is
the only component that talks to the database; everything above it works
against the RemoteProcedureGateway contract.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pyodbc

logger = logging.getLogger(__name__)

# ODBC SQLSTATEs reported when a query or login times out
TIMEOUT_SQLSTATES = ("HYT00", "HYT01")

_IDENTIFIER_PART = re.compile(r"^\[?[A-Za-z_#@][A-Za-z0-9_#@$ ]*\]?$")


class ProcedureError(Exception):
    """Raised when a remote call fails."""
    pass


class ProcedureTimeout(ProcedureError):
    """Raised when a remote call exceeds the configured timeout."""
    pass


def quote_name(name: str) -> str:
    """
    Quote a (possibly schema-qualified) SQL Server object name.

    Args:
        name: Name such as ``dbo.Sites`` or ``Sites``

    Returns:
        Bracket-quoted name, e.g. ``[dbo].[Sites]``

    Raises:
        ValueError: If any part is not a plain identifier
    """
    if not name:
        raise ValueError("Object name must not be empty")

    parts = name.split(".")
    quoted = []
    for part in parts:
        if not _IDENTIFIER_PART.match(part):
            raise ValueError(f"Invalid identifier: {name}")
        quoted.append(f"[{part.strip('[]')}]")

    return ".".join(quoted)


class RemoteProcedureGateway(ABC):
    """
    Contract for the remote database used by the reconciliation engine.

    ``execute``, ``delete_table``, ``copy_table``, ``key_statistics`` and
    ``fetch_rows`` raise ProcedureError on failure. ``table_exists`` and
    ``column_exists`` return False, and ``row_count`` returns -1, when the
    answer cannot be determined.
    """

    @abstractmethod
    def execute(self, procedure_name: str, schema: str, *args: str) -> None:
        """Execute a stored procedure with positional string arguments."""

    @abstractmethod
    def table_exists(self, name: str) -> bool:
        """Check whether a table exists."""

    @abstractmethod
    def row_count(self, name: str) -> int:
        """Count rows in a table, -1 if the count cannot be determined."""

    @abstractmethod
    def delete_table(self, name: str) -> None:
        """Drop a table if it exists."""

    @abstractmethod
    def column_exists(self, table: str, column: str) -> bool:
        """Check whether a table has a column."""

    @abstractmethod
    def key_statistics(self, table: str, key_column: str) -> Tuple[int, int]:
        """Return (blank key count, duplicate key count) for a table."""

    @abstractmethod
    def copy_table(self, source: str, target: str) -> None:
        """Copy all rows of one table into a new table."""

    @abstractmethod
    def fetch_rows(
        self,
        table: str,
        columns: Sequence[str],
        order_by: Sequence[str]
    ) -> List[Dict[str, Any]]:
        """Read all rows of a table as dictionaries keyed by column name."""


class SqlServerGateway(RemoteProcedureGateway):
    """
    RemoteProcedureGateway backed by pyodbc.

    A single autocommit connection is opened lazily and reused. Every call
    runs with the configured query timeout.
    """

    def __init__(
        self,
        connection_string: str,
        timeout_seconds: int = 600,
        connect_timeout: int = 30
    ):
        """
        Initialize the gateway.

        Args:
            connection_string: ODBC connection string
            timeout_seconds: Query timeout applied to every call (0 = none)
            connect_timeout: Login timeout in seconds
        """
        self.connection_string = connection_string
        self.timeout_seconds = timeout_seconds
        self.connect_timeout = connect_timeout
        self._conn = None

        logger.debug(f"Initialized SqlServerGateway (timeout={timeout_seconds}s)")

    @staticmethod
    def build_connection_string(
        server: str,
        database: str,
        driver: str = "ODBC Driver 18 for SQL Server",
        username: Optional[str] = None,
        password: Optional[str] = None,
        trusted_connection: bool = False,
        encrypt: bool = True
    ) -> str:
        """
        Build an ODBC connection string for SQL Server.

        Args:
            server: Host name, optionally with ``,port``
            database: Database name
            driver: Installed ODBC driver name
            username: SQL login (ignored for trusted connections)
            password: SQL password
            trusted_connection: Use Windows authentication
            encrypt: Request an encrypted connection

        Returns:
            Connection string
        """
        parts = [
            f"DRIVER={{{driver}}}",
            f"SERVER={server}",
            f"DATABASE={database}",
        ]

        if trusted_connection:
            parts.append("Trusted_Connection=yes")
        else:
            if not username:
                raise ValueError("SQL Server login requires a username unless trusted_connection is set")
            parts.append(f"UID={username}")
            parts.append(f"PWD={{{password or ''}}}")

        parts.append(f"Encrypt={'yes' if encrypt else 'no'}")
        parts.append("TrustServerCertificate=yes")

        return ";".join(parts) + ";"

    def _connection(self):
        """Open the connection on first use."""
        if self._conn is None:
            try:
                self._conn = pyodbc.connect(
                    self.connection_string,
                    autocommit=True,
                    timeout=self.connect_timeout
                )
            except pyodbc.Error as e:
                raise self._translate(e, "connect") from e

            self._conn.timeout = self.timeout_seconds
            logger.info("Connected to SQL Server")

        return self._conn

    def _translate(self, error: Exception, action: str) -> ProcedureError:
        """Convert a driver error into a ProcedureError."""
        sqlstate = error.args[0] if error.args else ""
        if sqlstate in TIMEOUT_SQLSTATES:
            return ProcedureTimeout(f"{action} timed out after {self.timeout_seconds}s: {error}")
        return ProcedureError(f"{action} failed: {error}")

    def _run(self, sql: str, params: Sequence[Any] = (), action: str = "query", fetch: bool = False):
        """
        Run a statement and optionally return its first result set.

        Remaining result sets are drained so errors raised later in a
        procedure body are not lost.
        """
        logger.debug(f"Executing SQL: {sql}")

        try:
            cursor = self._connection().cursor()
            try:
                cursor.execute(sql, *params)

                rows = None
                if fetch:
                    columns = [c[0] for c in cursor.description] if cursor.description else []
                    rows = [dict(zip(columns, row)) for row in cursor.fetchall()]

                while cursor.nextset():
                    pass

                return rows
            finally:
                cursor.close()

        except pyodbc.Error as e:
            raise self._translate(e, action) from e

    def execute(self, procedure_name: str, schema: str, *args: str) -> None:
        """
        Execute a stored procedure.

        The schema is always the first argument, followed by ``args`` in
        order, matching the server-side procedure signatures.

        Raises:
            ProcedureError: If the procedure fails
            ProcedureTimeout: If the procedure exceeds the timeout
        """
        params = [schema, *args]
        placeholders = ", ".join("?" for _ in params)
        sql = f"EXECUTE {quote_name(procedure_name)} {placeholders}"

        logger.info(f"Executing procedure {procedure_name} with {len(params)} parameters")
        self._run(sql, params, action=f"EXECUTE {procedure_name}")

    def table_exists(self, name: str) -> bool:
        try:
            rows = self._run(
                "SELECT OBJECT_ID(?) AS object_id",
                [name],
                action=f"table_exists {name}",
                fetch=True
            )
        except ProcedureError as e:
            logger.error(f"Failed to check table {name}: {e}")
            return False

        return bool(rows) and rows[0]["object_id"] is not None

    def row_count(self, name: str) -> int:
        try:
            rows = self._run(
                f"SELECT COUNT_BIG(*) AS row_count FROM {quote_name(name)}",
                action=f"row_count {name}",
                fetch=True
            )
        except (ProcedureError, ValueError) as e:
            logger.error(f"Failed to count rows in {name}: {e}")
            return -1

        return int(rows[0]["row_count"])

    def delete_table(self, name: str) -> None:
        self._run(
            f"IF OBJECT_ID(?) IS NOT NULL DROP TABLE {quote_name(name)}",
            [name],
            action=f"delete_table {name}"
        )
        logger.info(f"Deleted table {name}")

    def column_exists(self, table: str, column: str) -> bool:
        try:
            rows = self._run(
                "SELECT COL_LENGTH(?, ?) AS col_length",
                [table, column],
                action=f"column_exists {table}.{column}",
                fetch=True
            )
        except ProcedureError as e:
            logger.error(f"Failed to check column {column} in {table}: {e}")
            return False

        return bool(rows) and rows[0]["col_length"] is not None

    def key_statistics(self, table: str, key_column: str) -> Tuple[int, int]:
        key = quote_name(key_column)
        table_ref = quote_name(table)
        not_blank = f"{key} IS NOT NULL AND LTRIM(RTRIM(CAST({key} AS NVARCHAR(4000)))) <> ''"

        sql = (
            f"SELECT "
            f"(SELECT COUNT_BIG(*) FROM {table_ref} WHERE NOT ({not_blank})) AS blank_keys, "
            f"(SELECT COUNT_BIG(*) FROM (SELECT {key} FROM {table_ref} WHERE {not_blank} "
            f"GROUP BY {key} HAVING COUNT_BIG(*) > 1) AS dup) AS duplicate_keys"
        )

        rows = self._run(sql, action=f"key_statistics {table}", fetch=True)
        return int(rows[0]["blank_keys"]), int(rows[0]["duplicate_keys"])

    def copy_table(self, source: str, target: str) -> None:
        self._run(
            f"SELECT * INTO {quote_name(target)} FROM {quote_name(source)}",
            action=f"copy_table {source} -> {target}"
        )
        logger.info(f"Copied {source} to {target}")

    def fetch_rows(
        self,
        table: str,
        columns: Sequence[str],
        order_by: Sequence[str]
    ) -> List[Dict[str, Any]]:
        select_list = ", ".join(quote_name(c) for c in columns)
        sql = f"SELECT {select_list} FROM {quote_name(table)}"

        if order_by:
            sql += " ORDER BY " + ", ".join(quote_name(c) for c in order_by)

        return self._run(sql, action=f"fetch_rows {table}", fetch=True)

    def close(self):
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("SQL Server connection closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
