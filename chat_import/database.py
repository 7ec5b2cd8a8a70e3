"""
Database connection module.

Provides connection management for the import database and small metadata
queries used by the CLI and the API health check.
"""

import sqlite3
from contextlib import closing
from typing import List, Tuple, Optional, Any
import logging

from chat_import.config import Config
from chat_import.importer.schema import create_schema, get_table_names

logger = logging.getLogger(__name__)


class DatabaseConnection:
    """
    Database connection manager for the import database.

    Opens the database read-write, creates the schema on first use and
    enables foreign keys and a busy timeout on every connection.
    """

    def __init__(self, config: Config, *, timeout: float = 5.0):
        """
        Initialize database connection.

        Args:
            config: Configuration object with database path.
            timeout: Seconds to wait on a locked database before failing.
        """
        self.config = config
        self.timeout = timeout
        self._connection: Optional[sqlite3.Connection] = None

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def connect(self) -> sqlite3.Connection:
        """
        Open the database, creating it and its schema if needed.

        Returns:
            SQLite connection object.

        Raises:
            sqlite3.Error: If connection fails.
        """
        if self._connection is not None:
            return self._connection

        db_path = self.config.db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            # Imports may run in FastAPI worker threads
            conn = sqlite3.connect(
                str(db_path), timeout=self.timeout, check_same_thread=False
            )
            conn.execute("PRAGMA foreign_keys = ON;")
            create_schema(conn)
            self._connection = conn
            logger.debug(f"Connected to database: {db_path}")
            return conn
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    def close(self) -> None:
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

    @property
    def connection(self) -> sqlite3.Connection:
        """
        Get database connection.

        Raises:
            RuntimeError: If connection not established.
        """
        if self._connection is None:
            raise RuntimeError("Database connection not established. Call connect() first.")
        return self._connection

    def get_table_names(self) -> List[str]:
        """Names of the tables currently in the import database."""
        return get_table_names(self.connection)

    def _require_table_exists(self, table_name: str) -> str:
        # Identifiers cannot be bound as parameters; only known tables are interpolated
        if table_name not in self.get_table_names():
            raise ValueError(f"Unknown table name: {table_name!r}")
        return table_name

    def get_row_count(self, table_name: str) -> int:
        """Count the rows in one import table (messages, ledger entries, ...)."""
        safe_table = self._require_table_exists(table_name)
        with closing(self.connection.cursor()) as cursor:
            cursor.execute(f"SELECT COUNT(*) FROM `{safe_table}`;")
            row = cursor.fetchone()
            return row[0] if row else 0

    def get_row_counts_by_table(
        self, table_names: Optional[List[str]] = None
    ) -> List[Tuple[str, int]]:
        """
        Row counts for the health check and the ``stats`` command.

        Args:
            table_names: Tables to count. Every table in the database when omitted.

        Returns:
            (table_name, row_count) pairs in the order requested.
        """
        names = self.get_table_names() if table_names is None else table_names
        return [(name, self.get_row_count(name)) for name in names]

    def execute_query(
        self, query: str, parameters: Optional[Tuple[Any, ...]] = None
    ) -> List[Tuple[Any, ...]]:
        """Run a read query against the import database and fetch every row."""
        with closing(self.connection.cursor()) as cursor:
            cursor.execute(query, parameters or ())
            return cursor.fetchall()
