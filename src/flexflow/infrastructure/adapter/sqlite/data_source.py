import sqlite3
import threading
import time
from typing import Any

import msgspec
import structlog

from flexflow.domain.error import DataSourceUnavailable, ExecutionError, OperationTimeoutError
from flexflow.domain.port import DataSource

logger = structlog.get_logger(__name__)


class DatabaseConfig(msgspec.Struct, forbid_unknown_fields=True):
    """SQLite connection settings.

    ``queries`` maps operation names to SQL using named parameters (``:gene_id``).
    ``init_script`` runs once when the data source is created.
    """

    connection_string: str = ":memory:"
    connection_timeout: float = 5
    query_timeout: float = 30
    queries: dict[str, str] = msgspec.field(default_factory=dict)
    init_script: str = ""


def database_path(connection_string: str) -> str:
    """Accept either a bare SQLite path or a ``sqlite:///path`` URL."""
    return connection_string.removeprefix("sqlite:///")


class DatabaseDataSource(DataSource):
    """SQLite-backed data source for workflow queries."""

    source_type = "database"
    config_type = DatabaseConfig

    def __init__(self, name: str, config: DatabaseConfig):
        """
        Initialize the SQLite data source.

        :param name: Registry name of the data source
        :type name: str
        :param config: Connection settings and named queries
        :type config: DatabaseConfig
        """
        super().__init__(name)
        self.config = config
        self.db_path = database_path(config.connection_string)
        self._conn = None
        # one connection shared by all threads, serialized by this lock
        self._lock = threading.Lock()
        if config.init_script:
            self._init_database()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(
                    self.db_path, timeout=self.config.connection_timeout, check_same_thread=False
                )
            except sqlite3.Error as e:
                raise DataSourceUnavailable(f"{self.get_name()}: cannot open {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        """Run the configured initialization script."""
        with self._lock:
            conn = self._get_connection()
            try:
                conn.executescript(self.config.init_script)
            except sqlite3.Error as e:
                conn.close()
                self._conn = None
                raise ExecutionError(f"{self.get_name()}: init script failed: {e}") from e

    def execute(self, operation: str, parameters: dict[str, Any]) -> Any:
        """
        Run the query configured for ``operation``.

        :returns: Rows as a list of objects, or ``{"rows_affected": n}`` for statements without rows
        :rtype: Any
        :raises ExecutionError: If no query is configured or the query fails
        :raises OperationTimeoutError: If the query runs longer than ``query_timeout``
        """
        try:
            query = self.config.queries[operation]
        except KeyError:
            raise ExecutionError(f"{self.get_name()}: no query configured for operation '{operation}'") from None

        deadline = time.monotonic() + self.config.query_timeout
        with self._lock:
            conn = self._get_connection()
            # a non-zero return value interrupts the running statement
            conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 1000)
            try:
                cursor = conn.execute(query, parameters)
                if cursor.description is None:
                    conn.commit()
                    return {"rows_affected": cursor.rowcount}
                return [dict(row) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                conn.rollback()
                if isinstance(e, sqlite3.OperationalError) and time.monotonic() > deadline:
                    raise OperationTimeoutError(
                        f"{self.get_name()}: query '{operation}' exceeded {self.config.query_timeout:g}s"
                    ) from e
                raise ExecutionError(f"{self.get_name()}: query '{operation}' failed: {e}") from e
            finally:
                conn.set_progress_handler(None, 1000)

    def is_available(self) -> bool:
        try:
            with self._lock:
                self._get_connection().execute("SELECT 1")
        except (sqlite3.Error, DataSourceUnavailable) as e:
            logger.debug("health_check_failed", data_source=self.get_name(), error=str(e))
            return False
        return True

    def get_type(self) -> str:
        return self.source_type

    def get_connection_info(self) -> dict[str, Any]:
        return {
            "type": self.source_type,
            "name": self.get_name(),
            "database": self.db_path,
            "query_timeout": self.config.query_timeout,
            "queries": sorted(self.config.queries),
        }

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
