"""DuckDB Storage Adapter.

This adapter implements the ``StoragePort`` contract on top of DuckDB, an
in-process analytical database. It is the concrete collaborator used by the
CLI and by tests; the pipeline itself only sees the three port operations.

Architecture:
    - Implements StoragePort (Hexagonal Architecture)
    - Connection is opened lazily and reused
    - ``execute_transaction`` wraps all commands in BEGIN/COMMIT and rolls
      back on the first failure
    - Driver calls are synchronous and run on the event loop thread; no
      worker threads are spawned
    - Schema creation is idempotent and is not a migration system
"""

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import duckdb

from clinical_import.domain.ports import (
    CommandResult,
    QueryResult,
    Result,
    StorageCommand,
    StorageError,
    StoragePort,
    TransactionResult,
    TransientStorageError,
)
from clinical_import.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS PATIENT_DIMENSION (
        PATIENT_NUM INTEGER PRIMARY KEY,
        PATIENT_CD VARCHAR NOT NULL,
        SEX_CD VARCHAR,
        AGE_IN_YEARS INTEGER,
        BIRTH_DATE DATE,
        VITAL_STATUS_CD VARCHAR,
        PATIENT_BLOB VARCHAR,
        SOURCESYSTEM_CD VARCHAR,
        UPLOAD_ID INTEGER,
        IMPORT_DATE TIMESTAMP DEFAULT current_timestamp
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS VISIT_DIMENSION (
        ENCOUNTER_NUM INTEGER PRIMARY KEY,
        PATIENT_NUM INTEGER NOT NULL,
        START_DATE DATE NOT NULL,
        END_DATE DATE,
        LOCATION_CD VARCHAR,
        INOUT_CD VARCHAR,
        VISIT_BLOB VARCHAR,
        ACTIVE_STATUS_CD VARCHAR,
        SOURCESYSTEM_CD VARCHAR,
        UPLOAD_ID INTEGER,
        IMPORT_DATE TIMESTAMP DEFAULT current_timestamp
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS OBSERVATION_FACT (
        OBSERVATION_ID INTEGER PRIMARY KEY,
        ENCOUNTER_NUM INTEGER NOT NULL,
        PATIENT_NUM INTEGER NOT NULL,
        CONCEPT_CD VARCHAR NOT NULL,
        CATEGORY_CHAR VARCHAR,
        VALTYPE_CD VARCHAR,
        NVAL_NUM DOUBLE,
        TVAL_CHAR VARCHAR,
        OBSERVATION_BLOB VARCHAR,
        UNIT_CD VARCHAR,
        START_DATE DATE,
        INSTANCE_NUM INTEGER,
        PROVIDER_ID VARCHAR,
        SOURCESYSTEM_CD VARCHAR,
        UPLOAD_ID INTEGER,
        IMPORT_DATE TIMESTAMP DEFAULT current_timestamp
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_patient_cd ON PATIENT_DIMENSION(PATIENT_CD)",
    "CREATE INDEX IF NOT EXISTS idx_visit_patient ON VISIT_DIMENSION(PATIENT_NUM)",
    "CREATE INDEX IF NOT EXISTS idx_observation_encounter ON OBSERVATION_FACT(ENCOUNTER_NUM)",
)


class DuckDBStorageAdapter(StoragePort):
    """DuckDB implementation of ``StoragePort``.

    Parameters:
        db_config: DatabaseConfig from the configuration manager (preferred)
        db_path: Path to the database file, or ':memory:'

    Example Usage:
        ```python
        adapter = DuckDBStorageAdapter(db_path=":memory:")
        await adapter.initialize_schema()
        rows = await adapter.execute_query("SELECT COUNT(*) AS n FROM PATIENT_DIMENSION")
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None, db_path: Optional[str] = None):
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__",
                )
            self.db_path = db_config.get_db_path()
        else:
            self.db_path = db_path or ":memory:"

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__",
                )

        self._connection: Optional[duckdb.DuckDBPyConnection] = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise TransientStorageError(
                    f"Database not connected: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path},
                )
        return self._connection

    @staticmethod
    def _wrap(error: Exception, operation: str, sql: Optional[str] = None) -> StorageError:
        details = {"sql": sql.strip().split("\n")[0][:120]} if sql else {}
        if isinstance(error, duckdb.ConnectionException):
            return TransientStorageError(f"Database not connected: {str(error)}", operation=operation, details=details)
        return StorageError(f"{operation} failed: {str(error)}", operation=operation, details=details)

    async def initialize_schema(self) -> Result[None]:
        """Create the patient, visit and observation tables if missing.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            logger.info("DuckDB schema initialized")
            return Result.success_result(None)
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError",
            )

    async def execute_query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, list(params))
            columns = [column[0] for column in cursor.description or []]
            rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
        except duckdb.Error as e:
            raise self._wrap(e, "query", sql)
        return QueryResult(success=True, data=rows)

    def _run(self, conn: duckdb.DuckDBPyConnection, sql: str, params: Sequence[Any]) -> CommandResult:
        cursor = conn.execute(sql, list(params))
        try:
            row = cursor.fetchone()
        except duckdb.InvalidInputException:
            row = None
        changes = int(row[0]) if row and isinstance(row[0], int) else 0
        return CommandResult(success=True, changes=changes)

    async def execute_command(self, sql: str, params: Sequence[Any] = ()) -> CommandResult:
        conn = self._get_connection()
        try:
            return self._run(conn, sql, params)
        except duckdb.Error as e:
            raise self._wrap(e, "command", sql)

    async def execute_transaction(self, commands: Sequence[StorageCommand]) -> TransactionResult:
        """Run all commands atomically; any failure rolls every one back.

        Raises:
            StorageError: After rollback, carrying the failing statement
        """
        conn = self._get_connection()
        try:
            conn.begin()
        except duckdb.Error as e:
            raise self._wrap(e, "transaction")
        results: list[CommandResult] = []
        current: Optional[StorageCommand] = None
        try:
            for current in commands:
                results.append(self._run(conn, current.sql, current.params))
            conn.commit()
        except duckdb.Error as e:
            conn.rollback()
            logger.warning(f"Transaction rolled back after {len(results)} of {len(commands)} commands")
            raise self._wrap(e, "transaction", current.sql if current else None)
        return TransactionResult(success=True, results=results)

    async def close(self) -> None:
        """Close the connection; the next operation reconnects."""
        if self._connection is not None:
            try:
                self._connection.close()
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing DuckDB connection: {str(e)}")
            finally:
                self._connection = None
