"""Domain Ports - Abstract Contracts for Parsing and Persistence.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement, plus the ``Result`` type and the exception hierarchy shared across
the pipeline. The domain core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Parsers turn decoded text into format-native documents
    - Storage is an external collaborator consumed through three async
      operations: query, command and transaction
    - Terminology lookup is an optional, read-only collaborator
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, Sequence, TypeVar, Union

from clinical_import.domain.enums import ImportFormat

T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Parsers and extraction strategies return a ``Result`` for expected
    failures (malformed input), keeping exceptions for programming errors.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error message (only present if success=False)
        error_type: Machine-stable error code (e.g. "INVALID_JSON")
        error_details: Additional error context
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(success=True, value=value)

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Error code (defaults to the exception class name)
            error_details: Additional context

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (
            type(error).__name__ if isinstance(error, Exception) else "UnknownError"
        )
        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class ClinicalImportError(Exception):
    """Base exception for all import-related errors."""
    pass


class UnsupportedFormatError(ClinicalImportError):
    """Raised when no parser can handle the supplied content.

    Attributes:
        source: The declared filename
    """

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class TransformationError(ClinicalImportError):
    """Raised when a document cannot be mapped to the canonical structure.

    Attributes:
        source: The source identifier that failed transformation
        raw_data: The raw data that failed transformation (may be truncated)
    """

    def __init__(self, message: str, source: Optional[str] = None, raw_data: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.raw_data = raw_data


class ImportCancelledError(ClinicalImportError):
    """Raised when a cancellation token is triggered between records."""
    pass


class StorageError(ClinicalImportError):
    """Raised when the storage collaborator fails.

    Attributes:
        operation: The storage operation that failed (query, command, transaction)
        details: Additional error context (never contains credentials)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class TransientStorageError(StorageError):
    """Storage failure that may succeed on retry (lost connection, busy lock)."""
    pass


class DuplicateRecordError(StorageError):
    """Raised under the ``error`` duplicate policy when a natural key exists.

    Attributes:
        table: Table where the collision was found
        key: Natural key that collided
    """

    def __init__(self, message: str, table: str, key: Any):
        super().__init__(message, operation="duplicate_check", details={"table": table, "key": key})
        self.table = table
        self.key = key


# ============================================================================
# Storage Collaborator
# ============================================================================

@dataclass(frozen=True)
class StorageCommand:
    """One parameterized SQL statement."""
    sql: str
    params: tuple = ()


@dataclass(frozen=True)
class QueryResult:
    success: bool
    data: list[dict] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True)
class CommandResult:
    success: bool
    last_id: Optional[int] = None
    changes: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class TransactionResult:
    success: bool
    results: list[CommandResult] = field(default_factory=list)
    error: Optional[str] = None


class StoragePort(ABC):
    """Abstract contract for the persistence collaborator.

    The pipeline treats all three operations as opaque and asynchronous and
    never inspects SQL beyond what it generates itself. Implementations raise
    ``StorageError`` (or ``TransientStorageError`` for retryable failures) or
    return a result with ``success=False`` and an ``error`` message, which is
    classified the same way;
    ``execute_transaction`` must roll back every command if any one fails.

    Example Usage:
        ```python
        storage = DuckDBStorageAdapter(db_path=":memory:")
        await storage.initialize_schema()
        result = await storage.execute_transaction([
            StorageCommand("INSERT INTO PATIENT_DIMENSION (...) VALUES (?, ?)", (1, "P1")),
        ])
        ```
    """

    @abstractmethod
    async def execute_query(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Run a read-only statement and return rows as dictionaries."""
        pass

    @abstractmethod
    async def execute_command(self, sql: str, params: Sequence[Any] = ()) -> CommandResult:
        """Run one write statement outside an explicit transaction."""
        pass

    @abstractmethod
    async def execute_transaction(self, commands: Sequence[StorageCommand]) -> TransactionResult:
        """Run commands atomically: all succeed or none are applied."""
        pass

    async def close(self) -> None:
        """Release resources. Default implementation does nothing."""
        return None


# ============================================================================
# Terminology Collaborator
# ============================================================================

class TerminologyPort(ABC):
    """Read-only terminology lookup used to enrich selection-option catalogs."""

    @abstractmethod
    def resolve(self, code: str) -> Optional[str]:
        """Resolve a concept code to its hierarchical path, or None if unknown."""
        pass


# ============================================================================
# Parsers
# ============================================================================

class DocumentParser(ABC, Generic[T]):
    """Abstract contract for format parsers.

    A parser turns decoded text into a format-native intermediate document.
    Expected failures (malformed content) are returned as ``Result`` failures
    whose ``error_type`` is the issue code; parsers never raise for bad input.
    """

    format: ImportFormat = ImportFormat.UNKNOWN

    @abstractmethod
    def parse(self, text: str, filename: Optional[str] = None) -> Result[T]:
        """Parse text into an intermediate document."""
        pass
