"""
Error types for sqlarc.

This module defines all exception types raised by the archival and
restoration pipelines:
- ArchiveError: Base exception
- SchemaIncompatibleError: Column values cannot be unified into one physical type
- ChunkMisalignmentError: Column chunks of a row group disagree on row count
- ArchiveIOError: Read/write failure on a database or archive file
- CorruptArchiveError: Archive fails structural validation
- OperationCancelledError: A stop was requested between row groups
- TableExistsError: Restore target table exists and replacing was not requested
- IntegrityCheckError: The restored database failed PRAGMA integrity_check

Invariants:
    - All errors inherit from ArchiveError
    - Errors carry the table (and column, where applicable) they concern
    - Every error is fatal to the table being processed; nothing is retried

How to change safely:
    - Error codes are part of the per-table result contract; never rename them
    - Add new error kinds as subclasses of ArchiveError
"""

from __future__ import annotations

from typing import Any


class ArchiveError(Exception):
    """Base exception for all sqlarc errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        table: Table being processed when the error occurred
        column: Column concerned, if any
        details: Additional error context
    """

    default_code = "ARCHIVE_ERROR"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.table = table
        self.column = column
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        context = []
        if self.table is not None:
            context.append(f"table={self.table}")
        if self.column is not None:
            context.append(f"column={self.column}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"

    def with_table(self, table: str) -> ArchiveError:
        """Attach the table name if it was not known where the error was raised."""
        if self.table is None:
            self.table = table
        return self


class SchemaIncompatibleError(ArchiveError):
    """Column values cannot be represented by one physical type.

    Raised when:
    - Observed values mix kinds with no valid widening (e.g. text and blob)
    - A later row group holds a value the already-chosen type cannot take
    - A configured physical type override conflicts with the data
    """

    default_code = "SCHEMA_INCOMPATIBLE"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        conflicting_types: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            table=table,
            column=column,
            details={"conflicting_types": conflicting_types or []},
        )
        self.conflicting_types = conflicting_types or []


class ChunkMisalignmentError(ArchiveError):
    """Decoded column chunks within one row group have differing row counts."""

    default_code = "CHUNK_MISALIGNMENT"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        row_group: int | None = None,
        row_counts: dict[str, int] | None = None,
    ) -> None:
        super().__init__(
            message,
            table=table,
            details={"row_group": row_group, "row_counts": row_counts or {}},
        )
        self.row_group = row_group
        self.row_counts = row_counts or {}


class ArchiveIOError(ArchiveError):
    """Read or write failure on the source store, destination store or archive file."""

    default_code = "IO_FAILURE"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message, table=table, column=column, details={"path": path})
        self.path = path


class CorruptArchiveError(ArchiveError):
    """Archive metadata or chunk data fails structural validation.

    Raised when:
    - The file is not a readable Parquet file
    - The sqlarc metadata entry is missing, not valid JSON or misses
      required fields
    - A physical type tag, codec or encoding is unknown
    - A page checksum fails or a chunk's value count does not match
      its statistics
    """

    default_code = "CORRUPT_ARCHIVE"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message, table=table, column=column, details={"path": path})
        self.path = path


class OperationCancelledError(ArchiveError):
    """The pipeline was asked to stop; the in-flight row group was finished first."""

    default_code = "CANCELLED"


class TableExistsError(ArchiveError):
    """The destination already holds the table and replacing was not requested."""

    default_code = "TABLE_EXISTS"


class IntegrityCheckError(ArchiveError):
    """PRAGMA integrity_check reported problems after restoration.

    Attributes:
        problems: Messages reported by the integrity check
        results: Per-table results of the restoration that was checked
    """

    default_code = "INTEGRITY_CHECK_FAILED"

    def __init__(
        self,
        message: str,
        problems: list[str] | None = None,
        results: list[Any] | None = None,
    ) -> None:
        super().__init__(message, details={"problems": problems or []})
        self.problems = problems or []
        self.results = results or []
