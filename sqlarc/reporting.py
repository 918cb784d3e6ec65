"""
Progress events and per-table results.

Both pipelines report progress through an optional ProgressObserver.
Observers are side-effect only: nothing they do changes the archive or
the restored data, and an exception raised by an observer is logged and
ignored.

Invariants:
    - One event per sealed (or restored) row group, plus a final event
      with finished=True when the table completes
    - Every table handled by a DatabaseArchiver or DatabaseRestorer gets
      exactly one TableResult
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .errors import ArchiveError

logger = logging.getLogger(__name__)

ARCHIVE = "archive"
RESTORE = "restore"


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one table through a pipeline.

    Attributes:
        operation: "archive" or "restore"
        table: Table name
        rows: Rows processed so far
        row_groups: Row groups processed so far
        chunks: Column chunks written or decoded so far
        total_rows: Total rows expected, if known
        finished: True on the final event of the table
    """

    operation: str
    table: str
    rows: int
    row_groups: int
    chunks: int
    total_rows: int | None = None
    finished: bool = False

    @property
    def fraction(self) -> float | None:
        """Completed fraction in [0, 1], or None if the total is unknown."""
        if self.total_rows is None:
            return None
        if self.total_rows == 0:
            return 1.0
        return min(1.0, self.rows / self.total_rows)


@runtime_checkable
class ProgressObserver(Protocol):
    """Receiver of progress events."""

    def on_progress(self, event: ProgressEvent) -> None:
        ...


def notify(observer: ProgressObserver | None, event: ProgressEvent) -> None:
    """Deliver an event, shielding the pipeline from observer failures."""
    if observer is None:
        return
    try:
        observer.on_progress(event)
    except Exception:
        logger.exception(
            "Progress observer failed", extra={"table": event.table, "operation": event.operation}
        )


@dataclass
class TableResult:
    """Outcome of archiving or restoring one table.

    Attributes:
        table: Table name
        success: Whether the table completed
        rows: Rows archived or restored
        row_groups: Row groups archived or restored
        duration_ms: Wall time spent on the table
        path: Archive file written or read
        error: Error message if failed
        error_code: ArchiveError code if failed
    """

    table: str
    success: bool
    rows: int = 0
    row_groups: int = 0
    duration_ms: int = 0
    path: str | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def failed(
        cls, table: str, error: ArchiveError, duration_ms: int, path: str | None = None
    ) -> TableResult:
        return cls(
            table=table,
            success=False,
            duration_ms=duration_ms,
            path=path,
            error=str(error),
            error_code=error.code,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "success": self.success,
            "rows": self.rows,
            "row_groups": self.row_groups,
            "duration_ms": self.duration_ms,
            "path": self.path,
            "error": self.error,
            "error_code": self.error_code,
        }
