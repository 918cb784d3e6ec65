"""Restoration pipeline: columnar archive files back into a SQLite database."""

from .restorer import (
    SCHEMA_SIDE_TABLE,
    DatabaseRestorer,
    RestoreStats,
    TableRestorer,
    expand_archive_paths,
    restore_target,
)

__all__ = [
    "SCHEMA_SIDE_TABLE",
    "DatabaseRestorer",
    "RestoreStats",
    "TableRestorer",
    "expand_archive_paths",
    "restore_target",
]
