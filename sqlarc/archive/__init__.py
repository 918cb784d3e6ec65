"""Archival pipeline: SQLite tables to columnar archive files."""

from .archiver import ARCHIVE_SUFFIX, DatabaseArchiver, TableArchiver, archive_filename

__all__ = ["ARCHIVE_SUFFIX", "DatabaseArchiver", "TableArchiver", "archive_filename"]
