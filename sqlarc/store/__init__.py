"""Relational stores: the source being archived and the destination being restored."""

from .sqlite_store import SqliteDestination, SqliteSource

__all__ = ["SqliteDestination", "SqliteSource"]
