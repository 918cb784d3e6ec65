"""
SQLite source and destination stores.

SqliteSource reads the schema and rows of an existing database, opened
read-only. SqliteDestination creates tables, inserts rows and rebuilds
indexes in a database being restored.

Connections use autocommit mode with explicit transactions, like:

    dest.begin()
    try:
        dest.create_table(...)
        dest.insert_rows(...)
        dest.commit()
    except Exception:
        dest.rollback()
        raise

Invariants:
    - Every sqlite3.Error leaves this module as ArchiveIOError
    - The source database is never written to
    - Rows are produced by a forward-only cursor, fetch_size at a time

How to change safely:
    - Keep SQL identifiers quoted with quote_identifier
    - New PRAGMAs go in the connect helpers, not in callers
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from ..errors import ArchiveIOError
from ..schema.mapper import TypeObservation
from ..schema.types import ColumnDef, IndexDef, TableSchema, ValueKind, quote_identifier

logger = logging.getLogger(__name__)

# Catalog table archived by include_schema; SQLite also accepts the legacy name
SCHEMA_TABLE = "sqlite_schema"
SCHEMA_TABLE_ALIASES = frozenset({"sqlite_schema", "sqlite_master"})

_WITHOUT_ROWID = re.compile(r"\bWITHOUT\s+ROWID\s*;?\s*$", re.IGNORECASE)


@contextmanager
def _translate_errors(action: str, path: str, table: str | None = None) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise ArchiveIOError(f"Failed to {action}: {e}", table=table, path=path) from e


class SqliteSource:
    """Read-only access to the database being archived.

    Args:
        path: Path to the SQLite database file
        fetch_size: Rows fetched from the cursor per round trip
    """

    def __init__(self, path: str, fetch_size: int = 1000) -> None:
        self.path = path
        self.fetch_size = fetch_size
        self._conn: sqlite3.Connection | None = None

    def open(self) -> None:
        """Open the database read-only.

        Raises:
            ArchiveIOError: If the file does not exist or is not a database
        """
        if not Path(self.path).is_file():
            raise ArchiveIOError("Source database not found", path=self.path)
        uri = Path(self.path).absolute().as_uri() + "?mode=ro"
        with _translate_errors("open source database", self.path):
            self._conn = sqlite3.connect(uri, uri=True, isolation_level=None)
            self._conn.execute("PRAGMA query_only = ON")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SqliteSource:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SqliteSource is not open")
        return self._conn

    def list_tables(self) -> list[str]:
        """Names of the user tables, sorted."""
        with _translate_errors("list tables", self.path):
            rows = self.conn.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ).fetchall()
        return [row[0] for row in rows]

    def describe_table(self, table: str) -> TableSchema:
        """Read columns, primary key and indexes of a table.

        The catalog table (sqlite_schema) can be described too, so that
        the database schema can be archived like any other table.

        Partial and expression indexes cannot be represented and are
        skipped with a warning.

        Raises:
            ArchiveIOError: If the table does not exist or cannot be read
        """
        quoted = quote_identifier(table)
        with _translate_errors("describe table", self.path, table):
            if table.lower() in SCHEMA_TABLE_ALIASES:
                # the catalog has no row describing itself
                without_rowid = False
            else:
                row = self.conn.execute(
                    "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
                ).fetchone()
                if row is None:
                    raise ArchiveIOError("Table not found", table=table, path=self.path)
                without_rowid = bool(row[0] and _WITHOUT_ROWID.search(row[0]))

            columns = tuple(
                ColumnDef.declare(
                    name=name,
                    declared_type=declared or "",
                    notnull=bool(notnull),
                    default=default,
                    pk=pk,
                )
                for _cid, name, declared, notnull, default, pk in self.conn.execute(
                    f"PRAGMA table_info({quoted})"
                )
            )
            indexes = self._describe_indexes(table)

        return TableSchema(
            name=table, columns=columns, indexes=indexes, without_rowid=without_rowid
        )

    def _describe_indexes(self, table: str) -> tuple[IndexDef, ...]:
        indexes = []
        index_list = self.conn.execute(
            f"PRAGMA index_list({quote_identifier(table)})"
        ).fetchall()
        for _seq, name, unique, origin, partial in sorted(index_list, key=lambda r: r[1]):
            if origin == "pk":
                continue
            if partial:
                logger.warning(
                    "Skipping partial index", extra={"table": table, "index": name}
                )
                continue
            members = self.conn.execute(
                f"PRAGMA index_info({quote_identifier(name)})"
            ).fetchall()
            columns = tuple(member[2] for member in sorted(members))
            if any(c is None for c in columns):
                logger.warning(
                    "Skipping expression index", extra={"table": table, "index": name}
                )
                continue
            if origin == "u":
                # sqlite_autoindex_* names are reserved
                name = f"{table}_{'_'.join(columns)}_unique"
            indexes.append(IndexDef(name=name, columns=columns, unique=bool(unique)))
        return tuple(indexes)

    def count_rows(self, table: str) -> int:
        with _translate_errors("count rows", self.path, table):
            (count,) = self.conn.execute(
                f"SELECT COUNT(*) FROM {quote_identifier(table)}"
            ).fetchone()
        return count

    def iter_rows(self, schema: TableSchema) -> Iterator[tuple[Any, ...]]:
        """Stream the rows of the schema's columns in primary key order.

        Tables without a declared primary key are read in rowid order.
        """
        columns = ", ".join(quote_identifier(c) for c in schema.column_names)
        order_by = ", ".join(quote_identifier(c) for c in schema.primary_key) or "_rowid_"
        sql = f"SELECT {columns} FROM {quote_identifier(schema.name)} ORDER BY {order_by}"

        with _translate_errors("read rows", self.path, schema.name):
            cursor = self.conn.execute(sql)
            cursor.arraysize = self.fetch_size
            try:
                while True:
                    batch = cursor.fetchmany()
                    if not batch:
                        return
                    yield from batch
            finally:
                cursor.close()

    def column_kinds(self, table: str, column: str) -> TypeObservation:
        """Collect the value kinds of a whole column without reading its values."""
        quoted_table = quote_identifier(table)
        quoted_column = quote_identifier(column)
        with _translate_errors("read column types", self.path, table):
            kinds = frozenset(
                ValueKind(row[0])
                for row in self.conn.execute(
                    f"SELECT DISTINCT typeof({quoted_column}) FROM {quoted_table}"
                )
            )
            (non_boolean,) = self.conn.execute(
                f"SELECT COUNT(*) FROM {quoted_table} "
                f"WHERE typeof({quoted_column}) = 'integer' AND {quoted_column} NOT IN (0, 1)"
            ).fetchone()
        return TypeObservation(kinds=kinds, integers_are_boolean=non_boolean == 0, complete=True)


class SqliteDestination:
    """Writable database that archived tables are restored into.

    Args:
        path: Path to the SQLite database file (created if missing)
        journal_mode: Optional journal mode to set (e.g. "WAL", "OFF")
    """

    def __init__(self, path: str, journal_mode: str | None = None) -> None:
        self.path = path
        self.journal_mode = journal_mode
        self._conn: sqlite3.Connection | None = None

    def open(self) -> None:
        with _translate_errors("open destination database", self.path):
            self._conn = sqlite3.connect(self.path, isolation_level=None)
            if self.journal_mode:
                self._conn.execute(f"PRAGMA journal_mode = {self.journal_mode}")
            self._conn.execute("PRAGMA synchronous = NORMAL")

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SqliteDestination:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SqliteDestination is not open")
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._conn is not None and self._conn.in_transaction

    def begin(self) -> None:
        with _translate_errors("begin transaction", self.path):
            self.conn.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        with _translate_errors("commit", self.path):
            self.conn.execute("COMMIT")

    def rollback(self) -> None:
        if not self.in_transaction:
            return
        with _translate_errors("roll back", self.path):
            self.conn.execute("ROLLBACK")

    def table_exists(self, table: str) -> bool:
        with _translate_errors("look up table", self.path, table):
            row = self.conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
            ).fetchone()
        return row is not None

    def drop_table(self, table: str) -> None:
        with _translate_errors("drop table", self.path, table):
            self.conn.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")

    def create_table(self, schema: TableSchema, declarations: Sequence[str]) -> None:
        """Create a table from rendered column declarations.

        Args:
            schema: Table schema (name, primary key, WITHOUT ROWID)
            declarations: One DDL fragment per column, in column order
        """
        parts = list(declarations)
        if schema.primary_key:
            keys = ", ".join(quote_identifier(c) for c in schema.primary_key)
            parts.append(f"PRIMARY KEY ({keys})")
        sql = f"CREATE TABLE {quote_identifier(schema.name)} ({', '.join(parts)})"
        if schema.without_rowid:
            sql += " WITHOUT ROWID"

        logger.debug("Creating table", extra={"table": schema.name, "sql": sql})
        with _translate_errors("create table", self.path, schema.name):
            self.conn.execute(sql)

    def insert_rows(
        self, table: str, columns: Sequence[str], rows: Iterable[Sequence[Any]]
    ) -> None:
        names = ", ".join(quote_identifier(c) for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {quote_identifier(table)} ({names}) VALUES ({placeholders})"
        with _translate_errors("insert rows", self.path, table):
            self.conn.executemany(sql, rows)

    def create_index(self, table: str, index: IndexDef) -> None:
        unique = "UNIQUE " if index.unique else ""
        columns = ", ".join(quote_identifier(c) for c in index.columns)
        with _translate_errors("create index", self.path, table):
            self.conn.execute(
                f"CREATE {unique}INDEX {quote_identifier(index.name)} "
                f"ON {quote_identifier(table)} ({columns})"
            )

    def integrity_check(self) -> list[str]:
        """Run PRAGMA integrity_check; an empty list means the database is sound."""
        with _translate_errors("check integrity", self.path):
            messages = [row[0] for row in self.conn.execute("PRAGMA integrity_check")]
        if messages == ["ok"]:
            return []
        return messages
