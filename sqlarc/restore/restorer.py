"""
Restoration pipeline: archive files back into a SQLite database.

For one archive the pipeline:
1. Opens the archive, validating the Parquet footer and the archive
   metadata stored in it
2. Begins a destination transaction and creates the table with its
   original declared types, nullability, defaults and primary key
3. Decodes each row group (page checksums verified), checks that every
   column holds the row group's row count and inserts the rows in
   archived order
4. Rebuilds the declared indexes and commits

Invariants:
    - A table is restored in a single transaction; any failure rolls back
      that table only
    - Rows are inserted in archive order
    - Indexes are created after the data, never transported
    - The destination connection is used by one table at a time
    - An archived sqlite_schema is restored as the plain table
      SCHEMA_SIDE_TABLE, never into the destination's own catalog

How to change safely:
    - Keep DDL generation in TypeMapper.column_declaration
    - New restore options go in RestoreConfig
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from ..config import RestoreConfig
from ..container.reader import ArchiveReader
from ..container.writer import ARCHIVE_SUFFIX
from ..errors import (
    ArchiveError,
    IntegrityCheckError,
    OperationCancelledError,
    TableExistsError,
)
from ..reporting import RESTORE, ProgressEvent, ProgressObserver, TableResult, notify
from ..schema.mapper import TypeMapper
from ..schema.types import TableSchema
from ..store.sqlite_store import SCHEMA_TABLE_ALIASES, SqliteDestination

logger = logging.getLogger(__name__)

# Table receiving the rows of an archived sqlite_schema
SCHEMA_SIDE_TABLE = "sqlarc_schema"


@dataclass
class RestoreStats:
    """Outcome of restoring one table.

    Attributes:
        table: Restored table name
        rows: Rows inserted
        row_groups: Row groups decoded
        indexes: Indexes created
    """

    table: str
    rows: int = 0
    row_groups: int = 0
    indexes: int = 0


def expand_archive_paths(paths: Iterable[str]) -> list[str]:
    """Expand directories into their archive files, sorted by name."""
    expanded = []
    for path in paths:
        if os.path.isdir(path):
            expanded.extend(
                str(p) for p in sorted(Path(path).glob(f"*{ARCHIVE_SUFFIX}")) if p.is_file()
            )
        else:
            expanded.append(path)
    return expanded


def restore_target(schema: TableSchema) -> TableSchema:
    """Schema to create in the destination; the SQLite catalog goes to a side table."""
    if schema.name.lower() in SCHEMA_TABLE_ALIASES:
        return dataclasses.replace(schema, name=SCHEMA_SIDE_TABLE, indexes=())
    return schema


class TableRestorer:
    """Restores one archive file into an open destination database.

    Args:
        destination: Open destination store
        config: Restore configuration
        observer: Optional progress observer

    Example:
        >>> with SqliteDestination("restored.db") as dest:
        ...     stats = TableRestorer(dest).restore("archive/users.sqlarc")
    """

    def __init__(
        self,
        destination: SqliteDestination,
        config: RestoreConfig | None = None,
        observer: ProgressObserver | None = None,
    ) -> None:
        self.destination = destination
        self.config = config or RestoreConfig()
        self.observer = observer
        self._stop = threading.Event()

    def stop(self) -> None:
        """Request cancellation after the in-flight row group."""
        self._stop.set()

    def restore(self, archive_path: str) -> RestoreStats:
        """Restore the table held by an archive file.

        Raises:
            CorruptArchiveError: If the archive fails validation
            ChunkMisalignmentError: If a row group's columns disagree on row count
            TableExistsError: If the table exists and if_exists is "fail"
            ArchiveIOError: On file or destination failure
            OperationCancelledError: If stop() was called
        """
        with ArchiveReader.open(archive_path) as reader:
            table = reader.metadata.table.name
            try:
                return self._restore(reader)
            except ArchiveError as e:
                raise e.with_table(table)

    def _restore(self, reader: ArchiveReader) -> RestoreStats:
        start = time.time()
        metadata = reader.metadata
        schema = restore_target(metadata.table)
        table = schema.name
        if table != metadata.table.name:
            logger.info(
                "Restoring catalog into side table",
                extra={"archived_table": metadata.table.name, "table": table},
            )
        mapper = TypeMapper(table)
        stats = RestoreStats(table=table)
        dest = self.destination

        logger.info(
            "Restoring table",
            extra={
                "table": table,
                "path": reader.path,
                "row_groups": len(metadata.row_groups),
                "total_rows": metadata.row_count,
            },
        )

        dest.begin()
        try:
            if dest.table_exists(table):
                if self.config.if_exists != "replace":
                    raise TableExistsError("Table already exists in destination", table=table)
                logger.info("Replacing existing table", extra={"table": table})
                dest.drop_table(table)

            dest.create_table(
                schema,
                [
                    mapper.column_declaration(column, physical_type)
                    for column, physical_type in zip(schema.columns, metadata.physical_types)
                ],
            )

            for index, decoded in reader.iter_row_groups():
                columns = [
                    [mapper.to_relational(v, physical_type) for v in decoded[name]]
                    for name, physical_type in zip(schema.column_names, metadata.physical_types)
                ]
                dest.insert_rows(table, schema.column_names, zip(*columns))
                stats.rows += metadata.row_groups[index].row_count
                stats.row_groups += 1
                notify(
                    self.observer,
                    ProgressEvent(
                        operation=RESTORE,
                        table=table,
                        rows=stats.rows,
                        row_groups=stats.row_groups,
                        chunks=stats.row_groups * len(schema.columns),
                        total_rows=metadata.row_count,
                    ),
                )
                if self._stop.is_set():
                    raise OperationCancelledError(
                        f"Restoration stopped after {stats.row_groups} row groups", table=table
                    )

            for index_def in schema.indexes:
                dest.create_index(table, index_def)
                stats.indexes += 1

            dest.commit()
        except BaseException:
            dest.rollback()
            raise

        notify(
            self.observer,
            ProgressEvent(
                operation=RESTORE,
                table=table,
                rows=stats.rows,
                row_groups=stats.row_groups,
                chunks=stats.row_groups * len(schema.columns),
                total_rows=metadata.row_count,
                finished=True,
            ),
        )
        logger.info(
            "Table restored",
            extra={
                "table": table,
                "rows": stats.rows,
                "row_groups": stats.row_groups,
                "indexes": stats.indexes,
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
        return stats


class DatabaseRestorer:
    """Restores archive files, one after the other, into one database.

    Args:
        dest_path: SQLite database to restore into (created if missing)
        config: Restore configuration
        observer: Optional progress observer
        fail_fast: Skip the remaining archives after the first failure
    """

    def __init__(
        self,
        dest_path: str,
        config: RestoreConfig | None = None,
        observer: ProgressObserver | None = None,
        fail_fast: bool = False,
    ) -> None:
        self.dest_path = dest_path
        self.config = config or RestoreConfig()
        self.observer = observer
        self.fail_fast = fail_fast
        self._stopped = False

    def restore_all(self, archive_paths: Iterable[str]) -> list[TableResult]:
        """Restore every archive; directories expand to their archive files.

        Returns:
            One TableResult per archive, in order

        Raises:
            ArchiveIOError: If the destination cannot be opened
            IntegrityCheckError: If verification is enabled and fails; the
                per-archive results are attached as its results attribute
        """
        paths = expand_archive_paths(archive_paths)
        results = []

        with SqliteDestination(self.dest_path, self.config.journal_mode) as dest:
            restorer = TableRestorer(dest, self.config, self.observer)
            for path in paths:
                name = Path(path).name.removesuffix(ARCHIVE_SUFFIX)
                if self._stopped:
                    error = OperationCancelledError("Skipped after an earlier failure", table=name)
                    results.append(TableResult.failed(name, error, 0, path))
                    continue
                results.append(self._restore_one(restorer, path, name))

            if self.config.verify:
                self._verify(dest, results)

        return results

    def _restore_one(self, restorer: TableRestorer, path: str, name: str) -> TableResult:
        start = time.time()
        try:
            stats = restorer.restore(path)
        except ArchiveError as e:
            logger.error(
                f"Failed to restore {path}: {e}",
                extra={"table": e.table or name, "error_code": e.code, "path": path},
            )
            return self._failed(e.table or name, e, start, path)
        except Exception as e:
            logger.exception(
                f"Unexpected failure restoring {path}", extra={"table": name, "path": path}
            )
            error = ArchiveError(
                f"Unexpected {type(e).__name__}: {e}",
                table=name,
                details={"exception": type(e).__name__},
            )
            return self._failed(name, error, start, path)

        return TableResult(
            table=stats.table,
            success=True,
            rows=stats.rows,
            row_groups=stats.row_groups,
            duration_ms=int((time.time() - start) * 1000),
            path=path,
        )

    def _failed(self, table: str, error: ArchiveError, start: float, path: str) -> TableResult:
        if self.fail_fast:
            self._stopped = True
        return TableResult.failed(table, error, int((time.time() - start) * 1000), path)

    def _verify(self, dest: SqliteDestination, results: list[TableResult]) -> None:
        problems = dest.integrity_check()
        if problems:
            raise IntegrityCheckError(
                f"Database integrity check failed: {'; '.join(problems[:5])}",
                problems=problems,
                results=results,
            )
        logger.info("Database integrity check passed", extra={"path": self.dest_path})
