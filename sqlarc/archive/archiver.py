"""
Archival pipeline: relational tables to columnar archive files.

For one table the pipeline:
1. Describes the table and projects it onto the configured columns
2. Streams rows in primary key (or rowid) order, row_group_size at a time
3. Chooses the physical type and the Parquet encoding of every column
   once, from the first row group (or from a full-column type scan)
4. Per row group and column: coerces values and collects statistics,
   then hands the row group to the Parquet writer
5. Seals the metadata once the cursor is exhausted

Archive file per table:
    <out_dir>/<table>.sqlarc
    <out_dir>/<table>-<n>.sqlarc when another table already took the name

Invariants:
    - At most one row group of rows is held in memory per table
    - Row groups are written in source order and hold exactly
      row_group_size rows, except possibly the last
    - A failed or cancelled table leaves no archive file behind
    - Physical types are never re-widened after the first row group
    - Two tables of one run never share an archive file

How to change safely:
    - Keep the archive contents a pure function of the source rows and
      the configuration (no timestamps other than created_at)
    - Cancellation is only checked between row groups
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
import re
import threading
import time
from collections.abc import Collection, Iterator, Sequence
from typing import Any

from ..config import ArchiveConfig
from ..container.codec import choose_encoding, supports
from ..container.model import ArchiveMetadata, ColumnChunk
from ..container.writer import ARCHIVE_SUFFIX, ArchiveWriter
from ..errors import ArchiveError, ArchiveIOError, OperationCancelledError, SchemaIncompatibleError
from ..reporting import ARCHIVE, ProgressEvent, ProgressObserver, TableResult, notify
from ..schema.mapper import TypeMapper
from ..schema.types import Encoding, PhysicalType, TableSchema
from ..stats.collector import StatisticsCollector
from ..store.sqlite_store import SCHEMA_TABLE, SqliteSource

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^\w.-]")


def archive_filename(table: str, taken: Collection[str] = ()) -> str:
    """File name of a table's archive; characters unsafe in paths become '_'.

    Names already in taken (compared case-insensitively) get a numeric
    suffix, so "a b" and "a_b" end up as a_b.sqlarc and a_b-1.sqlarc.
    """
    stem = _UNSAFE_FILENAME.sub("_", table)
    used = {name.lower() for name in taken}
    name = stem + ARCHIVE_SUFFIX
    suffix = 1
    while name.lower() in used:
        name = f"{stem}-{suffix}{ARCHIVE_SUFFIX}"
        suffix += 1
    return name


class TableArchiver:
    """Archives one table of an open source database.

    Args:
        source: Open source store
        config: Archive configuration
        observer: Optional progress observer

    Example:
        >>> with SqliteSource("app.db") as source:
        ...     metadata = TableArchiver(source, ArchiveConfig()).archive("users", "users.sqlarc")
    """

    def __init__(
        self,
        source: SqliteSource,
        config: ArchiveConfig | None = None,
        observer: ProgressObserver | None = None,
    ) -> None:
        self.source = source
        self.config = config or ArchiveConfig()
        self.observer = observer
        self._stop = threading.Event()

    def stop(self) -> None:
        """Request cancellation after the in-flight row group."""
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def _schema(self, table: str) -> TableSchema:
        schema = self.source.describe_table(table)
        try:
            schema = schema.project(self.config.columns_for(table))
        except KeyError as e:
            raise ArchiveError(f"Configured column does not exist: {e}", table=table) from e
        if not schema.columns:
            raise ArchiveError("No columns selected for archival", table=table)
        return schema

    def _choose_types(
        self,
        schema: TableSchema,
        mapper: TypeMapper,
        first_group: Sequence[tuple[Any, ...]],
    ) -> tuple[PhysicalType, ...]:
        # a short first group is the whole table
        complete = len(first_group) < self.config.row_group_size
        types = []
        for i, column in enumerate(schema.columns):
            if self.config.type_inference == "full_column":
                observation = self.source.column_kinds(schema.name, column.name)
            else:
                observation = mapper.observe((row[i] for row in first_group), complete=complete)
            override = self.config.column_override(schema.name, column.name)
            physical_type = mapper.choose(
                column, observation, override.physical_type if override else None
            )
            logger.debug(
                "Chose physical type",
                extra={
                    "table": schema.name,
                    "column": column.name,
                    "physical_type": physical_type.value,
                    "kinds": sorted(k.value for k in observation.kinds),
                    "complete": observation.complete,
                },
            )
            types.append(physical_type)
        return tuple(types)

    def _encoding_for(
        self, table: str, column: str, physical_type: PhysicalType, present: list[Any]
    ) -> Encoding:
        override = self.config.column_override(table, column)
        if override is not None and override.encoding is not None:
            if not supports(physical_type, override.encoding):
                raise SchemaIncompatibleError(
                    f"Encoding {override.encoding.value} does not apply to "
                    f"{physical_type.value} columns",
                    table=table,
                    column=column,
                    conflicting_types=[physical_type.value, override.encoding.value],
                )
            return override.encoding
        if self.config.encoding == "plain":
            return Encoding.PLAIN
        return choose_encoding(physical_type, present)

    def _choose_encodings(
        self,
        schema: TableSchema,
        physical_types: Sequence[PhysicalType],
        first_group: Sequence[tuple[Any, ...]],
    ) -> tuple[Encoding, ...]:
        return tuple(
            self._encoding_for(
                schema.name,
                column.name,
                physical_type,
                [row[i] for row in first_group if row[i] is not None],
            )
            for i, (column, physical_type) in enumerate(zip(schema.columns, physical_types))
        )

    def _seal_chunk(
        self,
        column: str,
        physical_type: PhysicalType,
        mapper: TypeMapper,
        raw_values: list[Any],
    ) -> ColumnChunk:
        collector = StatisticsCollector(
            physical_type,
            distinct_estimate=self.config.distinct_estimate,
            sketch_precision=self.config.sketch_precision,
        )
        values = []
        for raw in raw_values:
            value = mapper.coerce(raw, physical_type, column)
            collector.observe(value)
            values.append(value)
        return ColumnChunk(
            column=column,
            physical_type=physical_type,
            values=values,
            statistics=collector.finalize(),
        )

    def archive(self, table: str, out_path: str) -> ArchiveMetadata:
        """Archive a table into out_path.

        Args:
            table: Source table name
            out_path: Archive file to create (replaced if it exists)

        Returns:
            Sealed archive metadata

        Raises:
            SchemaIncompatibleError: If a column's values cannot be unified
            ArchiveIOError: On source or file failure
            OperationCancelledError: If stop() was called
        """
        try:
            return self._archive(table, out_path)
        except ArchiveError as e:
            raise e.with_table(table)

    def _write_row_groups(
        self,
        metadata: ArchiveMetadata,
        mapper: TypeMapper,
        rows: Iterator[tuple[Any, ...]],
        batch: list[tuple[Any, ...]],
        out_path: str,
        total_rows: int,
    ) -> tuple[int, int]:
        schema = metadata.table
        table = schema.name
        logger.info(
            "Archiving table",
            extra={
                "table": table,
                "columns": len(schema.columns),
                "total_rows": total_rows,
                "row_group_size": self.config.row_group_size,
                "path": out_path,
            },
        )

        rows_done = 0
        chunks_done = 0
        with ArchiveWriter(out_path, metadata) as writer:
            while batch:
                chunks = [
                    self._seal_chunk(column.name, physical_type, mapper, [row[i] for row in batch])
                    for i, (column, physical_type) in enumerate(
                        zip(schema.columns, metadata.physical_types)
                    )
                ]
                writer.write_row_group(len(batch), chunks)
                rows_done += len(batch)
                chunks_done += len(chunks)
                notify(
                    self.observer,
                    ProgressEvent(
                        operation=ARCHIVE,
                        table=table,
                        rows=rows_done,
                        row_groups=len(metadata.row_groups),
                        chunks=chunks_done,
                        total_rows=total_rows,
                    ),
                )

                if self._stop.is_set():
                    raise OperationCancelledError(
                        f"Archival stopped after {len(metadata.row_groups)} row groups",
                        table=table,
                    )
                batch = list(itertools.islice(rows, self.config.row_group_size))
        return rows_done, chunks_done

    def _archive(self, table: str, out_path: str) -> ArchiveMetadata:
        start = time.time()
        schema = self._schema(table)
        total_rows = self.source.count_rows(table)
        mapper = TypeMapper(table)
        group_size = self.config.row_group_size

        with contextlib.closing(self.source.iter_rows(schema)) as rows:
            batch = list(itertools.islice(rows, group_size))
            physical_types = self._choose_types(schema, mapper, batch)
            metadata = ArchiveMetadata(
                table=schema,
                physical_types=physical_types,
                encodings=self._choose_encodings(schema, physical_types, batch),
                compression=self.config.compression,
                compression_level=self.config.compression_level,
            )
            rows_done, chunks_done = self._write_row_groups(
                metadata, mapper, rows, batch, out_path, total_rows
            )

        notify(
            self.observer,
            ProgressEvent(
                operation=ARCHIVE,
                table=table,
                rows=rows_done,
                row_groups=len(metadata.row_groups),
                chunks=chunks_done,
                total_rows=total_rows,
                finished=True,
            ),
        )
        logger.info(
            "Table archived",
            extra={
                "table": table,
                "rows": rows_done,
                "row_groups": len(metadata.row_groups),
                "bytes": os.path.getsize(out_path),
                "duration_ms": int((time.time() - start) * 1000),
            },
        )
        return metadata


class DatabaseArchiver:
    """Archives the tables of a database, each into its own file.

    Tables are independent: a failure is recorded in that table's result
    and the others continue, unless fail_fast is set. Up to
    config.max_concurrent tables run at once on worker threads, each with
    its own source connection.

    Args:
        source_path: SQLite database to archive
        out_dir: Directory receiving one archive file per table
        config: Archive configuration
        observer: Optional progress observer (called from worker threads)
        fail_fast: Cancel the remaining tables after the first failure

    Example:
        >>> archiver = DatabaseArchiver("app.db", "archive/")
        >>> results = await archiver.archive_all()
    """

    def __init__(
        self,
        source_path: str,
        out_dir: str,
        config: ArchiveConfig | None = None,
        observer: ProgressObserver | None = None,
        fail_fast: bool = False,
    ) -> None:
        self.source_path = source_path
        self.out_dir = out_dir
        self.config = config or ArchiveConfig()
        self.observer = observer
        self.fail_fast = fail_fast

        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._active: dict[str, TableArchiver] = {}

    def stop(self) -> None:
        """Cancel running tables after their in-flight row group and skip pending ones."""
        self._stopped.set()
        with self._lock:
            for archiver in self._active.values():
                archiver.stop()
        logger.info("Stopping archival")

    def list_tables(self) -> list[str]:
        with SqliteSource(self.source_path) as source:
            return source.list_tables()

    def assign_paths(self, tables: Sequence[str]) -> dict[str, str]:
        """Archive path of every table, unique within the run."""
        taken: list[str] = []
        paths = {}
        for table in tables:
            filename = archive_filename(table, taken)
            if taken and filename != archive_filename(table):
                logger.warning(
                    "Archive file name already taken, using a suffixed name",
                    extra={"table": table, "filename": filename},
                )
            taken.append(filename)
            paths[table] = os.path.join(self.out_dir, filename)
        return paths

    def table_names(self, tables: Sequence[str]) -> list[str]:
        """Tables of one run: requested names without duplicates, plus the catalog if asked."""
        names = list(dict.fromkeys(tables))
        if self.config.include_schema and SCHEMA_TABLE not in names:
            names.append(SCHEMA_TABLE)
        return names

    async def archive_all(self, tables: Sequence[str] | None = None) -> list[TableResult]:
        """Archive tables concurrently.

        Args:
            tables: Tables to archive; defaults to the configured allow-list,
                then to every table of the database

        Returns:
            One TableResult per table, in the order of the table list

        Raises:
            ArchiveIOError: If the database cannot be listed or out_dir created
            asyncio.CancelledError: If the run is cancelled; running tables
                are stopped after their in-flight row group first
        """
        loop = asyncio.get_running_loop()
        names = list(tables or self.config.tables or [])
        if not names:
            names = await loop.run_in_executor(None, self.list_tables)
        names = self.table_names(names)
        paths = self.assign_paths(names)

        try:
            os.makedirs(self.out_dir, exist_ok=True)
        except OSError as e:
            raise ArchiveIOError(f"Cannot create output directory: {e}", path=self.out_dir) from e

        logger.info(
            "Starting archival",
            extra={
                "source": self.source_path,
                "tables": len(names),
                "max_concurrent": self.config.max_concurrent,
            },
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrent)

        async def run(table: str) -> TableResult:
            async with semaphore:
                return await loop.run_in_executor(None, self._archive_table, table, paths[table])

        try:
            return list(await asyncio.gather(*(run(name) for name in names)))
        except asyncio.CancelledError:
            self.stop()
            raise

    def _archive_table(self, table: str, path: str) -> TableResult:
        start = time.time()

        if self._stopped.is_set():
            error = OperationCancelledError("Archival stopped before table started", table=table)
            return TableResult.failed(table, error, 0, path)

        try:
            with SqliteSource(self.source_path, fetch_size=self.config.fetch_size) as source:
                archiver = TableArchiver(source, self.config, self.observer)
                with self._lock:
                    self._active[table] = archiver
                    if self._stopped.is_set():
                        archiver.stop()
                try:
                    metadata = archiver.archive(table, path)
                finally:
                    with self._lock:
                        self._active.pop(table, None)
        except ArchiveError as e:
            logger.error(
                f"Failed to archive table {table}: {e}",
                extra={"table": table, "error_code": e.code},
            )
            return self._failed(table, e.with_table(table), start, path)
        except Exception as e:
            logger.exception(f"Unexpected failure archiving table {table}", extra={"table": table})
            error = ArchiveError(
                f"Unexpected {type(e).__name__}: {e}",
                table=table,
                details={"exception": type(e).__name__},
            )
            return self._failed(table, error, start, path)

        return TableResult(
            table=table,
            success=True,
            rows=metadata.row_count,
            row_groups=len(metadata.row_groups),
            duration_ms=int((time.time() - start) * 1000),
            path=path,
        )

    def _failed(self, table: str, error: ArchiveError, start: float, path: str) -> TableResult:
        if self.fail_fast and not self._stopped.is_set():
            self.stop()
        return TableResult.failed(table, error, int((time.time() - start) * 1000), path)
