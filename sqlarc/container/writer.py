"""
Archive file writer.

An archive is a Parquet file: one Parquet row group per archive row
group, written with pyarrow.parquet.ParquetWriter. Compression, the
per-column encodings and page checksums are Parquet's. The JSON form of
ArchiveMetadata goes into the file's key-value metadata when the writer
closes, so a table streams through in one pass without knowing its row
count up front.

Invariants:
    - Bytes go to "<path>.partial"; the final path only ever appears
      through an atomic rename of a complete file
    - abort() (or an exception inside the context manager) removes the
      partial file
    - Parquet row group i is archive row group i

How to change safely:
    - Layout changes require a FORMAT_VERSION bump in model.py
"""

from __future__ import annotations

import json
import logging
import os

import pyarrow as pa
import pyarrow.parquet as pq

from ..errors import ArchiveIOError, ChunkMisalignmentError
from .codec import arrow_schema, to_arrow, writer_options
from .model import METADATA_KEY, ArchiveMetadata, ColumnChunk, RowGroupMeta

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".sqlarc"
PARTIAL_SUFFIX = ".partial"


class ArchiveWriter:
    """Streams row groups of one table into an archive file.

    Usage:
        with ArchiveWriter(path, metadata) as writer:
            writer.write_row_group(row_count, chunks)
        # metadata is sealed and the file is in place
    """

    def __init__(self, path: str, metadata: ArchiveMetadata) -> None:
        self.path = path
        self.partial_path = path + PARTIAL_SUFFIX
        self.metadata = metadata
        self.schema = arrow_schema(metadata.table, metadata.physical_types)
        self._writer: pq.ParquetWriter | None = None

    def __enter__(self) -> ArchiveWriter:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def open(self) -> None:
        """Create the partial file.

        Raises:
            ArchiveIOError: If the file cannot be created
        """
        options = writer_options(
            self.metadata.table.column_names,
            self.metadata.encodings,
            self.metadata.compression,
            self.metadata.compression_level,
        )
        try:
            self._writer = pq.ParquetWriter(self.partial_path, self.schema, **options)
        except (pa.ArrowException, OSError) as e:
            self.abort()
            raise ArchiveIOError(
                f"Cannot create archive file: {e}",
                table=self.metadata.table.name,
                path=self.partial_path,
            ) from e

    def write_row_group(self, row_count: int, chunks: list[ColumnChunk]) -> RowGroupMeta:
        """Append one row group and record it in the metadata.

        Args:
            row_count: Rows in the group
            chunks: One chunk per archived column, in column order

        Returns:
            The recorded row group metadata

        Raises:
            ChunkMisalignmentError: If a chunk's row count differs from row_count
            ValueError: If the chunks do not match the archived columns
            ArchiveIOError: If writing fails
        """
        assert self._writer is not None, "writer is not open"
        table = self.metadata.table.name
        names = [c.column for c in chunks]
        if names != self.metadata.table.column_names:
            raise ValueError(f"Row group chunks {names} do not match columns")

        counts = {c.column: len(c.values) for c in chunks}
        if any(len(c.values) != row_count or c.statistics.row_count != row_count for c in chunks):
            raise ChunkMisalignmentError(
                f"Chunks disagree with row group size {row_count}",
                table=table,
                row_group=len(self.metadata.row_groups),
                row_counts=counts,
            )

        batch = pa.Table.from_arrays(
            [to_arrow(c.values, c.physical_type) for c in chunks], schema=self.schema
        )
        try:
            self._writer.write_table(batch, row_group_size=max(row_count, 1))
        except (pa.ArrowException, OSError) as e:
            raise ArchiveIOError(
                f"Failed to write row group: {e}", table=table, path=self.partial_path
            ) from e

        row_group = RowGroupMeta(row_count=row_count, statistics=[c.statistics for c in chunks])
        self.metadata.add_row_group(row_group)
        return row_group

    def close(self) -> None:
        """Store the metadata, close the Parquet file and move it into place.

        Raises:
            ArchiveIOError: If the file cannot be finalized or the rename fails
        """
        assert self._writer is not None, "writer is not open"
        table = self.metadata.table.name
        self.metadata.seal()
        document = json.dumps(self.metadata.to_dict(), separators=(",", ":"))
        try:
            self._writer.add_key_value_metadata({METADATA_KEY: document})
            self._writer.close()
            self._writer = None
            fd = os.open(self.partial_path, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(self.partial_path, self.path)
        except (pa.ArrowException, OSError) as e:
            self.abort()
            raise ArchiveIOError(
                f"Failed to finalize archive: {e}", table=table, path=self.path
            ) from e

        logger.info(
            "Archive written",
            extra={
                "table": table,
                "path": self.path,
                "row_groups": len(self.metadata.row_groups),
                "rows": self.metadata.row_count,
                "bytes": os.path.getsize(self.path),
            },
        )

    def abort(self) -> None:
        """Close and remove the partial file, if any."""
        if self._writer is not None:
            writer, self._writer = self._writer, None
            try:
                writer.close()
            except (pa.ArrowException, OSError) as e:
                logger.debug(
                    "Failed to close partial archive",
                    extra={"path": self.partial_path, "error": str(e)},
                )
        try:
            os.remove(self.partial_path)
        except FileNotFoundError:
            pass
        else:
            logger.debug("Removed partial archive", extra={"path": self.partial_path})
